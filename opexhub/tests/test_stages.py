"""Tests for the stage catalog, role table and progress/redirect rules."""
from __future__ import annotations

import pytest

from opexhub.stages import (
    FALLBACK_DESCRIPTION,
    ROLE_CTSD,
    ROLE_FA,
    ROLE_HOD,
    ROLE_IL,
    ROLE_SH,
    ROLE_STLD,
    ROLE_VIEWER,
    TOTAL_STAGES,
    catalog,
    progress_for_stage,
    redirect_after_approval,
    role_name,
    roles_for_stage,
    stage_description,
    stage_name,
    stages_for_role,
)


class TestStageLookups:
    @pytest.mark.parametrize("number", range(1, TOTAL_STAGES + 1))
    def test_known_stages_have_name_and_description(self, number):
        assert stage_name(number).strip()
        assert stage_description(number).strip()
        assert stage_name(number) != f"Stage {number}"
        assert stage_description(number) != FALLBACK_DESCRIPTION

    @pytest.mark.parametrize("number", [0, -1, 12, 99])
    def test_unknown_stages_fall_back(self, number):
        assert stage_name(number) == f"Stage {number}"
        assert stage_description(number) == FALLBACK_DESCRIPTION

    def test_canonical_names(self):
        assert stage_name(4) == "Define Responsibilities"
        assert stage_name(5) == "MOC-CAPEX Evaluation"
        assert stage_name(8) == "Periodic Status Review with CMO"
        assert stage_name(11) == "Initiative Closure"

    def test_catalog_rows(self):
        rows = catalog()
        assert [r["stage_number"] for r in rows] == list(range(1, 12))
        assert rows[9]["roles"] == [ROLE_FA]
        assert rows[0]["roles"] == []


class TestRoleTable:
    def test_roles_for_stage(self):
        assert roles_for_stage(2) == {ROLE_HOD}
        assert roles_for_stage(4) == {ROLE_SH}
        assert roles_for_stage(8) == {ROLE_CTSD}
        assert roles_for_stage(1) == frozenset()
        assert roles_for_stage(42) == frozenset()

    def test_stages_for_role_in_ascending_order(self):
        assert stages_for_role(ROLE_IL) == [5, 6, 9, 11]
        assert stages_for_role(ROLE_STLD) == [3, 7]
        assert stages_for_role(ROLE_FA) == [10]

    def test_viewer_and_unknown_roles_have_no_stages(self):
        assert stages_for_role(ROLE_VIEWER) == []
        assert stages_for_role("ADMIN") == []
        assert stages_for_role(None) == []

    def test_role_name(self):
        assert role_name(ROLE_STLD) == "Site TSD Lead"
        assert role_name("XYZ") == "XYZ"
        assert role_name(None) == ""


class TestProgressAndRedirects:
    def test_progress_for_stage(self):
        assert progress_for_stage(1) == 9
        assert progress_for_stage(4) == 36
        assert progress_for_stage(11) == 100

    def test_progress_is_clamped(self):
        assert progress_for_stage(0) == progress_for_stage(1)
        assert progress_for_stage(None) == progress_for_stage(1)
        assert progress_for_stage(15) == 100

    def test_redirect_rules(self):
        assert redirect_after_approval(6, ROLE_IL) == (
            "/timeline-tracker", "Redirecting to Timeline Tracker...")
        assert redirect_after_approval(9, ROLE_STLD) == (
            "/monthly-monitoring", "Redirecting to Monthly Monitoring...")

    def test_no_redirect_for_other_combinations(self):
        assert redirect_after_approval(6, ROLE_STLD) is None
        assert redirect_after_approval(9, ROLE_IL) is None
        assert redirect_after_approval(4, ROLE_SH) is None
        assert redirect_after_approval(6, None) is None
