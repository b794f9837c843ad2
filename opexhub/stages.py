"""Workflow stage catalog.

Single source of truth for the eleven approval stages: display names,
descriptions, which roles may act on each stage, and the stage numbers that
get special treatment in the approval panel.
"""
from __future__ import annotations

from dataclasses import dataclass

TOTAL_STAGES = 11

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

ROLE_IL = "IL"
ROLE_STLD = "STLD"
ROLE_SH = "SH"
ROLE_HOD = "HOD"
ROLE_CTSD = "CTSD"
ROLE_FA = "F&A"
ROLE_VIEWER = "VIEWER"

ROLE_NAMES = {
    ROLE_IL: "Initiative Lead",
    ROLE_STLD: "Site TSD Lead",
    ROLE_SH: "Site Head",
    ROLE_HOD: "Head of Department",
    ROLE_CTSD: "Corporate TSD",
    ROLE_FA: "Site F&A",
    ROLE_VIEWER: "Viewer",
}

# ---------------------------------------------------------------------------
# Special stage numbers
# ---------------------------------------------------------------------------

STAGE_REGISTER = 1
STAGE_ASSIGN_LEAD = 4
STAGE_MOC_CAPEX = 5
STAGE_TIMELINE = 6
STAGE_PROGRESS_REVIEW = 7
STAGE_CMO_REVIEW = 8
STAGE_MONITORING = 9
STAGE_FA_VALIDATION = 10
STAGE_CLOSURE = 11


@dataclass(frozen=True)
class Stage:
    number: int
    name: str
    description: str
    roles: frozenset[str] = frozenset()


_STAGES = (
    Stage(1, "Register Initiative",
          "Initiative has been registered by any user and is ready for HOD approval."),
    Stage(2, "Evaluation and Approval",
          "Head of Department (HOD) evaluation and approval of the initiative.",
          frozenset({ROLE_HOD})),
    Stage(3, "Initiative assessment and approval",
          "Site TSD Lead assessment and approval of the initiative.",
          frozenset({ROLE_STLD})),
    Stage(4, "Define Responsibilities",
          "Site Head assigns an Initiative Lead who will be responsible for driving "
          "this initiative forward.",
          frozenset({ROLE_SH})),
    Stage(5, "MOC-CAPEX Evaluation",
          "Initiative Lead evaluates both Management of Change (MOC) and Capital "
          "Expenditure (CAPEX) requirements.",
          frozenset({ROLE_IL})),
    Stage(6, "Initiative Timeline Tracker",
          "Initiative Lead prepares detailed timeline for initiative implementation.",
          frozenset({ROLE_IL})),
    Stage(7, "Progress monitoring",
          "Site TSD Lead monitors progress of initiative implementation.",
          frozenset({ROLE_STLD})),
    Stage(8, "Periodic Status Review with CMO",
          "Corporate TSD reviews initiative status - you can approve to continue or "
          "drop to move initiative to next FY.",
          frozenset({ROLE_CTSD})),
    Stage(9, "Savings Monitoring (Monthly)",
          "Initiative Lead monitors savings achieved after implementation (monthly "
          "monitoring period).",
          frozenset({ROLE_IL})),
    Stage(10, "F&A validation",
          "Site F&A validates savings and financial accuracy.",
          frozenset({ROLE_FA})),
    Stage(11, "Initiative Closure",
          "Initiative Lead performs final closure of the initiative.",
          frozenset({ROLE_IL})),
)

STAGES: dict[int, Stage] = {s.number: s for s in _STAGES}

FALLBACK_DESCRIPTION = "Process this workflow stage."


def stage_name(number: int) -> str:
    stage = STAGES.get(number)
    return stage.name if stage else f"Stage {number}"


def stage_description(number: int) -> str:
    stage = STAGES.get(number)
    return stage.description if stage else FALLBACK_DESCRIPTION


def roles_for_stage(number: int) -> frozenset[str]:
    stage = STAGES.get(number)
    return stage.roles if stage else frozenset()


def stages_for_role(role: str | None) -> list[int]:
    """Stage numbers the role may act on, in ascending order."""
    if not role:
        return []
    return [s.number for s in _STAGES if role in s.roles]


def role_name(role: str | None) -> str:
    return ROLE_NAMES.get(role or "", role or "")


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


def clamp_stage(number: int | None) -> int:
    return min(max(number or STAGE_REGISTER, STAGE_REGISTER), TOTAL_STAGES)


def progress_for_stage(number: int | None) -> int:
    """Being at stage N means N/11 of the workflow is done."""
    return round(clamp_stage(number) * 100 / TOTAL_STAGES)


# ---------------------------------------------------------------------------
# Post-approval redirects
# ---------------------------------------------------------------------------

# (stage, role) -> (path, toast title)
REDIRECT_RULES: dict[tuple[int, str], tuple[str, str]] = {
    (STAGE_TIMELINE, ROLE_IL): ("/timeline-tracker", "Redirecting to Timeline Tracker..."),
    (STAGE_MONITORING, ROLE_STLD): ("/monthly-monitoring", "Redirecting to Monthly Monitoring..."),
}


def redirect_after_approval(number: int, role: str | None) -> tuple[str, str] | None:
    return REDIRECT_RULES.get((number, role or ""))


def catalog() -> list[dict]:
    """The catalog as JSON-ready rows."""
    return [
        {"stage_number": s.number, "name": s.name, "description": s.description,
         "roles": sorted(s.roles)}
        for s in _STAGES
    ]
