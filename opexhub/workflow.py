"""Picks the one transaction the current user may act on and builds tracker rows.

Everything here is a pure function of an already-fetched snapshot.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass

from opexhub.formatting import format_datetime
from opexhub.schemas import Initiative, User, WorkflowTransaction
from opexhub.stages import ROLE_VIEWER, roles_for_stage, stage_name, stages_for_role


def _same_email(a: str | None, b: str | None) -> bool:
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    return bool(a) and a == b


def find_actionable_transaction(
    transactions: Iterable[WorkflowTransaction], user: User | None,
) -> WorkflowTransaction | None:
    """Email match on ``pendingWith`` first, then the role's stages in ascending order."""
    if user is None:
        return None
    transactions = list(transactions)
    for tx in transactions:
        if tx.is_pending and _same_email(tx.pending_with, user.email):
            return tx

    if user.role == ROLE_VIEWER:
        return None
    for number in stages_for_role(user.role):
        for tx in transactions:
            if tx.is_pending and tx.stage_number == number:
                return tx
    return None


def can_act_on(transaction: WorkflowTransaction, user: User | None) -> bool:
    if user is None or not transaction.is_pending:
        return False
    if transaction.pending_with and transaction.pending_with.strip():
        return _same_email(transaction.pending_with, user.email)
    return user.role in roles_for_stage(transaction.stage_number)


def can_show_workflow_tab(user: User | None, initiative: Initiative | None,
                          actionable: WorkflowTransaction | None = None) -> bool:
    if user is None:
        return False
    if actionable is not None:
        return True
    if user.role == ROLE_VIEWER or initiative is None:
        return False
    return (user.site or "").upper() == (initiative.site or "").upper()


@dataclass
class TransactionView:
    id: int
    stage_number: int
    stage_name: str
    status: str
    actor: str
    action_date: str | None
    assigned_lead: str | None
    next_user: str | None
    comment: str | None
    actionable: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


def build_transaction_views(transactions: Iterable[WorkflowTransaction],
                            actionable: WorkflowTransaction | None = None) -> list[TransactionView]:
    actionable_id = actionable.id if actionable is not None else None
    rows = []
    for tx in sorted(transactions, key=lambda t: (t.stage_number, t.id)):
        rows.append(TransactionView(
            id=tx.id,
            stage_number=tx.stage_number,
            stage_name=tx.stage_name or stage_name(tx.stage_number),
            status=tx.approve_status,
            actor=tx.action_by or tx.pending_with or "Unassigned",
            action_date=format_datetime(tx.action_date) or None,
            assigned_lead=tx.assigned_user_name,
            next_user=tx.next_user,
            comment=tx.comment,
            actionable=tx.id == actionable_id,
        ))
    return rows
