from __future__ import annotations

import logging
from dataclasses import dataclass

from opexhub.cache import QueryCache
from opexhub.client import ConflictError
from opexhub.forms import APPROVE, DROP, REJECT, FormState, StageContext, check_action, form_for_stage
from opexhub.schemas import BatchFAApproval, ProcessStageRequest, User, WorkflowTransaction
from opexhub.stages import STAGE_FA_VALIDATION, redirect_after_approval

log = logging.getLogger(__name__)

# Query families refetched after any processed stage.
WORKFLOW_FAMILIES = (
    "workflow-transactions",
    "visible-workflow-transactions",
    "pending-transactions",
    "current-pending-stage",
    "progress-percentage",
    "initiatives",
)
MONITORING_FAMILIES = ("monthly-monitoring", "monitoring-validation")

_TOASTS = {
    APPROVE: "Stage approved successfully",
    REJECT: "Stage rejected",
    DROP: "Initiative dropped to next FY",
}
FA_TOAST = "F&A validation completed successfully"


@dataclass
class DispatchResult:
    transaction_id: int
    stage_number: int
    action: str
    message: str
    transaction: WorkflowTransaction | None = None
    redirect: str | None = None
    redirect_message: str | None = None


class ActionDispatcher:
    """Submits one stage action for the actionable transaction.

    ``backend`` is anything with the client's ``process_stage`` and
    ``batch_fa_approval`` coroutines (the REST client or the demo source).
    """

    def __init__(self, backend, cache: QueryCache):
        self.backend = backend
        self.cache = cache

    def build_request(self, transaction: WorkflowTransaction, action: str,
                      state: FormState) -> ProcessStageRequest:
        extra = form_for_stage(transaction.stage_number).build_payload(state) if action == APPROVE else {}
        return ProcessStageRequest(
            transaction_id=transaction.id,
            action=action,
            remarks=state.remarks,
            **extra,
        )

    async def dispatch(self, transaction: WorkflowTransaction, action: str, state: FormState,
                       context: StageContext, user: User | None = None) -> DispatchResult:
        number = transaction.stage_number
        check_action(number, action, state, context)
        request = self.build_request(transaction, action, state)

        batch_sent = False
        if action == APPROVE and number == STAGE_FA_VALIDATION:
            selected = sorted(state.selected_entry_ids & context.eligible_entry_ids)
            if selected:
                await self.backend.batch_fa_approval(BatchFAApproval(
                    entry_ids=selected,
                    fa_comments=(state.fa_comments or "").strip() or state.remarks,
                ))
                batch_sent = True
                log.info("F&A approved %d monitoring entries for initiative %s",
                         len(selected), transaction.initiative_id)

        try:
            updated = await self.backend.process_stage(request, version=transaction.version)
        except ConflictError:
            # Someone else moved the transaction on; drop the stale snapshot.
            self.cache.invalidate(*WORKFLOW_FAMILIES)
            log.warning("Stage %s of initiative %s was already processed", number, transaction.initiative_id)
            raise
        finally:
            if batch_sent:
                self.cache.invalidate(*MONITORING_FAMILIES)
        self.cache.invalidate(*WORKFLOW_FAMILIES)
        log.info("Stage %s of initiative %s %s by %s", number, transaction.initiative_id, action,
                 user.email if user else "unknown user")

        if action == APPROVE and number == STAGE_FA_VALIDATION:
            message = FA_TOAST
        else:
            message = _TOASTS[action]
        result = DispatchResult(
            transaction_id=transaction.id,
            stage_number=number,
            action=action,
            message=message,
            transaction=updated,
        )
        if action == APPROVE:
            rule = redirect_after_approval(number, user.role if user else None)
            if rule:
                result.redirect, result.redirect_message = rule
                log.info("Redirecting %s to %s", user.email, result.redirect)
        return result
