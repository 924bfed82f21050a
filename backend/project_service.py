"""
PROJECT LIFECYCLE SERVICE

Public operation surface of the tracking engine. Every mutating call runs
through the TransactionCoordinator:

    load -> working copy -> state machine / ledgers -> invariants -> commit

Reads are served from the repository directly; the progress summary goes
through the derived-metrics cache.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

from models import (
    Actor, BillDetails, EditableStatusHistoryEntry, FinancialUpdateRecord,
    ProgressUpdateRecord, Project, ProjectCreate, ProjectStatus,
    StatusHistoryEntry, StatusWorkflow, ChangedBy, SupportingDocument,
)
from repository import ProjectRepository
from tracking_engine.advisories import completion_advisories, timing_advisories
from tracking_engine.cache import DerivedMetricsCache
from tracking_engine.editable_lock import EDITABLE_LOCK_ROLES, set_editable_status
from tracking_engine.errors import (
    AuthorizationError, ValidationError,
    INVALID_VALUE, NO_PROGRESS_PROVIDED, UNAUTHORIZED,
)
from tracking_engine.financial_ledger import FinancialLedger
from tracking_engine.precision import parse_two_decimal, to_float
from tracking_engine.progress_ledger import FULL_PROGRESS, ProgressLedger, StatusChange
from tracking_engine.state_machine import StateMachine, build_project_state_machine
from tracking_engine.transaction_coordinator import (
    CommitOutcome, TransactionCoordinator, DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_SECONDS,
)
from tracking_engine.validation import (
    LEDGER_ROLE, MAX_REJECTION_REASON_LENGTH, MAX_REMARKS_LENGTH, clean_text,
)
from tracking_engine import views

logger = logging.getLogger(__name__)

# Operation names recorded with idempotency keys
OP_STATUS_CHANGE = "status_change"
OP_PROGRESS_UPDATE = "progress_update"
OP_FINANCIAL_UPDATE = "financial_progress_update"
OP_COMBINED_UPDATE = "combined_progress_update"
OP_EDITABLE_LOCK = "editable_lock"

HISTORY_FIELD_BY_TYPE = {
    ProgressUpdateRecord: "progress_updates",
    FinancialUpdateRecord: "financial_progress_updates",
    StatusHistoryEntry: "status_history",
    EditableStatusHistoryEntry: "editable_status_history",
}

REFERENCED_ATTRIBUTES = ("record", "progress_record", "financial_record", "history_entry", "editable_entry")
AUTO_COMPLETION_REFERENCE = "auto_completion"


@dataclass
class MutationResult:
    """What a mutating operation hands back to its caller."""
    project: Project
    message: str = ""
    record: Optional[Any] = None
    progress_record: Optional[ProgressUpdateRecord] = None
    financial_record: Optional[FinancialUpdateRecord] = None
    history_entry: Optional[Any] = None
    editable_entry: Optional[EditableStatusHistoryEntry] = None
    status_change: Optional[StatusChange] = None
    advisories: List[Dict[str, str]] = field(default_factory=list)
    updates_applied: Dict[str, bool] = field(default_factory=dict)
    replayed: bool = False

    def references(self) -> Dict[str, list]:
        """[history field, record_id] for every record this operation appended."""
        refs = {}
        for name in REFERENCED_ATTRIBUTES:
            value = getattr(self, name)
            if value is not None:
                refs[name] = [HISTORY_FIELD_BY_TYPE[type(value)], value.record_id]
        if self.status_change is not None and self.status_change.history_entry is not None:
            refs[AUTO_COMPLETION_REFERENCE] = ["status_history", self.status_change.history_entry.record_id]
        return refs


def split_documents(
    documents: Sequence[SupportingDocument]
) -> Tuple[List[SupportingDocument], List[SupportingDocument]]:
    """
    Route combined-update attachments to their ledger.

    Physical leg: images and files named like "progress".
    Financial leg: documents and files named like "bill".
    A file can land in both.
    """
    progress_documents, financial_documents = [], []
    for document in documents:
        name = document.original_name.lower()
        if document.file_type == "image" or "progress" in name:
            progress_documents.append(document)
        if document.file_type == "document" or "bill" in name:
            financial_documents.append(document)
    return progress_documents, financial_documents


def _coerce_status(value) -> ProjectStatus:
    if isinstance(value, ProjectStatus):
        return value
    try:
        return ProjectStatus(value)
    except ValueError:
        raise ValidationError(
            INVALID_VALUE,
            f"Unknown project status {value!r}",
            {"allowed_statuses": [s.value for s in ProjectStatus]}
        )


class ProjectLifecycleService:

    def __init__(
        self,
        repository: ProjectRepository,
        cache: Optional[DerivedMetricsCache] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable[[], datetime] = datetime.utcnow,
        state_machine: Optional[StateMachine] = None
    ):
        self.repository = repository
        self.clock = clock
        self.cache = cache if cache is not None else DerivedMetricsCache(clock=clock)
        self.coordinator = TransactionCoordinator(
            repository,
            cache=self.cache,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            clock=clock
        )
        self.state_machine = state_machine or build_project_state_machine()
        self.progress_ledger = ProgressLedger(self.state_machine)
        self.financial_ledger = FinancialLedger()

    # =========================================================================
    # PROJECTS
    # =========================================================================

    async def create_project(self, payload: ProjectCreate, actor: Actor) -> Project:
        """Register a new project. Only Junior Engineers create projects."""
        if actor.role != LEDGER_ROLE:
            raise AuthorizationError(
                UNAUTHORIZED,
                "Unauthorized. Only Junior Engineers (JE) can create projects",
                {"required_role": LEDGER_ROLE.value, "current_role": actor.role.value}
            )

        estimated_cost = parse_two_decimal(payload.estimated_cost, "estimated_cost", minimum=0)
        now = self.clock()

        project = Project(
            project_id=payload.project_id.strip(),
            project_name=payload.project_name.strip(),
            estimated_cost=to_float(estimated_cost),
            project_end_date=payload.project_end_date,
            extension_period_for_completion=payload.extension_period_for_completion,
            created_by=ChangedBy.from_actor(actor),
            status_workflow=StatusWorkflow(submitted_at=now),
            created_at=now,
            updated_at=now
        )
        await self.repository.insert(project)

        logger.info(f"[PROJECT] Created {project.project_id} '{project.project_name}' by {actor.user_id}")
        return project

    async def get_project(self, project_id: str) -> Project:
        return await self.coordinator.load(project_id)

    # =========================================================================
    # STATUS & EDITABLE LOCK
    # =========================================================================

    async def change_status(
        self,
        project_id: str,
        new_status,
        actor: Actor,
        remarks: str = "",
        rejection_reason: str = "",
        idempotency_key: Optional[str] = None
    ) -> MutationResult:
        target = _coerce_status(new_status)
        remarks = clean_text(remarks, "remarks", MAX_REMARKS_LENGTH)
        rejection_reason = clean_text(rejection_reason, "rejection_reason", MAX_REJECTION_REASON_LENGTH)

        def mutation(project: Project) -> MutationResult:
            now = self.clock()
            previous_status = project.status
            editable_before = len(project.editable_status_history)

            entry = self.state_machine.transition(
                project, target, actor, remarks=remarks, rejection_reason=rejection_reason, now=now
            )
            editable_entry = None
            if len(project.editable_status_history) > editable_before:
                editable_entry = project.editable_status_history[-1]

            return MutationResult(
                project=project,
                message=f"Project status changed from '{previous_status.value}' to '{target.value}'",
                history_entry=entry,
                editable_entry=editable_entry
            )

        outcome = await self.coordinator.run(
            project_id, mutation, OP_STATUS_CHANGE, idempotency_key, references=MutationResult.references
        )
        return self._finish(outcome)

    async def set_editable_lock(
        self,
        project_id: str,
        is_editable: bool,
        actor: Actor,
        reason: str = "",
        idempotency_key: Optional[str] = None
    ) -> MutationResult:
        if not isinstance(is_editable, bool):
            raise ValidationError(INVALID_VALUE, "is_editable must be a boolean", {"provided_value": is_editable})
        reason = clean_text(reason, "reason", MAX_REMARKS_LENGTH)

        def mutation(project: Project) -> MutationResult:
            now = self.clock()
            entry = set_editable_status(project, is_editable, actor, reason=reason, now=now)
            return MutationResult(
                project=project,
                message=f"Project {'unlocked for editing' if is_editable else 'locked'}",
                history_entry=entry
            )

        outcome = await self.coordinator.run(
            project_id, mutation, OP_EDITABLE_LOCK, idempotency_key, references=MutationResult.references
        )
        return self._finish(outcome)

    # =========================================================================
    # PROGRESS LEDGERS
    # =========================================================================

    async def add_progress_update(
        self,
        project_id: str,
        new_progress,
        actor: Actor,
        remarks: str = "",
        documents: Sequence[SupportingDocument] = (),
        idempotency_key: Optional[str] = None
    ) -> MutationResult:
        documents = list(documents)

        def mutation(project: Project) -> MutationResult:
            now = self.clock()
            record = self.progress_ledger.add_update(project, new_progress, actor, remarks, documents, now)
            status_change = self.progress_ledger.complete_if_finished(project, actor, now)

            message = "Project progress updated successfully"
            if status_change.occurred:
                message += " and project marked as Completed"

            return MutationResult(
                project=project,
                message=message,
                record=record,
                status_change=status_change,
                advisories=self._progress_advisories(project, record, now)
            )

        outcome = await self.coordinator.run(
            project_id, mutation, OP_PROGRESS_UPDATE, idempotency_key, references=MutationResult.references
        )
        return self._finish(outcome)

    async def add_financial_progress_update(
        self,
        project_id: str,
        new_bill_amount,
        actor: Actor,
        remarks: str = "",
        bill_details: Optional[BillDetails] = None,
        documents: Sequence[SupportingDocument] = (),
        idempotency_key: Optional[str] = None
    ) -> MutationResult:
        documents = list(documents)

        def mutation(project: Project) -> MutationResult:
            now = self.clock()
            record = self.financial_ledger.add_update(
                project, new_bill_amount, actor, remarks, bill_details, documents, now
            )
            return MutationResult(
                project=project,
                message="Financial progress updated successfully",
                record=record,
                advisories=timing_advisories(now, "Financial progress")
            )

        outcome = await self.coordinator.run(
            project_id, mutation, OP_FINANCIAL_UPDATE, idempotency_key, references=MutationResult.references
        )
        return self._finish(outcome)

    async def update_combined_progress(
        self,
        project_id: str,
        actor: Actor,
        new_progress=None,
        new_bill_amount=None,
        remarks: str = "",
        bill_details: Optional[BillDetails] = None,
        documents: Sequence[SupportingDocument] = (),
        idempotency_key: Optional[str] = None
    ) -> MutationResult:
        """
        Apply a physical and/or a financial update in one commit.

        Either leg failing aborts both.
        """
        if new_progress is None and new_bill_amount is None:
            raise ValidationError(
                NO_PROGRESS_PROVIDED,
                "At least one of progress or new_bill_amount must be provided",
                {"accepted_fields": ["progress", "new_bill_amount"]}
            )

        progress_documents, financial_documents = split_documents(documents)

        def mutation(project: Project) -> MutationResult:
            now = self.clock()
            result = MutationResult(project=project, updates_applied={"progress": False, "financial": False})

            if new_progress is not None:
                result.progress_record = self.progress_ledger.add_update(
                    project, new_progress, actor, remarks, progress_documents, now
                )
                result.updates_applied["progress"] = True

            if new_bill_amount is not None:
                result.financial_record = self.financial_ledger.add_update(
                    project, new_bill_amount, actor, remarks, bill_details, financial_documents, now
                )
                result.updates_applied["financial"] = True

            if result.progress_record is not None:
                result.status_change = self.progress_ledger.complete_if_finished(project, actor, now)
                result.advisories = self._progress_advisories(project, result.progress_record, now)
            else:
                result.advisories = timing_advisories(now, "Financial progress")

            applied = [name for name, done in result.updates_applied.items() if done]
            result.message = f"Updated {' and '.join(applied)} progress successfully"
            return result

        outcome = await self.coordinator.run(
            project_id, mutation, OP_COMBINED_UPDATE, idempotency_key, references=MutationResult.references
        )
        return self._finish(outcome)

    # =========================================================================
    # HISTORY READS
    # =========================================================================

    async def get_progress_history(
        self, project_id: str, page: int = 1, page_size: int = views.DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        views.validate_page(page, page_size)
        project = await self.get_project(project_id)

        history = views.paginate(project.progress_updates, page, page_size)
        history.update({
            "project_id": project.project_id,
            "project_name": project.project_name,
            "current_progress": project.progress_percentage,
            "summary": views.summarize_progress_updates(project),
        })
        return history

    async def get_financial_progress_history(
        self, project_id: str, page: int = 1, page_size: int = views.DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        views.validate_page(page, page_size)
        project = await self.get_project(project_id)

        history = views.paginate(project.financial_progress_updates, page, page_size)
        history.update({
            "project_id": project.project_id,
            "project_name": project.project_name,
            "current_financial_progress": project.financial_progress,
            "current_bill_amount": project.bill_submitted_amount,
            "estimated_cost": project.estimated_cost,
            "remaining_budget": views.remaining_budget(project),
            "summary": views.summarize_financial_updates(project),
            "budget_trend": views.budget_trend(project),
        })
        return history

    async def get_status_history(
        self, project_id: str, page: int = 1, page_size: int = views.DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        views.validate_page(page, page_size)
        project = await self.get_project(project_id)

        history = views.paginate(project.status_history, page, page_size)
        history.update({
            "project_id": project.project_id,
            "project_name": project.project_name,
            "current_status": project.status,
            "current_status_info": views.current_status_info(project),
            "status_workflow": project.status_workflow,
        })
        return history

    async def get_editable_status_history(
        self, project_id: str, page: int = 1, page_size: int = views.DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        views.validate_page(page, page_size)
        project = await self.get_project(project_id)

        history = views.paginate(project.editable_status_history, page, page_size)
        history.update({
            "project_id": project.project_id,
            "project_name": project.project_name,
            "is_project_editable": project.is_project_editable,
        })
        return history

    async def get_progress_summary(self, project_id: str, actor: Actor) -> Dict[str, Any]:
        """Role-specific progress overview, cached until the next commit on the project."""
        cached = self.cache.get(project_id, actor.role.value)
        if cached is not None:
            return cached

        project = await self.get_project(project_id)
        summary = {
            "project_id": project.project_id,
            "project_name": project.project_name,
            "version": project.version,
            "progress_summary": views.progress_summary(project),
            "current_status_info": views.current_status_info(project),
            "days_until_deadline": views.days_until_deadline(project, self.clock()),
            "allowed_transitions": [
                s.value for s in self.state_machine.get_allowed_transitions(actor.role, project.status)
            ],
            "can_update_progress": actor.role == LEDGER_ROLE and project.progress_updates_enabled,
            "can_update_financial_progress": (
                actor.role == LEDGER_ROLE and project.financial_progress_updates_enabled
            ),
            "can_change_editable_status": actor.role in EDITABLE_LOCK_ROLES,
        }
        self.cache.set(project_id, actor.role.value, summary)
        return summary

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _progress_advisories(self, project: Project, record: ProgressUpdateRecord, now: datetime) -> List[Dict[str, str]]:
        advisories = timing_advisories(now, "Progress")
        if record.new_progress == float(FULL_PROGRESS):
            advisories.extend(completion_advisories(project, now))
        return advisories

    def _finish(self, outcome: CommitOutcome) -> MutationResult:
        if outcome.replayed:
            return self._replay(outcome)
        result = outcome.value
        result.project = outcome.project
        return result

    def _replay(self, outcome: CommitOutcome) -> MutationResult:
        """Rebuild the result of an already applied operation from its log entry."""
        project = outcome.project
        references = (outcome.operation_log or {}).get("references", {})

        found = {}
        for name, (history_field, record_id) in references.items():
            found[name] = next(
                (r for r in getattr(project, history_field) if r.record_id == record_id), None
            )

        auto_completion = found.pop(AUTO_COMPLETION_REFERENCE, None)
        status_change = None
        if auto_completion is not None:
            status_change = StatusChange(
                occurred=True,
                message="Project status automatically changed to 'Completed'",
                previous_status=auto_completion.previous_status,
                new_status=auto_completion.new_status,
                history_entry=auto_completion
            )

        updates_applied = {}
        if outcome.operation_log and outcome.operation_log.get("operation") == OP_COMBINED_UPDATE:
            updates_applied = {
                "progress": "progress_record" in found,
                "financial": "financial_record" in found,
            }

        logger.info(
            f"[IDEMPOTENT] Replayed {outcome.operation_log.get('operation') if outcome.operation_log else '?'} "
            f"on {project.project_id}"
        )
        return MutationResult(
            project=project,
            message="Operation already applied",
            status_change=status_change,
            updates_applied=updates_applied,
            replayed=True,
            **found
        )
