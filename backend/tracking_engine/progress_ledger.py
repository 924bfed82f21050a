"""
PHYSICAL PROGRESS LEDGER

Append-only history of physical (on-the-ground) progress updates.

Rules, checked in order before anything is mutated:
1. value in [0, 100] with at most two decimals        INVALID_VALUE
2. actor is a Junior Engineer                          UNAUTHORIZED
3. progress updates enabled on the project             UPDATES_DISABLED
4. a decrease may not exceed 5 points                  BACKWARD_NOT_ALLOWED
5. an increase may not exceed 50 points                UNREALISTIC_JUMP
6. 100% needs at least one supporting document         COMPLETION_REQUIRES_DOCUMENTS

Reaching 100% while the project is Ongoing auto-completes the project. That
chained transition is soft: its failure is logged and reported, never raised.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence
import logging

from models import Actor, ProgressUpdateRecord, Project, ProjectStatus, StatusHistoryEntry, SupportingDocument, UpdatedBy
from .errors import (
    BusinessRuleViolation, ProjectEngineError,
    BACKWARD_NOT_ALLOWED, UNREALISTIC_JUMP, COMPLETION_REQUIRES_DOCUMENTS,
)
from .precision import parse_two_decimal, to_decimal, to_float
from .state_machine import StateMachine
from .validation import MAX_REMARKS_LENGTH, clean_text, require_ledger_role, require_updates_enabled

logger = logging.getLogger(__name__)

MAX_BACKWARD_PROGRESS_POINTS = Decimal('5')
MAX_FORWARD_PROGRESS_POINTS = Decimal('50')
FULL_PROGRESS = Decimal('100')

AUTO_COMPLETION_REMARKS = "Project automatically marked as completed due to 100% progress achievement"


@dataclass
class StatusChange:
    """Outcome of the auto-completion side effect."""
    occurred: bool = False
    message: str = ""
    previous_status: Optional[ProjectStatus] = None
    new_status: Optional[ProjectStatus] = None
    history_entry: Optional[StatusHistoryEntry] = None


class ProgressLedger:

    def __init__(self, state_machine: StateMachine):
        self.state_machine = state_machine

    def validate(
        self,
        project: Project,
        new_progress,
        actor: Actor,
        documents: Sequence[SupportingDocument] = ()
    ) -> Decimal:
        """Run every rule; returns the parsed progress value."""
        progress = parse_two_decimal(new_progress, "progress", minimum=0, maximum=100)
        require_ledger_role(actor, "project progress")
        require_updates_enabled(project.progress_updates_enabled, project.project_id, "Progress")

        current = to_decimal(project.progress_percentage)

        if progress < current and current - progress > MAX_BACKWARD_PROGRESS_POINTS:
            raise BusinessRuleViolation(
                BACKWARD_NOT_ALLOWED,
                "Significant backward progress is not allowed. Please contact administrator "
                f"for corrections greater than {MAX_BACKWARD_PROGRESS_POINTS}%",
                {
                    "current_progress": float(current),
                    "attempted_progress": float(progress),
                    "max_allowed_decrease": float(MAX_BACKWARD_PROGRESS_POINTS),
                }
            )

        if progress - current > MAX_FORWARD_PROGRESS_POINTS:
            raise BusinessRuleViolation(
                UNREALISTIC_JUMP,
                f"Progress increase exceeds reasonable limits. Maximum {MAX_FORWARD_PROGRESS_POINTS}% "
                f"increase per update",
                {
                    "current_progress": float(current),
                    "attempted_progress": float(progress),
                    "max_allowed_increase": float(MAX_FORWARD_PROGRESS_POINTS),
                }
            )

        if progress == FULL_PROGRESS and len(documents) == 0:
            raise BusinessRuleViolation(
                COMPLETION_REQUIRES_DOCUMENTS,
                "Project completion (100% progress) requires at least one supporting document",
                {"progress": 100, "files_uploaded": 0, "requirement": "Minimum 1 supporting file"}
            )

        return progress

    def add_update(
        self,
        project: Project,
        new_progress,
        actor: Actor,
        remarks: str = "",
        documents: Sequence[SupportingDocument] = (),
        now: Optional[datetime] = None
    ) -> ProgressUpdateRecord:
        """Validate, then append one record and move progress_percentage."""
        progress = self.validate(project, new_progress, actor, documents)
        remarks = clean_text(remarks, "remarks", MAX_REMARKS_LENGTH)
        now = now or datetime.utcnow()

        previous = to_decimal(project.progress_percentage)
        record = ProgressUpdateRecord(
            previous_progress=to_float(previous),
            new_progress=to_float(progress),
            progress_difference=to_float(progress - previous),
            remarks=remarks,
            supporting_documents=list(documents),
            updated_by=UpdatedBy.from_actor(actor),
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            created_at=now
        )

        project.progress_updates.append(record)
        project.progress_percentage = record.new_progress
        project.last_progress_update = now

        logger.info(
            f"[PROGRESS] {project.project_id}: {record.previous_progress}% -> {record.new_progress}% "
            f"by {actor.user_id}"
        )
        return record

    def complete_if_finished(
        self,
        project: Project,
        actor: Actor,
        now: Optional[datetime] = None
    ) -> StatusChange:
        """
        Auto-complete an Ongoing project sitting at 100%.

        Soft-fail: rule failures of the chained transition are logged and
        returned in the StatusChange, the progress update stays applied.
        """
        if to_decimal(project.progress_percentage) != FULL_PROGRESS:
            return StatusChange()

        if project.status != ProjectStatus.ONGOING:
            return StatusChange(
                message=(
                    f"Progress reached 100%, but project status is '{project.status.value}' "
                    f"instead of 'Ongoing'. Manual status change may be required."
                )
            )

        previous_status = project.status
        try:
            entry = self.state_machine.transition(
                project,
                ProjectStatus.COMPLETED,
                actor,
                remarks=AUTO_COMPLETION_REMARKS,
                automatic=True,
                now=now
            )
        except ProjectEngineError as e:
            logger.error(
                f"[PROGRESS] Failed to auto-complete project {project.project_id}: {e.message}"
            )
            return StatusChange(
                message=f"Progress updated to 100%, but status change failed: {e.message}",
                previous_status=previous_status,
                new_status=previous_status
            )

        logger.info(f"[PROGRESS] Project {project.project_id} automatically marked Completed")
        return StatusChange(
            occurred=True,
            message="Project status automatically changed to 'Completed'",
            previous_status=previous_status,
            new_status=ProjectStatus.COMPLETED,
            history_entry=entry
        )
