"""
EDITABLE LOCK

An independent boolean on the project gating whether its core fields may be
edited. It is separate from the approval status:

1. Toggled explicitly by MD / ADMIN / SUPERADMIN only
2. Locked automatically when a project is resubmitted for approval
3. Every toggle appends an EditableStatusHistoryEntry
4. Toggling to the current value is rejected as a no-op
"""

from datetime import datetime
from typing import Optional
import logging

from models import Actor, ChangedBy, EditableStatusHistoryEntry, Project, Role
from .errors import AuthorizationError, ConflictError, NO_OP, UNAUTHORIZED

logger = logging.getLogger(__name__)

EDITABLE_LOCK_ROLES = (Role.MD, Role.ADMIN, Role.SUPERADMIN)

RESUBMISSION_LOCK_REASON = "Automatic: Project resubmitted for approval, locking for review"


def set_editable_status(
    project: Project,
    is_editable: bool,
    actor: Actor,
    reason: str = "",
    now: Optional[datetime] = None
) -> EditableStatusHistoryEntry:
    """
    Toggle the editable lock on behalf of an actor.

    Raises:
        AuthorizationError(UNAUTHORIZED) if the actor's role may not toggle
        ConflictError(NO_OP) if the lock already has the requested value
    """
    if actor.role not in EDITABLE_LOCK_ROLES:
        raise AuthorizationError(
            UNAUTHORIZED,
            f"Only {', '.join(r.value for r in EDITABLE_LOCK_ROLES)} can change project editable status",
            {"required_roles": [r.value for r in EDITABLE_LOCK_ROLES], "current_role": actor.role.value}
        )

    if project.is_project_editable == is_editable:
        raise ConflictError(
            NO_OP,
            f"Project is already {'editable' if is_editable else 'non-editable'}",
            {"project_id": project.project_id, "is_project_editable": is_editable}
        )

    return _apply(project, is_editable, actor, reason, automatic=False, now=now)


def lock_for_review(
    project: Project,
    actor: Actor,
    reason: str = RESUBMISSION_LOCK_REASON,
    now: Optional[datetime] = None
) -> Optional[EditableStatusHistoryEntry]:
    """
    Lock the project as a side effect of resubmission.

    No role check and no NO_OP failure: an already locked project is left
    untouched and no history entry is written.
    """
    if not project.is_project_editable:
        logger.debug(f"[EDITABLE_LOCK] {project.project_id} already locked, skipping automatic lock")
        return None
    return _apply(project, False, actor, reason, automatic=True, now=now)


def _apply(
    project: Project,
    is_editable: bool,
    actor: Actor,
    reason: str,
    automatic: bool,
    now: Optional[datetime]
) -> EditableStatusHistoryEntry:
    entry = EditableStatusHistoryEntry(
        previous_status=project.is_project_editable,
        new_status=is_editable,
        changed_by=ChangedBy.from_actor(actor),
        reason=reason.strip(),
        is_automatic=automatic,
        changed_at=now or datetime.utcnow()
    )
    project.is_project_editable = is_editable
    project.editable_status_history.append(entry)

    logger.info(
        f"[EDITABLE_LOCK] {project.project_id} editable -> {is_editable} "
        f"by {actor.name} ({actor.role.value}){' [automatic]' if automatic else ''}"
    )
    return entry
