"""
PROJECT STATUS STATE MACHINE

A role-gated state machine for the project approval lifecycle with:
- An explicit transition table (role -> from_state -> {to_states})
- Transition validation with the allowed targets in the error
- On-enter handlers for workflow timestamps and the resubmission lock
- Append-only status history

Usage:
    machine = build_project_state_machine()
    entry = machine.transition(project, ProjectStatus.ONGOING, actor, remarks="Approved")

All checks run before any field is touched; the caller works on a copy of
the aggregate, so a failed transition leaves nothing behind.
"""

from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple
from datetime import datetime
import logging

from models import (
    Actor, ChangedBy, Project, ProjectStatus, Role, StatusHistoryEntry,
    REJECTION_STATUSES, PENDING_STATUSES,
)
from .editable_lock import lock_for_review
from .errors import (
    AuthorizationError, BusinessRuleViolation, ConflictError,
    INVALID_TRANSITION, NO_OP, REJECTION_REASON_REQUIRED,
)

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

def _approval_targets(rejection: ProjectStatus) -> Dict[ProjectStatus, FrozenSet[ProjectStatus]]:
    targets = frozenset({rejection, ProjectStatus.ONGOING})
    return {state: targets for state in PENDING_STATUSES}


TRANSITION_TABLE: Mapping[Role, Mapping[ProjectStatus, FrozenSet[ProjectStatus]]] = {
    Role.JE: {
        ProjectStatus.REJECTED_BY_AEE: frozenset({ProjectStatus.RESUBMITTED_FOR_APPROVAL}),
        ProjectStatus.REJECTED_BY_CE: frozenset({ProjectStatus.RESUBMITTED_FOR_APPROVAL}),
        ProjectStatus.REJECTED_BY_MD: frozenset({ProjectStatus.RESUBMITTED_FOR_APPROVAL}),
        ProjectStatus.ONGOING: frozenset({ProjectStatus.COMPLETED}),
    },
    Role.AEE: _approval_targets(ProjectStatus.REJECTED_BY_AEE),
    Role.CE: _approval_targets(ProjectStatus.REJECTED_BY_CE),
    Role.MD: _approval_targets(ProjectStatus.REJECTED_BY_MD),
    Role.ADMIN: {},
    Role.SUPERADMIN: {},
}


# =============================================================================
# EXCEPTIONS
# =============================================================================

class InvalidTransitionError(AuthorizationError):
    """Raised when (role, from_state, to_state) is not in the table."""
    def __init__(self, entity: str, role: Role, from_state: ProjectStatus, to_state: ProjectStatus,
                 allowed: List[ProjectStatus] = None):
        self.entity = entity
        self.role = role
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        if self.allowed:
            message = (
                f"Invalid status transition from '{from_state.value}' to '{to_state.value}' "
                f"for {role.value}"
            )
        else:
            message = f"{role.value} is not authorized to change status from '{from_state.value}'"
        super().__init__(
            INVALID_TRANSITION,
            message,
            {
                "entity": entity,
                "role": role.value,
                "current_status": from_state.value,
                "attempted_status": to_state.value,
                "allowed_statuses": [s.value for s in self.allowed],
            }
        )


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Handler signature: def handler(project, actor, now) -> None
EnterHandler = Callable[[Project, Actor, datetime], None]



# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Role-gated state machine over an in-memory aggregate.

    Example:
        machine = StateMachine("project")
        machine.register(Role.AEE, ProjectStatus.SUBMITTED_FOR_APPROVAL, ProjectStatus.ONGOING)
        machine.on_enter(ProjectStatus.ONGOING, stamp_approval)

        entry = machine.transition(project, ProjectStatus.ONGOING, actor)
    """

    def __init__(self, entity_name: str):
        self.entity_name = entity_name

        # (role, from_state, to_state) in declaration order
        self._transitions: List[Tuple[Role, ProjectStatus, ProjectStatus]] = []
        self._states: Set[ProjectStatus] = set()
        self._enter_handlers: Dict[ProjectStatus, List[EnterHandler]] = {}

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        role: Role,
        from_state: ProjectStatus,
        to_state: ProjectStatus
    ) -> "StateMachine":
        key = (role, from_state, to_state)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Duplicate transition ignored {self.entity_name}: "
                f"{role.value} '{from_state.value}' -> '{to_state.value}'"
            )
            return self

        self._transitions.append(key)
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    def register_table(self, table: Mapping[Role, Mapping[ProjectStatus, FrozenSet[ProjectStatus]]]) -> "StateMachine":
        for role, edges in table.items():
            for from_state, targets in edges.items():
                for to_state in targets:
                    self.register(role, from_state, to_state)
        return self

    def on_enter(self, state: ProjectStatus, handler: EnterHandler) -> "StateMachine":
        """Register a handler that runs after the status field is set to `state`."""
        self._enter_handlers.setdefault(state, []).append(handler)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, role: Role, from_state: ProjectStatus) -> List[ProjectStatus]:
        """Valid target states for a role from a given state, in declaration order."""
        return [dst for (r, src, dst) in self._transitions if r == role and src == from_state]

    def can_transition(self, role: Role, from_state: ProjectStatus, to_state: ProjectStatus) -> bool:
        return (role, from_state, to_state) in self._transitions

    def validate_transition(self, role: Role, from_state: ProjectStatus, to_state: ProjectStatus) -> None:
        """Raises InvalidTransitionError if the transition is not registered."""
        if not self.can_transition(role, from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                role=role,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(role, from_state)
            )

    def check(
        self,
        project: Project,
        to_state: ProjectStatus,
        actor: Actor,
        rejection_reason: str = ""
    ) -> None:
        """
        Run every precondition of a status change without mutating.

        Order: NO_OP, REJECTION_REASON_REQUIRED, INVALID_TRANSITION.
        """
        from_state = project.status

        if to_state == from_state:
            raise ConflictError(
                NO_OP,
                f"Project is already in '{to_state.value}' status",
                {"current_status": from_state.value, "attempted_status": to_state.value}
            )

        if to_state in REJECTION_STATUSES and not (rejection_reason or "").strip():
            raise BusinessRuleViolation(
                REJECTION_REASON_REQUIRED,
                "Rejection reason is required for rejected status",
                {"attempted_status": to_state.value}
            )

        self.validate_transition(actor.role, from_state, to_state)

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    def transition(
        self,
        project: Project,
        to_state: ProjectStatus,
        actor: Actor,
        remarks: str = "",
        rejection_reason: str = "",
        automatic: bool = False,
        now: Optional[datetime] = None
    ) -> StatusHistoryEntry:
        """
        Execute a status transition on the aggregate.

        Returns:
            The appended StatusHistoryEntry

        Raises:
            ConflictError(NO_OP), BusinessRuleViolation(REJECTION_REASON_REQUIRED),
            InvalidTransitionError(INVALID_TRANSITION)
        """
        self.check(project, to_state, actor, rejection_reason)

        now = now or datetime.utcnow()
        from_state = project.status

        entry = StatusHistoryEntry(
            previous_status=from_state,
            new_status=to_state,
            changed_by=ChangedBy.from_actor(actor),
            remarks=(remarks or "").strip(),
            rejection_reason=rejection_reason.strip() if to_state in REJECTION_STATUSES else None,
            is_automatic=automatic,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            created_at=now
        )

        project.status = to_state
        project.status_history.append(entry)

        for handler in self._enter_handlers.get(to_state, []):
            handler(project, actor, now)

        logger.info(
            f"[STATE_MACHINE] {self.entity_name} {project.project_id}: "
            f"'{from_state.value}' -> '{to_state.value}' by {actor.name} ({actor.role.value})"
            f"{' [automatic]' if automatic else ''}"
        )
        return entry

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_graph(self) -> Dict[ProjectStatus, List[ProjectStatus]]:
        """State graph as adjacency list, across all roles."""
        graph = {state: [] for state in self._states}
        for (_, src, dst) in self._transitions:
            if dst not in graph[src]:
                graph[src].append(dst)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )


# =============================================================================
# WORKFLOW HANDLERS
# =============================================================================

def _stamp_submitted(project: Project, actor: Actor, now: datetime) -> None:
    workflow = project.status_workflow
    workflow.submitted_at = now
    # A fresh review round starts: earlier decisions no longer apply
    workflow.approved_at = None
    workflow.approved_by = None
    workflow.rejected_at = None
    workflow.rejected_by = None
    lock_for_review(project, actor, now=now)


def _stamp_approved(project: Project, actor: Actor, now: datetime) -> None:
    project.status_workflow.approved_at = now
    project.status_workflow.approved_by = ChangedBy.from_actor(actor)


def _stamp_rejected(project: Project, actor: Actor, now: datetime) -> None:
    project.status_workflow.rejected_at = now
    project.status_workflow.rejected_by = ChangedBy.from_actor(actor)


def _stamp_completed(project: Project, actor: Actor, now: datetime) -> None:
    project.status_workflow.completed_at = now


def build_project_state_machine() -> StateMachine:
    """Create the project lifecycle machine from TRANSITION_TABLE."""
    machine = StateMachine("project").register_table(TRANSITION_TABLE)

    machine.on_enter(ProjectStatus.RESUBMITTED_FOR_APPROVAL, _stamp_submitted)
    machine.on_enter(ProjectStatus.ONGOING, _stamp_approved)
    for rejection in REJECTION_STATUSES:
        machine.on_enter(rejection, _stamp_rejected)
    machine.on_enter(ProjectStatus.COMPLETED, _stamp_completed)

    logger.debug(f"[STATE_MACHINE] Built {machine!r}")
    return machine
