"""
Status workflow tests

Covers:
  - Transition table lookups per role
  - Check order: no-op, rejection reason, role/state gate
  - Workflow timestamps and history entries
  - Automatic editable lock on resubmission
  - Editable lock role gate and no-op
"""
import asyncio

import pytest

from models import ProjectStatus, Role
from tracking_engine.errors import (
    AuthorizationError, BusinessRuleViolation, ConflictError, ValidationError,
    INVALID_TRANSITION, INVALID_VALUE, NO_OP, REJECTION_REASON_REQUIRED, UNAUTHORIZED,
)
from tracking_engine.state_machine import (
    InvalidTransitionError, StateMachine, TRANSITION_TABLE, build_project_state_machine,
)


class TestTransitionTable:
    """Lookups against the declared table"""

    def test_approvers_share_from_states(self):
        machine = build_project_state_machine()
        for role, rejection in (
            (Role.AEE, ProjectStatus.REJECTED_BY_AEE),
            (Role.CE, ProjectStatus.REJECTED_BY_CE),
            (Role.MD, ProjectStatus.REJECTED_BY_MD),
        ):
            for source in (ProjectStatus.SUBMITTED_FOR_APPROVAL, ProjectStatus.RESUBMITTED_FOR_APPROVAL):
                assert set(machine.get_allowed_transitions(role, source)) == {rejection, ProjectStatus.ONGOING}

    def test_je_resubmits_and_completes(self):
        machine = build_project_state_machine()
        assert machine.can_transition(Role.JE, ProjectStatus.REJECTED_BY_CE, ProjectStatus.RESUBMITTED_FOR_APPROVAL)
        assert machine.can_transition(Role.JE, ProjectStatus.ONGOING, ProjectStatus.COMPLETED)
        assert not machine.can_transition(Role.JE, ProjectStatus.SUBMITTED_FOR_APPROVAL, ProjectStatus.ONGOING)

    def test_admins_have_no_transitions(self):
        machine = build_project_state_machine()
        assert TRANSITION_TABLE[Role.ADMIN] == {}
        for state in ProjectStatus:
            assert machine.get_allowed_transitions(Role.ADMIN, state) == []
            assert machine.get_allowed_transitions(Role.SUPERADMIN, state) == []

    def test_completed_is_terminal(self):
        graph = build_project_state_machine().get_graph()
        assert graph[ProjectStatus.COMPLETED] == []

    def test_duplicate_registration_is_ignored(self):
        machine = StateMachine("project")
        machine.register(Role.MD, ProjectStatus.SUBMITTED_FOR_APPROVAL, ProjectStatus.ONGOING)
        machine.register(Role.MD, ProjectStatus.SUBMITTED_FOR_APPROVAL, ProjectStatus.ONGOING)
        assert machine.get_allowed_transitions(Role.MD, ProjectStatus.SUBMITTED_FOR_APPROVAL) == [ProjectStatus.ONGOING]

    def test_validate_transition_lists_allowed_targets(self):
        machine = build_project_state_machine()
        with pytest.raises(InvalidTransitionError) as exc:
            machine.validate_transition(Role.AEE, ProjectStatus.SUBMITTED_FOR_APPROVAL, ProjectStatus.COMPLETED)
        assert set(exc.value.details["allowed_statuses"]) == {"Rejected by AEE", "Ongoing"}


class TestChangeStatus:
    """change_status through the service"""

    def test_new_project_starts_submitted(self, project, clock):
        assert project.status == ProjectStatus.SUBMITTED_FOR_APPROVAL
        assert project.status_workflow.submitted_at == clock.now
        assert project.status_history == []
        assert project.is_project_editable is False

    def test_aee_cannot_complete_submitted_project(self, service, project, aee):
        """AEE may only approve or reject a pending project"""
        with pytest.raises(AuthorizationError) as exc:
            asyncio.run(service.change_status(project.project_id, ProjectStatus.COMPLETED, aee))
        assert exc.value.code == INVALID_TRANSITION

        stored = asyncio.run(service.get_project(project.project_id))
        assert stored.status == ProjectStatus.SUBMITTED_FOR_APPROVAL
        assert stored.version == project.version

    def test_rejection_requires_reason(self, service, project, ce):
        with pytest.raises(BusinessRuleViolation) as exc:
            asyncio.run(service.change_status(project.project_id, ProjectStatus.REJECTED_BY_CE, ce, rejection_reason="   "))
        assert exc.value.code == REJECTION_REASON_REQUIRED

        result = asyncio.run(service.change_status(
            project.project_id, ProjectStatus.REJECTED_BY_CE, ce, rejection_reason="Drawings incomplete"
        ))
        assert result.project.status == ProjectStatus.REJECTED_BY_CE
        assert result.project.progress_percentage == 0
        assert len(result.project.status_history) == 1
        assert result.history_entry.rejection_reason == "Drawings incomplete"
        assert result.project.status_workflow.rejected_by.user_id == ce.user_id

    def test_same_status_is_no_op_before_anything_else(self, service, ongoing_project, admin):
        """NO_OP wins even for a role without transitions"""
        with pytest.raises(ConflictError) as exc:
            asyncio.run(service.change_status(ongoing_project.project_id, ProjectStatus.ONGOING, admin))
        assert exc.value.code == NO_OP

    def test_rejection_reason_checked_before_role(self, service, project, je):
        with pytest.raises(BusinessRuleViolation) as exc:
            asyncio.run(service.change_status(project.project_id, ProjectStatus.REJECTED_BY_MD, je))
        assert exc.value.code == REJECTION_REASON_REQUIRED

    def test_approval_stamps_workflow(self, ongoing_project, aee, clock):
        workflow = ongoing_project.status_workflow
        assert ongoing_project.status == ProjectStatus.ONGOING
        assert workflow.approved_at == clock.now
        assert workflow.approved_by.user_id == aee.user_id

        entry = ongoing_project.status_history[-1]
        assert entry.previous_status == ProjectStatus.SUBMITTED_FOR_APPROVAL
        assert entry.new_status == ProjectStatus.ONGOING
        assert entry.remarks == "Approved"
        assert entry.rejection_reason is None
        assert entry.is_automatic is False
        assert entry.ip_address == aee.ip_address

    def test_reason_dropped_for_non_rejection(self, service, project, md):
        result = asyncio.run(service.change_status(
            project.project_id, ProjectStatus.ONGOING, md, rejection_reason="not used"
        ))
        assert result.history_entry.rejection_reason is None

    def test_unknown_status_string(self, service, project, aee):
        with pytest.raises(ValidationError) as exc:
            asyncio.run(service.change_status(project.project_id, "Paused", aee))
        assert exc.value.code == INVALID_VALUE

    def test_version_moves_once_per_commit(self, service, project, ce, je):
        assert project.version == 0
        first = asyncio.run(service.change_status(
            project.project_id, ProjectStatus.REJECTED_BY_CE, ce, rejection_reason="Fix estimate"
        ))
        second = asyncio.run(service.change_status(project.project_id, ProjectStatus.RESUBMITTED_FOR_APPROVAL, je))
        assert first.project.version == 1
        assert second.project.version == 2


class TestResubmission:
    """JE resubmits after a rejection"""

    def _reject(self, service, project, ce):
        return asyncio.run(service.change_status(
            project.project_id, ProjectStatus.REJECTED_BY_CE, ce, rejection_reason="Fix estimate"
        ))

    def test_resubmission_resets_review_round(self, service, project, ce, je, clock):
        self._reject(service, project, ce)
        clock.advance(days=1)

        result = asyncio.run(service.change_status(project.project_id, ProjectStatus.RESUBMITTED_FOR_APPROVAL, je))
        workflow = result.project.status_workflow
        assert workflow.submitted_at == clock.now
        assert workflow.rejected_at is None
        assert workflow.rejected_by is None

    def test_resubmission_locks_editable_project(self, service, project, ce, je, md):
        self._reject(service, project, ce)
        asyncio.run(service.set_editable_lock(project.project_id, True, md, reason="Allow corrections"))

        result = asyncio.run(service.change_status(project.project_id, ProjectStatus.RESUBMITTED_FOR_APPROVAL, je))
        assert result.project.is_project_editable is False
        assert result.editable_entry is not None
        assert result.editable_entry.is_automatic is True
        assert result.editable_entry.previous_status is True
        assert len(result.project.editable_status_history) == 2

    def test_resubmission_of_locked_project_writes_no_lock_entry(self, service, project, ce, je):
        self._reject(service, project, ce)
        result = asyncio.run(service.change_status(project.project_id, ProjectStatus.RESUBMITTED_FOR_APPROVAL, je))
        assert result.editable_entry is None
        assert result.project.editable_status_history == []

    def test_resubmitted_project_can_be_approved(self, service, project, ce, je):
        self._reject(service, project, ce)
        asyncio.run(service.change_status(project.project_id, ProjectStatus.RESUBMITTED_FOR_APPROVAL, je))
        result = asyncio.run(service.change_status(project.project_id, ProjectStatus.ONGOING, ce))
        assert [e.new_status for e in result.project.status_history] == [
            ProjectStatus.REJECTED_BY_CE,
            ProjectStatus.RESUBMITTED_FOR_APPROVAL,
            ProjectStatus.ONGOING,
        ]


class TestEditableLock:
    """Independent lock toggled by MD / ADMIN / SUPERADMIN"""

    def test_only_lock_roles_may_toggle(self, service, project, je, aee):
        for actor in (je, aee):
            with pytest.raises(AuthorizationError) as exc:
                asyncio.run(service.set_editable_lock(project.project_id, True, actor))
            assert exc.value.code == UNAUTHORIZED

    def test_toggle_appends_history(self, service, project, admin, clock):
        result = asyncio.run(service.set_editable_lock(project.project_id, True, admin, reason="Scope change"))
        assert result.project.is_project_editable is True
        entry = result.history_entry
        assert entry.previous_status is False
        assert entry.new_status is True
        assert entry.reason == "Scope change"
        assert entry.changed_at == clock.now
        assert entry.is_automatic is False

    def test_toggle_to_current_value_is_no_op(self, service, project, md):
        with pytest.raises(ConflictError) as exc:
            asyncio.run(service.set_editable_lock(project.project_id, False, md))
        assert exc.value.code == NO_OP

        stored = asyncio.run(service.get_project(project.project_id))
        assert stored.editable_status_history == []
