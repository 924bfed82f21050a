"""
Transaction coordinator tests

Covers:
  - Commit on success, discard on any failure path
  - Invariant check blocks the commit
  - Timeout leaves stored state unchanged
  - Same-project serialisation, cross-project independence
  - Version conflict retry and give-up
  - Idempotency-key replay and reuse
  - Cache invalidation after commit
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from models import ProjectCreate, ProjectStatus, Role
from project_service import ProjectLifecycleService
from repository import InMemoryProjectRepository
from tracking_engine.errors import (
    BusinessRuleViolation, ConcurrentModificationError, ConflictError, InvariantViolationError,
    NotFoundError, TransientError,
    DUPLICATE_PROJECT, IDEMPOTENCY_KEY_REUSED, PROJECT_NOT_FOUND,
    STORE_UNAVAILABLE, TRANSACTION_TIMEOUT, VERSION_CONFLICT,
)

from conftest import DEFAULT_NOW, PROJECT_ID, FakeClock, make_actor


class FailingRepository(InMemoryProjectRepository):
    async def commit(self, project, expected_version, operation_log=None):
        raise TransientError(STORE_UNAVAILABLE, "store went away")


class SlowRepository(InMemoryProjectRepository):
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def commit(self, project, expected_version, operation_log=None):
        await asyncio.sleep(self.delay)
        await super().commit(project, expected_version, operation_log)


class InterferingRepository(InMemoryProjectRepository):
    """Another instance commits right before each of the first `interference` commits."""

    def __init__(self, interference: int):
        super().__init__()
        self.interference = interference
        self.commits = 0

    async def commit(self, project, expected_version, operation_log=None):
        self.commits += 1
        if self.interference > 0:
            self.interference -= 1
            self._projects[project.project_id].version += 1
        await super().commit(project, expected_version, operation_log)


class CompetingCommitRepository(InMemoryProjectRepository):
    """Runs `before_commit` once, ahead of the next commit, to stand in for another instance."""

    def __init__(self):
        super().__init__()
        self.before_commit = None

    async def commit(self, project, expected_version, operation_log=None):
        hook, self.before_commit = self.before_commit, None
        if hook is not None:
            await hook()
        await super().commit(project, expected_version, operation_log)


def create_project(service, actor, project_id=PROJECT_ID):
    payload = ProjectCreate(
        project_id=project_id,
        project_name=f"Bridge Rehabilitation {project_id}",
        estimated_cost=100000,
        project_end_date=datetime(2024, 12, 31)
    )
    return asyncio.run(service.create_project(payload, actor))


class TestTransactionScope:

    def test_commit_on_normal_exit(self, service, project):
        async def rename():
            async with service.coordinator.transaction(project.project_id) as tx:
                tx.project.project_name = "Ring Road Phase 1A"

        asyncio.run(rename())
        stored = asyncio.run(service.get_project(project.project_id))
        assert stored.project_name == "Ring Road Phase 1A"
        assert stored.version == 1

    def test_discard_on_exception(self, service, project):
        async def rename_then_fail():
            async with service.coordinator.transaction(project.project_id) as tx:
                tx.project.project_name = "Should not persist"
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(rename_then_fail())

        stored = asyncio.run(service.get_project(project.project_id))
        assert stored.project_name == project.project_name
        assert stored.version == 0

    def test_unknown_project(self, service, je):
        with pytest.raises(NotFoundError) as exc:
            asyncio.run(service.add_progress_update("PRJ-404", 10, je))
        assert exc.value.code == PROJECT_NOT_FOUND

    def test_duplicate_project(self, service, project, je):
        with pytest.raises(ConflictError) as exc:
            create_project(service, je)
        assert exc.value.code == DUPLICATE_PROJECT

    def test_store_failure_rolls_back(self, clock, je):
        repository = FailingRepository()
        service = ProjectLifecycleService(repository, clock=clock)
        project = create_project(service, je)

        with pytest.raises(TransientError) as exc:
            asyncio.run(service.add_progress_update(project.project_id, 10, je))
        assert exc.value.code == STORE_UNAVAILABLE

        stored = asyncio.run(service.get_project(project.project_id))
        assert stored.progress_updates == []
        assert stored.version == 0


class TestInvariantGate:

    def test_financial_drift_blocks_commit(self, service, project):
        def corrupt(working):
            working.financial_progress = 40

        with pytest.raises(InvariantViolationError) as exc:
            asyncio.run(service.coordinator.run(project.project_id, corrupt, "test"))
        assert exc.value.violation_type == "FINANCIAL_PROGRESS_DRIFT"
        assert asyncio.run(service.get_project(project.project_id)).financial_progress == 0

    def test_history_rewrite_blocks_commit(self, service, ongoing_project):
        def rewrite(working):
            working.status_history.pop()

        with pytest.raises(InvariantViolationError) as exc:
            asyncio.run(service.coordinator.run(ongoing_project.project_id, rewrite, "test"))
        assert exc.value.violation_type == "HISTORY_REWRITTEN"

    def test_bill_above_cost_blocks_commit(self, service, project):
        def overbill(working):
            working.bill_submitted_amount = 100000.01

        with pytest.raises(InvariantViolationError):
            asyncio.run(service.coordinator.run(project.project_id, overbill, "test"))


class TestTimeout:

    def test_timeout_leaves_state_unchanged(self, clock, je):
        service = ProjectLifecycleService(SlowRepository(delay=0.5), clock=clock, timeout_seconds=0.05)
        project = create_project(service, je)

        with pytest.raises(TransientError) as exc:
            asyncio.run(service.add_progress_update(project.project_id, 10, je))
        assert exc.value.code == TRANSACTION_TIMEOUT

        stored = asyncio.run(service.get_project(project.project_id))
        assert stored.progress_updates == []
        assert stored.progress_percentage == 0
        assert stored.version == 0


class TestConcurrency:

    def test_same_project_updates_serialise(self, service, project, je):
        values = [10, 11, 12, 13, 14]

        async def burst():
            return await asyncio.gather(*[
                service.add_progress_update(project.project_id, value, je) for value in values
            ])

        results = asyncio.run(burst())
        assert all(not r.replayed for r in results)

        stored = asyncio.run(service.get_project(project.project_id))
        assert stored.version == len(values)
        assert len(stored.progress_updates) == len(values)

        # No lost update: each record starts where the previous one ended
        previous = 0
        for record in stored.progress_updates:
            assert record.previous_progress == previous
            previous = record.new_progress
        assert stored.progress_percentage == previous

    def test_other_projects_are_not_blocked(self, service, project, je):
        other = create_project(service, je, project_id="PRJ-2024-002")

        async def update_while_first_is_locked():
            lock = service.coordinator._lock_for(project.project_id)
            async with lock:
                return await asyncio.wait_for(
                    service.add_progress_update(other.project_id, 10, je), timeout=1
                )

        result = asyncio.run(update_while_first_is_locked())
        assert result.project.progress_percentage == 10

    def test_version_conflict_is_retried(self, clock, je):
        repository = InterferingRepository(interference=1)
        service = ProjectLifecycleService(repository, clock=clock)
        project = create_project(service, je)

        result = asyncio.run(service.add_progress_update(project.project_id, 10, je))
        assert repository.commits == 2
        assert result.project.version == 2
        assert len(result.project.progress_updates) == 1

    def test_retries_are_bounded(self, clock, je):
        repository = InterferingRepository(interference=10)
        service = ProjectLifecycleService(repository, clock=clock, max_retries=2)
        project = create_project(service, je)

        with pytest.raises(ConcurrentModificationError) as exc:
            asyncio.run(service.add_progress_update(project.project_id, 10, je))
        assert exc.value.code == VERSION_CONFLICT
        assert repository.commits == 3

    def test_retried_update_is_newest_in_history(self):
        repository = CompetingCommitRepository()
        clock_a = FakeClock(DEFAULT_NOW)
        clock_b = FakeClock(DEFAULT_NOW + timedelta(minutes=5))
        service_a = ProjectLifecycleService(repository, clock=clock_a)
        service_b = ProjectLifecycleService(repository, clock=clock_b)
        je = make_actor(Role.JE)
        create_project(service_a, je)

        async def other_instance_commits_first():
            clock_a.advance(minutes=10)
            await service_b.add_progress_update(PROJECT_ID, 20, je)

        repository.before_commit = other_instance_commits_first
        asyncio.run(service_a.add_progress_update(PROJECT_ID, 22, je))

        history = asyncio.run(service_a.get_progress_history(PROJECT_ID))
        assert [(r.previous_progress, r.new_progress) for r in history["records"]] == [(20, 22), (0, 20)]
        assert history["records"][0].created_at == DEFAULT_NOW + timedelta(minutes=10)

        stored = asyncio.run(service_a.get_project(PROJECT_ID))
        assert stored.version == 2
        assert stored.progress_percentage == 22
        assert stored.last_progress_update == DEFAULT_NOW + timedelta(minutes=10)


class TestIdempotency:

    def test_replay_returns_original_record(self, service, project, je):
        first = asyncio.run(service.add_progress_update(project.project_id, 10, je, idempotency_key="op-1"))
        second = asyncio.run(service.add_progress_update(project.project_id, 10, je, idempotency_key="op-1"))

        assert first.replayed is False
        assert second.replayed is True
        assert second.record.record_id == first.record.record_id
        assert len(second.project.progress_updates) == 1
        assert second.project.version == 1

    def test_key_written_with_commit(self, service, repository, project, je):
        result = asyncio.run(service.add_progress_update(project.project_id, 10, je, idempotency_key="op-2"))
        log = asyncio.run(repository.find_operation("op-2"))
        assert log["project_id"] == project.project_id
        assert log["operation"] == "progress_update"
        assert log["version"] == 1
        assert log["references"]["record"] == ["progress_updates", result.record.record_id]

    def test_failed_operation_does_not_burn_key(self, service, project, je):
        with pytest.raises(BusinessRuleViolation):
            asyncio.run(service.add_progress_update(project.project_id, 90, je, idempotency_key="op-3"))
        result = asyncio.run(service.add_progress_update(project.project_id, 40, je, idempotency_key="op-3"))
        assert result.replayed is False
        assert result.project.progress_percentage == 40

    def test_key_reuse_for_other_operation(self, service, project, je):
        asyncio.run(service.add_progress_update(project.project_id, 10, je, idempotency_key="op-4"))
        with pytest.raises(ConflictError) as exc:
            asyncio.run(service.add_financial_progress_update(project.project_id, 1000, je, idempotency_key="op-4"))
        assert exc.value.code == IDEMPOTENCY_KEY_REUSED

    def test_key_reuse_for_other_project(self, service, project, je):
        other = create_project(service, je, project_id="PRJ-2024-002")
        asyncio.run(service.add_progress_update(project.project_id, 10, je, idempotency_key="op-5"))
        with pytest.raises(ConflictError) as exc:
            asyncio.run(service.add_progress_update(other.project_id, 10, je, idempotency_key="op-5"))
        assert exc.value.code == IDEMPOTENCY_KEY_REUSED

    def test_replay_of_auto_completion(self, service, ongoing_project, je, make_document):
        asyncio.run(service.add_progress_update(ongoing_project.project_id, 50, je))
        kwargs = dict(documents=[make_document()], idempotency_key="op-6")
        first = asyncio.run(service.add_progress_update(ongoing_project.project_id, 100, je, **kwargs))
        second = asyncio.run(service.add_progress_update(ongoing_project.project_id, 100, je, **kwargs))

        assert second.replayed is True
        assert second.project.status == ProjectStatus.COMPLETED
        assert second.status_change.occurred is True
        assert second.status_change.history_entry.record_id == first.status_change.history_entry.record_id

    def test_replay_of_status_change(self, service, project, aee):
        first = asyncio.run(service.change_status(project.project_id, ProjectStatus.ONGOING, aee, idempotency_key="op-7"))
        second = asyncio.run(service.change_status(project.project_id, ProjectStatus.ONGOING, aee, idempotency_key="op-7"))
        assert second.replayed is True
        assert second.history_entry.record_id == first.history_entry.record_id


class TestDerivedMetricsCache:

    def test_summary_cached_per_role_until_commit(self, service, project, je, aee):
        first = asyncio.run(service.get_progress_summary(project.project_id, je))
        asyncio.run(service.get_progress_summary(project.project_id, aee))
        assert len(service.cache) == 2
        assert first["allowed_transitions"] == []
        assert first["can_update_progress"] is True

        asyncio.run(service.add_progress_update(project.project_id, 25, je))
        assert len(service.cache) == 0

        refreshed = asyncio.run(service.get_progress_summary(project.project_id, je))
        assert refreshed["progress_summary"]["physical"]["percentage"] == 25
        assert refreshed["version"] == 1

    def test_entries_expire(self, service, project, je, clock):
        asyncio.run(service.get_progress_summary(project.project_id, je))
        clock.advance(seconds=61)
        assert service.cache.get(project.project_id, je.role.value) is None
