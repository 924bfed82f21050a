"""
TRANSACTION COORDINATOR

Runs every mutating project operation as one atomic unit:

1. Acquire the per-project lock (same-project calls serialise, other
   projects proceed in parallel)
2. Load the aggregate and hand out a deep working copy
3. Let the mutation validate and change the working copy
4. Re-check the aggregate invariants
5. Commit through the repository, guarded by the version loaded in step 2
6. Invalidate the derived-metrics cache for the project

Any exception in steps 3-5 discards the working copy; stored state is only
ever replaced by a commit. Version conflicts are retried, the whole attempt
is bounded by a timeout.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import asyncio
import logging
import weakref

from models import Project
from .cache import DerivedMetricsCache
from .errors import (
    ConcurrentModificationError, NotFoundError, TransientError,
    PROJECT_NOT_FOUND, TRANSACTION_TIMEOUT,
)
from .idempotency import build_operation_log, ensure_idempotent
from .invariants import validate_project_invariants

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_MAX_RETRIES = 3


class Transaction:
    """Working state of one attempt, yielded by TransactionCoordinator.transaction()."""

    def __init__(self, baseline: Project):
        self.baseline = baseline
        self.project = baseline.model_copy(deep=True)
        self.operation_log: Optional[Dict[str, Any]] = None
        self.discarded = False

    @property
    def project_id(self) -> str:
        return self.baseline.project_id

    def discard(self) -> None:
        """Leave the transaction without committing."""
        self.discarded = True


@dataclass
class CommitOutcome:
    project: Project
    value: Any = None
    replayed: bool = False
    operation_log: Optional[Dict[str, Any]] = None


class TransactionCoordinator:

    def __init__(
        self,
        repository,
        cache: Optional[DerivedMetricsCache] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.repository = repository
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    async def load(self, project_id: str) -> Project:
        project = await self.repository.get(project_id)
        if project is None:
            raise NotFoundError(
                PROJECT_NOT_FOUND,
                f"Project {project_id} not found",
                {"project_id": project_id}
            )
        return project

    @asynccontextmanager
    async def transaction(self, project_id: str):
        """
        Scoped unit of work over one project.

        Commits the working copy on normal exit (unless discarded), discards
        it on any exception. Raises ConcurrentModificationError when the
        stored version moved since the load.
        """
        lock = self._lock_for(project_id)
        async with lock:
            tx = Transaction(await self.load(project_id))

            try:
                yield tx
            except Exception as e:
                logger.info(
                    f"[TRANSACTION] Discarded working copy of {project_id}: "
                    f"{type(e).__name__}: {e}"
                )
                raise

            if tx.discarded:
                return

            validate_project_invariants(tx.project, tx.baseline)

            expected_version = tx.baseline.version
            tx.project.version = expected_version + 1
            tx.project.updated_at = self.clock()

            await self.repository.commit(tx.project, expected_version, tx.operation_log)
            logger.info(f"[TRANSACTION] Committed {project_id} v{expected_version} -> v{tx.project.version}")

        if self.cache is not None:
            self.cache.invalidate(project_id)

    async def run(
        self,
        project_id: str,
        mutation: Callable[[Project], Any],
        operation: str,
        idempotency_key: Optional[str] = None,
        references: Optional[Callable[[Any], Dict[str, list]]] = None
    ) -> CommitOutcome:
        """
        Apply `mutation` to a working copy of the project and commit it.

        Args:
            project_id: Target project
            mutation: Synchronous callable receiving the working copy; its
                return value is handed back in CommitOutcome.value
            operation: Operation name recorded with the idempotency key
            idempotency_key: Optional caller key
            references: Maps the mutation's return value to the record
                references stored in the operation log

        Raises:
            TransientError(TRANSACTION_TIMEOUT) when the attempt does not
            finish in time; nothing is committed in that case
        """
        try:
            return await asyncio.wait_for(
                self._run_with_retry(project_id, mutation, operation, idempotency_key, references),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                f"[TRANSACTION] {operation} on {project_id} timed out after {self.timeout_seconds}s"
            )
            raise TransientError(
                TRANSACTION_TIMEOUT,
                f"Operation did not complete within {self.timeout_seconds} seconds",
                {"project_id": project_id, "operation": operation, "timeout_seconds": self.timeout_seconds}
            )

    async def _run_with_retry(self, project_id, mutation, operation, idempotency_key, references) -> CommitOutcome:
        attempt = 0
        while True:
            try:
                return await self._attempt(project_id, mutation, operation, idempotency_key, references)
            except ConcurrentModificationError as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error(
                        f"[TRANSACTION] {operation} on {project_id} gave up after {attempt} version conflicts"
                    )
                    raise
                logger.warning(
                    f"[TRANSACTION] Version conflict on {project_id} "
                    f"(expected v{e.expected_version}), retry {attempt}/{self.max_retries}"
                )

    async def _attempt(self, project_id, mutation, operation, idempotency_key, references) -> CommitOutcome:
        async with self.transaction(project_id) as tx:
            check = await ensure_idempotent(self.repository, idempotency_key, operation, project_id)
            if check.is_duplicate:
                tx.discard()
                return CommitOutcome(project=tx.baseline, replayed=True, operation_log=check.previous)

            value = mutation(tx.project)

            if idempotency_key:
                tx.operation_log = build_operation_log(
                    idempotency_key,
                    operation,
                    project_id,
                    version=tx.baseline.version + 1,
                    references=references(value) if references else None,
                    now=self.clock()
                )

        return CommitOutcome(project=tx.project, value=value, operation_log=tx.operation_log)
