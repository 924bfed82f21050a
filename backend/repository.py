"""
Project persistence.

ProjectRepository is the port the transaction coordinator commits through.
Two adapters:

  MongoProjectRepository     motor / MongoDB; one document per project, the
                             aggregate replace and the idempotency log insert
                             run inside one session transaction, guarded by
                             the aggregate's version field.
  InMemoryProjectRepository  dict-backed; used by the test-suite and for
                             local runs without a replica set.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional
import asyncio
import copy
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from models import Project
from tracking_engine.errors import (
    ConcurrentModificationError, ConflictError, TransientError,
    DUPLICATE_PROJECT, IDEMPOTENCY_KEY_REUSED, STORE_UNAVAILABLE,
)

logger = logging.getLogger(__name__)


def to_document(project: Project) -> Dict[str, Any]:
    """Serialize a Project for MongoDB storage (enums as their values)."""
    return _encode(project.model_dump(by_alias=True))


def _encode(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_encode(item) for item in value]
    return value


def from_document(document: Dict[str, Any]) -> Project:
    return Project.model_validate(document)


class ProjectRepository(ABC):

    @abstractmethod
    async def get(self, project_id: str) -> Optional[Project]:
        """Load a project, or None."""

    @abstractmethod
    async def insert(self, project: Project) -> None:
        """Store a new project; ConflictError(DUPLICATE_PROJECT) if the id exists."""

    @abstractmethod
    async def commit(
        self,
        project: Project,
        expected_version: int,
        operation_log: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Atomically replace the stored aggregate and record the operation log.

        Raises ConcurrentModificationError when the stored version is no
        longer expected_version, ConflictError(IDEMPOTENCY_KEY_REUSED) when
        the operation id was already recorded.
        """

    @abstractmethod
    async def find_operation(self, operation_id: str) -> Optional[Dict[str, Any]]:
        """Previously applied operation log entry, or None."""


# =============================================================================
# MONGODB
# =============================================================================

class MongoProjectRepository(ProjectRepository):

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db
        self.collection = db.projects
        self.operations = db.mutation_operation_logs

    async def ensure_indexes(self) -> None:
        await self.operations.create_index("operation_id", unique=True)
        await self.collection.create_index([("status", 1)])
        await self.collection.create_index([("progress_updates.created_at", -1)])
        await self.collection.create_index([("financial_progress_updates.created_at", -1)])
        logger.info("[REPOSITORY] Indexes ensured")

    async def get(self, project_id: str) -> Optional[Project]:
        try:
            document = await self.collection.find_one({"_id": project_id})
        except ConnectionFailure as e:
            raise TransientError(STORE_UNAVAILABLE, f"Project store unavailable: {e}")
        return from_document(document) if document else None

    async def insert(self, project: Project) -> None:
        try:
            await self.collection.insert_one(to_document(project))
        except DuplicateKeyError:
            raise ConflictError(
                DUPLICATE_PROJECT,
                f"Project {project.project_id} already exists",
                {"project_id": project.project_id}
            )
        except ConnectionFailure as e:
            raise TransientError(STORE_UNAVAILABLE, f"Project store unavailable: {e}")
        logger.info(f"[REPOSITORY] Inserted project {project.project_id}")

    async def commit(
        self,
        project: Project,
        expected_version: int,
        operation_log: Optional[Dict[str, Any]] = None
    ) -> None:
        document = to_document(project)

        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    result = await self.collection.replace_one(
                        {"_id": project.project_id, "version": expected_version},
                        document,
                        session=session
                    )
                    if result.matched_count == 0:
                        raise ConcurrentModificationError(project.project_id, expected_version)

                    if operation_log is not None:
                        await self.operations.insert_one(dict(operation_log), session=session)

                    # Transaction commits automatically on context exit
        except DuplicateKeyError:
            raise ConflictError(
                IDEMPOTENCY_KEY_REUSED,
                "Idempotency key was already used",
                {"operation_id": operation_log.get("operation_id") if operation_log else None}
            )
        except ConnectionFailure as e:
            logger.error(f"[TRANSACTION ERROR] commit {project.project_id}: {e}")
            raise TransientError(STORE_UNAVAILABLE, f"Project store unavailable: {e}")
        except PyMongoError as e:
            if e.has_error_label("TransientTransactionError"):
                # Write conflict with a concurrent transaction: same treatment as a stale version
                raise ConcurrentModificationError(project.project_id, expected_version)
            raise

    async def find_operation(self, operation_id: str) -> Optional[Dict[str, Any]]:
        document = await self.operations.find_one({"operation_id": operation_id}, {"_id": 0})
        return document


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryProjectRepository(ProjectRepository):
    """Keeps deep copies so callers can never mutate stored state in place."""

    def __init__(self):
        self._projects: Dict[str, Project] = {}
        self._operations: Dict[str, Dict[str, Any]] = {}

    async def get(self, project_id: str) -> Optional[Project]:
        await asyncio.sleep(0)
        stored = self._projects.get(project_id)
        return stored.model_copy(deep=True) if stored else None

    async def insert(self, project: Project) -> None:
        if project.project_id in self._projects:
            raise ConflictError(
                DUPLICATE_PROJECT,
                f"Project {project.project_id} already exists",
                {"project_id": project.project_id}
            )
        self._projects[project.project_id] = project.model_copy(deep=True)

    async def commit(
        self,
        project: Project,
        expected_version: int,
        operation_log: Optional[Dict[str, Any]] = None
    ) -> None:
        # The await is the only suspension point, as with a network round trip
        await asyncio.sleep(0)

        stored = self._projects.get(project.project_id)
        if stored is None or stored.version != expected_version:
            raise ConcurrentModificationError(project.project_id, expected_version)

        if operation_log is not None and operation_log["operation_id"] in self._operations:
            raise ConflictError(
                IDEMPOTENCY_KEY_REUSED,
                "Idempotency key was already used",
                {"operation_id": operation_log["operation_id"]}
            )

        self._projects[project.project_id] = project.model_copy(deep=True)
        if operation_log is not None:
            self._operations[operation_log["operation_id"]] = copy.deepcopy(operation_log)

    async def find_operation(self, operation_id: str) -> Optional[Dict[str, Any]]:
        operation = self._operations.get(operation_id)
        return copy.deepcopy(operation) if operation else None
