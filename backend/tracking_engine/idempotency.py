"""
IDEMPOTENCY HELPER

Centralizes Idempotency-Key handling for every mutating project operation.

Features:
- The key is optional; without one the operation is simply applied
- A key already applied to the same project and operation is a duplicate;
  the stored log entry lets the caller rebuild the earlier result
- A key reused for another project or operation is a conflict
- The log entry is committed in the same store transaction as the aggregate

Usage:
    result = await ensure_idempotent(repository, key, "progress_update", project_id)
    if result.is_duplicate:
        return replay(result.previous)

    # Mutate, then commit with build_operation_log(...)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from .errors import ConflictError, IDEMPOTENCY_KEY_REUSED

logger = logging.getLogger(__name__)

# A reference is [history field name, record_id]
RecordReference = List[str]


@dataclass
class IdempotencyResult:
    """Result of idempotency check"""
    operation_id: Optional[str]
    is_duplicate: bool
    previous: Optional[Dict[str, Any]] = None


async def ensure_idempotent(
    repository,
    operation_id: Optional[str],
    operation: str,
    project_id: str
) -> IdempotencyResult:
    """
    Look up an idempotency key before mutating.

    Args:
        repository: ProjectRepository holding the operation log
        operation_id: Caller supplied key, or None
        operation: Operation name (status_change, progress_update, ...)
        project_id: Project the operation targets

    Raises:
        ConflictError(IDEMPOTENCY_KEY_REUSED) when the key belongs to
        another project or operation
    """
    if not operation_id:
        return IdempotencyResult(operation_id=None, is_duplicate=False)

    existing = await repository.find_operation(operation_id)
    if existing is None:
        logger.debug(f"[IDEMPOTENT] New operation: {operation_id} for {operation}/{project_id}")
        return IdempotencyResult(operation_id=operation_id, is_duplicate=False)

    if existing.get("project_id") != project_id or existing.get("operation") != operation:
        logger.warning(
            f"[IDEMPOTENT] Key {operation_id} reused: first {existing.get('operation')}/"
            f"{existing.get('project_id')}, now {operation}/{project_id}"
        )
        raise ConflictError(
            IDEMPOTENCY_KEY_REUSED,
            "Idempotency key was already used for a different request",
            {
                "operation_id": operation_id,
                "original_project_id": existing.get("project_id"),
                "original_operation": existing.get("operation"),
            }
        )

    logger.info(f"[IDEMPOTENT] Duplicate operation detected: {operation_id} for {operation}/{project_id}")
    return IdempotencyResult(operation_id=operation_id, is_duplicate=True, previous=existing)


def build_operation_log(
    operation_id: str,
    operation: str,
    project_id: str,
    version: int,
    references: Optional[Dict[str, RecordReference]] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Operation log entry stored alongside the committed aggregate."""
    return {
        "operation_id": operation_id,
        "operation": operation,
        "project_id": project_id,
        "version": version,
        "references": dict(references or {}),
        "applied_flag": True,
        "created_at": now or datetime.utcnow(),
    }
