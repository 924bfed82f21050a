"""
AGGREGATE INVARIANT VALIDATOR

Enforces the project invariants on the working copy before every commit:
1. 0 <= progress_percentage <= 100
2. 0 <= bill_submitted_amount <= estimated_cost
3. financial_progress == round_half_up(bill_submitted_amount / estimated_cost * 100)
4. no history array shrank or had a stored record altered

Blocks the commit if violated. A violation means a bug in the engine, so the
error is raised as InvariantViolationError and never mapped to a 4xx.
"""

from decimal import Decimal
from typing import List, Optional
import logging

from models import Project
from .errors import InvariantViolationError
from .precision import derive_financial_progress, to_decimal

logger = logging.getLogger(__name__)

HISTORY_FIELDS = (
    "progress_updates",
    "financial_progress_updates",
    "status_history",
    "editable_status_history",
)


def validate_project_invariants(project: Project, baseline: Optional[Project] = None) -> bool:
    """
    Validate all invariants for a project about to be committed.

    Args:
        project: The mutated working copy
        baseline: The aggregate as it was loaded; enables the append-only check

    Raises InvariantViolationError if any constraint is violated.
    """
    violations: List[dict] = []

    progress = to_decimal(project.progress_percentage)
    if progress < Decimal('0') or progress > Decimal('100'):
        violations.append({"type": "PROGRESS_OUT_OF_RANGE", "progress_percentage": project.progress_percentage})

    bill = to_decimal(project.bill_submitted_amount)
    cost = to_decimal(project.estimated_cost)
    if bill < Decimal('0') or bill > cost:
        violations.append({
            "type": "BILL_EXCEEDS_ESTIMATED_COST",
            "bill_submitted_amount": project.bill_submitted_amount,
            "estimated_cost": project.estimated_cost,
        })

    expected_financial = derive_financial_progress(bill, cost)
    if project.financial_progress != expected_financial:
        violations.append({
            "type": "FINANCIAL_PROGRESS_DRIFT",
            "financial_progress": project.financial_progress,
            "expected": expected_financial,
        })

    if baseline is not None:
        for field in HISTORY_FIELDS:
            before = getattr(baseline, field)
            after = getattr(project, field)
            if len(after) < len(before) or any(
                a.record_id != b.record_id for a, b in zip(after, before)
            ):
                violations.append({"type": "HISTORY_REWRITTEN", "field": field})

    if violations:
        logger.error(f"[INVARIANT VIOLATION] project={project.project_id}: {violations}")
        raise InvariantViolationError(
            violations[0]["type"],
            f"Project {project.project_id} violates {len(violations)} invariant(s)",
            {"violations": violations}
        )

    return True
