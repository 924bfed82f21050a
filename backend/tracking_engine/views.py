"""
READ-SIDE VIEWS

Pure functions over a persisted Project. Nothing here is stored on the
aggregate; the HTTP boundary and the history reads compute these on demand.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import math

from models import FinancialUpdateRecord, ProgressUpdateRecord, Project, ProjectStatus
from .advisories import effective_deadline
from .errors import ValidationError, INVALID_VALUE
from .precision import safe_divide, to_decimal, to_float

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 50


# =============================================================================
# DERIVED PROJECT FIELDS
# =============================================================================

def remaining_budget(project: Project) -> float:
    return to_float(to_decimal(project.estimated_cost) - to_decimal(project.bill_submitted_amount))


def progress_status(percentage: Optional[float]) -> str:
    if not percentage:
        return "Not Started"
    if percentage < 25:
        return "Just Started"
    if percentage < 50:
        return "In Progress"
    if percentage < 75:
        return "Halfway Complete"
    if percentage < 100:
        return "Near Completion"
    return "Completed"


def progress_summary(project: Project) -> Dict[str, Any]:
    return {
        "physical": {
            "percentage": project.progress_percentage,
            "status": progress_status(project.progress_percentage),
            "last_update": project.last_progress_update,
        },
        "financial": {
            "percentage": project.financial_progress,
            "status": progress_status(project.financial_progress),
            "last_update": project.last_financial_progress_update,
            "amount_submitted": project.bill_submitted_amount,
            "amount_remaining": remaining_budget(project),
        },
    }


def current_status_info(project: Project) -> Dict[str, Any]:
    latest = project.status_history[-1] if project.status_history else None
    return {
        "status": project.status,
        "last_changed_at": latest.created_at if latest else project.created_at,
        "last_changed_by": latest.changed_by if latest else project.created_by,
        "remarks": latest.remarks if latest else None,
        "is_rejected": project.status.is_rejection,
        "is_approved": project.status == ProjectStatus.ONGOING,
        "is_completed": project.status == ProjectStatus.COMPLETED,
        "is_pending": project.status.is_pending,
    }


def days_until_deadline(project: Project, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days left until the (possibly extended) deadline, in UTC."""
    deadline = effective_deadline(project)
    if deadline is None:
        return None
    return math.ceil((deadline - (now or datetime.utcnow())).total_seconds() / 86400)


def project_view(project: Project) -> Dict[str, Any]:
    """Serialisable project plus its derived fields."""
    data = project.model_dump(mode="json")
    data.update({
        "remaining_budget": remaining_budget(project),
        "progress_status": progress_status(project.progress_percentage),
        "financial_progress_status": progress_status(project.financial_progress),
        "progress_summary": progress_summary(project),
        "total_progress_updates": len(project.progress_updates),
        "total_financial_progress_updates": len(project.financial_progress_updates),
    })
    return data


# =============================================================================
# HISTORY PAGINATION & SUMMARIES
# =============================================================================

def validate_page(page: int, page_size: int) -> None:
    if not isinstance(page, int) or isinstance(page, bool) or page < 1:
        raise ValidationError(INVALID_VALUE, "page must be a positive integer", {"page": page})
    if not isinstance(page_size, int) or isinstance(page_size, bool) or not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(
            INVALID_VALUE,
            f"page_size must be between 1 and {MAX_PAGE_SIZE}",
            {"page_size": page_size, "max_page_size": MAX_PAGE_SIZE}
        )


def paginate(records: Sequence[Any], page: int, page_size: int) -> Dict[str, Any]:
    """
    Most-recent-first page of a history array.

    Histories are appended in commit order, so the newest record is the last
    one appended regardless of its timestamp.
    """
    validate_page(page, page_size)

    ordered = list(reversed(records))
    total = len(ordered)
    total_pages = math.ceil(total / page_size) if total else 0
    start = (page - 1) * page_size

    return {
        "records": ordered[start:start + page_size],
        "pagination": {
            "current_page": page,
            "page_size": page_size,
            "total_entries": total,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }


def _most_active_user(records: Sequence[Any]) -> Optional[Dict[str, Any]]:
    if not records:
        return None
    counts = Counter(r.updated_by.user_id for r in records)
    user_id, updates = counts.most_common(1)[0]
    name = next(r.updated_by.user_name for r in records if r.updated_by.user_id == user_id)
    return {"user_id": user_id, "user_name": name, "update_count": updates}


def _average(values: List[float]) -> float:
    if not values:
        return 0.0
    return to_float(safe_divide(sum(to_decimal(v) for v in values), len(values)))


def summarize_progress_updates(project: Project) -> Dict[str, Any]:
    updates: List[ProgressUpdateRecord] = project.progress_updates
    differences = [u.progress_difference for u in updates]
    return {
        "total_updates": len(updates),
        "total_progress_increase": to_float(sum(to_decimal(max(0, d)) for d in differences)),
        "total_progress_decrease": to_float(abs(sum(to_decimal(min(0, d)) for d in differences))),
        "total_files_uploaded": sum(len(u.supporting_documents) for u in updates),
        "avg_progress_change": _average(differences),
        "largest_progress_jump": max(differences + [0]),
        "last_update_date": project.last_progress_update,
        "first_update_date": updates[0].created_at if updates else None,
        "most_active_user": _most_active_user(updates),
    }


def summarize_financial_updates(project: Project) -> Dict[str, Any]:
    updates: List[FinancialUpdateRecord] = project.financial_progress_updates
    amounts = [u.amount_difference for u in updates]
    return {
        "total_updates": len(updates),
        "total_amount_increase": to_float(sum(to_decimal(max(0, a)) for a in amounts)),
        "total_amount_decrease": to_float(abs(sum(to_decimal(min(0, a)) for a in amounts))),
        "total_files_uploaded": sum(len(u.supporting_documents) for u in updates),
        "avg_progress_change": _average([u.progress_difference for u in updates]),
        "avg_amount_change": _average(amounts),
        "largest_amount_increase": max(amounts + [0]),
        "bills_submitted": sum(1 for u in updates if u.bill_details.bill_number),
        "last_update_date": project.last_financial_progress_update,
        "first_update_date": updates[0].created_at if updates else None,
        "most_active_user": _most_active_user(updates),
    }


def budget_trend(project: Project) -> List[Dict[str, Any]]:
    return [
        {
            "update_number": index,
            "date": update.created_at,
            "amount": update.new_bill_amount,
            "percentage": update.new_financial_progress,
        }
        for index, update in enumerate(project.financial_progress_updates, start=1)
    ]
