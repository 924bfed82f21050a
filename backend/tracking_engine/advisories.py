"""
Informational notes attached to a successful update. Advisories never block
an operation and never raise.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional
import math

from models import Project

BUSINESS_HOURS_START = 6
BUSINESS_HOURS_END = 22


def _advisory(kind: str, message: str, severity: str = "info") -> Dict[str, str]:
    return {"type": kind, "message": message, "severity": severity}


def timing_advisories(now: datetime, subject: str = "Progress") -> List[Dict[str, str]]:
    """Weekend and off-hours flags for the audit trail reviewer."""
    advisories = []
    if now.weekday() >= 5:
        advisories.append(_advisory("WEEKEND_UPDATE", f"{subject} updated during weekend"))
    if now.hour < BUSINESS_HOURS_START or now.hour > BUSINESS_HOURS_END:
        advisories.append(_advisory("OFF_HOURS_UPDATE", f"{subject} updated outside normal business hours"))
    return advisories


def effective_deadline(project: Project) -> Optional[datetime]:
    deadline = project.extension_period_for_completion or project.project_end_date
    if deadline is not None and deadline.tzinfo is not None:
        # Stored timestamps are naive UTC
        deadline = deadline.astimezone(timezone.utc).replace(tzinfo=None)
    return deadline


def completion_advisories(project: Project, now: datetime) -> List[Dict[str, str]]:
    """Flag a completion recorded after the (possibly extended) deadline."""
    deadline = effective_deadline(project)
    if deadline is None or now <= deadline:
        return []
    days_overdue = math.ceil((now - deadline).total_seconds() / 86400)
    return [_advisory(
        "COMPLETED_AFTER_DEADLINE",
        f"Project completed {days_overdue} days after deadline",
        severity="warning"
    )]
