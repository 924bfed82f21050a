"""
Shared precondition checks for ledger operations.
"""

from typing import Optional

from models import Actor, Role
from .errors import AuthorizationError, ValidationError, INVALID_VALUE, UNAUTHORIZED, UPDATES_DISABLED

MAX_REMARKS_LENGTH = 500
MAX_REJECTION_REASON_LENGTH = 1000

LEDGER_ROLE = Role.JE


def require_ledger_role(actor: Actor, action: str) -> None:
    """Only Junior Engineers record progress."""
    if actor is None or actor.role != LEDGER_ROLE:
        raise AuthorizationError(
            UNAUTHORIZED,
            f"Unauthorized. Only Junior Engineers (JE) can update {action}",
            {"required_role": LEDGER_ROLE.value, "current_role": actor.role.value if actor else None}
        )


def require_updates_enabled(enabled: bool, project_id: str, kind: str) -> None:
    if not enabled:
        raise AuthorizationError(
            UPDATES_DISABLED,
            f"{kind} updates are disabled for this project",
            {"project_id": project_id, "reason": "Updates disabled by administrator"}
        )


def clean_text(value: Optional[str], field_name: str, max_length: int) -> str:
    """Trim free text and enforce its length limit."""
    text = (value or "").strip()
    if len(text) > max_length:
        raise ValidationError(
            INVALID_VALUE,
            f"'{field_name}' cannot exceed {max_length} characters",
            {"field": field_name, "length": len(text), "max_length": max_length}
        )
    return text
