"""
Project Lifecycle & Progress Tracking Engine
"""
from .errors import (
    ProjectEngineError,
    ValidationError,
    AuthorizationError,
    BusinessRuleViolation,
    ConflictError,
    ConcurrentModificationError,
    NotFoundError,
    TransientError,
    InvariantViolationError
)

from .precision import (
    to_decimal,
    round_financial,
    to_float,
    parse_two_decimal,
    derive_financial_progress
)

from .state_machine import (
    StateMachine,
    InvalidTransitionError,
    TRANSITION_TABLE,
    build_project_state_machine
)

from .editable_lock import (
    set_editable_status,
    lock_for_review,
    EDITABLE_LOCK_ROLES
)

from .progress_ledger import (
    ProgressLedger,
    StatusChange
)

from .financial_ledger import FinancialLedger

from .invariants import validate_project_invariants

from .cache import DerivedMetricsCache

from .transaction_coordinator import (
    TransactionCoordinator,
    Transaction,
    CommitOutcome
)

__all__ = [
    # Errors
    'ProjectEngineError',
    'ValidationError',
    'AuthorizationError',
    'BusinessRuleViolation',
    'ConflictError',
    'ConcurrentModificationError',
    'NotFoundError',
    'TransientError',
    'InvariantViolationError',
    # Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'parse_two_decimal',
    'derive_financial_progress',
    # Status Machine
    'StateMachine',
    'InvalidTransitionError',
    'TRANSITION_TABLE',
    'build_project_state_machine',
    'set_editable_status',
    'lock_for_review',
    'EDITABLE_LOCK_ROLES',
    # Ledgers
    'ProgressLedger',
    'StatusChange',
    'FinancialLedger',
    # Commit path
    'validate_project_invariants',
    'DerivedMetricsCache',
    'TransactionCoordinator',
    'Transaction',
    'CommitOutcome',
]
