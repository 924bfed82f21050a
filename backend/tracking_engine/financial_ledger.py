"""
FINANCIAL PROGRESS (BILLING) LEDGER

Append-only history of bill submissions against a project's estimated cost.

LOCKED FORMULA:
    financial_progress = round_half_up(bill_submitted_amount / estimated_cost * 100)

financial_progress is never accepted from the caller; it is recomputed from
the bill amount on every update.

Rules, checked in order before anything is mutated:
1. amount >= 0 with at most two decimals                    INVALID_VALUE
2. actor is a Junior Engineer                               UNAUTHORIZED
3. financial updates enabled on the project                 UPDATES_DISABLED
4. amount <= estimated_cost                                 EXCEEDS_ESTIMATED_COST
5. a decrease may not exceed 5% of estimated_cost           BACKWARD_NOT_ALLOWED
6. an increase may not exceed 50% of estimated_cost         UNREALISTIC_JUMP
7. reaching 100% needs a supporting document                COMPLETION_REQUIRES_DOCUMENTS
8. reaching 100% needs the final bill number                FINAL_BILL_DETAILS_REQUIRED
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence, Tuple
import logging

from models import Actor, BillDetails, FinancialUpdateRecord, Project, SupportingDocument, UpdatedBy
from .errors import (
    BusinessRuleViolation,
    BACKWARD_NOT_ALLOWED, COMPLETION_REQUIRES_DOCUMENTS, EXCEEDS_ESTIMATED_COST,
    FINAL_BILL_DETAILS_REQUIRED, UNREALISTIC_JUMP,
)
from .precision import derive_financial_progress, parse_two_decimal, share_of, to_decimal, to_float
from .validation import MAX_REMARKS_LENGTH, clean_text, require_ledger_role, require_updates_enabled

logger = logging.getLogger(__name__)

# Limits expressed as a share of estimated_cost, in percent
MAX_BACKWARD_COST_SHARE = Decimal('5')
MAX_FORWARD_COST_SHARE = Decimal('50')
FULL_FINANCIAL_PROGRESS = 100


class FinancialLedger:

    def validate(
        self,
        project: Project,
        new_bill_amount,
        actor: Actor,
        bill_details: Optional[BillDetails] = None,
        documents: Sequence[SupportingDocument] = ()
    ) -> Tuple[Decimal, int]:
        """Run every rule; returns (parsed amount, derived financial progress)."""
        amount = parse_two_decimal(new_bill_amount, "new_bill_amount", minimum=0)
        require_ledger_role(actor, "financial progress")
        require_updates_enabled(
            project.financial_progress_updates_enabled, project.project_id, "Financial progress"
        )

        estimated_cost = to_decimal(project.estimated_cost)
        current = to_decimal(project.bill_submitted_amount)

        if amount > estimated_cost:
            raise BusinessRuleViolation(
                EXCEEDS_ESTIMATED_COST,
                "Bill amount cannot exceed the estimated cost of the project",
                {
                    "estimated_cost": float(estimated_cost),
                    "attempted_amount": float(amount),
                    "max_allowed": float(estimated_cost),
                }
            )

        if amount < current:
            decrease_share = share_of(current - amount, estimated_cost)
            if decrease_share > MAX_BACKWARD_COST_SHARE:
                raise BusinessRuleViolation(
                    BACKWARD_NOT_ALLOWED,
                    "Significant reduction in bill amount is not allowed. Please contact administrator "
                    f"for corrections greater than {MAX_BACKWARD_COST_SHARE}% of estimated cost",
                    {
                        "current_amount": float(current),
                        "attempted_amount": float(amount),
                        "decrease_percentage_of_cost": float(round(decrease_share, 2)),
                        "max_allowed_decrease_percentage": float(MAX_BACKWARD_COST_SHARE),
                    }
                )

        increase_share = share_of(amount - current, estimated_cost)
        if increase_share > MAX_FORWARD_COST_SHARE:
            raise BusinessRuleViolation(
                UNREALISTIC_JUMP,
                f"Bill amount increase exceeds reasonable limits. Maximum {MAX_FORWARD_COST_SHARE}% "
                f"of estimated cost per update",
                {
                    "current_amount": float(current),
                    "attempted_amount": float(amount),
                    "increase_percentage_of_cost": float(round(increase_share, 2)),
                    "max_allowed_increase_percentage": float(MAX_FORWARD_COST_SHARE),
                }
            )

        new_financial_progress = derive_financial_progress(amount, estimated_cost)

        if new_financial_progress == FULL_FINANCIAL_PROGRESS:
            if len(documents) == 0:
                raise BusinessRuleViolation(
                    COMPLETION_REQUIRES_DOCUMENTS,
                    "Financial completion (100%) requires at least one supporting document",
                    {"financial_progress": 100, "files_uploaded": 0, "requirement": "Minimum 1 supporting file"}
                )
            if bill_details is None or not bill_details.bill_number.strip():
                raise BusinessRuleViolation(
                    FINAL_BILL_DETAILS_REQUIRED,
                    "Final bill details (bill number) are required when financial progress reaches 100%",
                    {"required_fields": ["bill_number"]}
                )

        return amount, new_financial_progress

    def add_update(
        self,
        project: Project,
        new_bill_amount,
        actor: Actor,
        remarks: str = "",
        bill_details: Optional[BillDetails] = None,
        documents: Sequence[SupportingDocument] = (),
        now: Optional[datetime] = None
    ) -> FinancialUpdateRecord:
        """Validate, then append one record and recompute the financial fields."""
        amount, new_financial_progress = self.validate(project, new_bill_amount, actor, bill_details, documents)
        remarks = clean_text(remarks, "remarks", MAX_REMARKS_LENGTH)
        now = now or datetime.utcnow()

        details = bill_details or BillDetails()
        details = BillDetails(
            bill_number=details.bill_number.strip(),
            bill_date=details.bill_date or now,
            bill_description=details.bill_description.strip()
        )

        previous_amount = to_decimal(project.bill_submitted_amount)
        previous_progress = project.financial_progress
        record = FinancialUpdateRecord(
            previous_financial_progress=previous_progress,
            new_financial_progress=new_financial_progress,
            progress_difference=new_financial_progress - previous_progress,
            previous_bill_amount=to_float(previous_amount),
            new_bill_amount=to_float(amount),
            amount_difference=to_float(amount - previous_amount),
            remarks=remarks,
            bill_details=details,
            supporting_documents=list(documents),
            updated_by=UpdatedBy.from_actor(actor),
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            created_at=now
        )

        project.financial_progress_updates.append(record)
        project.bill_submitted_amount = record.new_bill_amount
        project.financial_progress = derive_financial_progress(
            project.bill_submitted_amount, project.estimated_cost
        )
        project.last_financial_progress_update = now

        logger.info(
            f"[FINANCIAL] {project.project_id}: bill {record.previous_bill_amount} -> {record.new_bill_amount} "
            f"({previous_progress}% -> {project.financial_progress}%) by {actor.user_id}"
        )
        return record
