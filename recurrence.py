import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from config import local_today
from errors import InvariantViolationError
from intervals import add_interval
from models import RecurringTransaction, SplitDetail, Transaction
from processor import TransactionProcessor

logger = logging.getLogger(__name__)


def calculate_next_occurrence(template: RecurringTransaction) -> None:
    """Advance the cursor of ``template`` by one interval.

    Steps from the last materialized occurrence, or from the start date when
    nothing has been materialized yet. Passing the end date finishes the
    template for good.
    """
    base = template.last_occurrence or template.start_date
    candidate = add_interval(base, template.interval_unit, template.interval)
    if template.end_date is None or candidate <= template.end_date:
        template.next_occurrence = candidate
    else:
        template.next_occurrence = None
        template.finished = True


def create_occurrence(template: RecurringTransaction) -> Transaction:
    if template.next_occurrence is None:
        raise InvariantViolationError(
            f"Recurring transaction {template.id} has no next occurrence"
        )

    occurrence = Transaction(
        description=template.description,
        date=template.next_occurrence,
        type=template.type,
        amount_cents=template.amount_cents,
        account=template.account,
        account_id=template.account_id,
        category=template.category,
        category_id=template.category_id,
        receiving_account=template.receiving_account,
        receiving_account_id=template.receiving_account_id,
        needs_confirmation=template.needs_confirmation,
        is_confirmed=False if template.needs_confirmation else None,
        processed=False,
        split_details=[
            SplitDetail(
                splitwise_user_id=sd.splitwise_user_id,
                splitwise_user_name=sd.splitwise_user_name,
                amount_cents=sd.amount_cents,
            )
            for sd in template.split_details
        ],
    )
    occurrence.recurring_transaction = template

    template.last_occurrence = template.next_occurrence
    calculate_next_occurrence(template)
    return occurrence


class RecurringEngine:
    def __init__(
        self, session: Session, processor: Optional[TransactionProcessor] = None
    ) -> None:
        self.session = session
        self.processor = processor or TransactionProcessor(session)

    def expand(
        self, template: RecurringTransaction, today: Optional[date] = None
    ) -> list[Transaction]:
        """Materialize every occurrence of ``template`` due on or before ``today``.

        Occurrences that do not need confirmation are applied right away.
        """
        today = today or local_today()
        if template.finished:
            raise InvariantViolationError(
                f"Recurring transaction {template.id} is already finished"
            )
        self.processor.verify_not_obsolete(template)

        created = []
        while (
            not template.finished
            and template.next_occurrence is not None
            and template.next_occurrence <= today
        ):
            occurrence = create_occurrence(template)
            self.session.add(occurrence)
            if not occurrence.needs_confirmation:
                self.processor.apply(occurrence)
            created.append(occurrence)

        if created:
            logger.info(
                f"recurring_expanded: id={template.id} created={len(created)} "
                f"next={template.next_occurrence} finished={template.finished}"
            )
        return created
