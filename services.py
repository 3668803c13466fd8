from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from balances import (
    BalanceInterval,
    build_balance_timeline,
    to_balance_intervals,
    to_daily_intervals,
    to_fixed_period,
    within,
)
from config import local_today
from database import retry_on_conflict
from errors import NotFoundError, ObsoleteEntityError, ValidationError
from intervals import get_intervals, group_by_interval, to_dates
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    CategoryType,
    DailyBalance,
    Icon,
    IntervalUnit,
    PaymentRequest,
    RecurringTransaction,
    SplitDetail,
    SplitwiseTransaction,
    Transaction,
    TransactionType,
)
from processor import TransactionProcessor, budget_spent, get_splitwise_account
from recurrence import RecurringEngine, calculate_next_occurrence
from schemas import (
    AccountIn,
    BaseTransactionIn,
    BudgetIn,
    CategoryIn,
    RecurringTransactionIn,
    SplitDetailIn,
    TransactionIn,
)
from splitwise import Expense, SplitwiseClient

logger = logging.getLogger(__name__)


def _get(session: Session, model, ident: int, label: str):
    entity = session.get(model, ident)
    if entity is None:
        raise NotFoundError(f"{label} with identifier {ident} does not exist")
    return entity


def _split_details(items: list[SplitDetailIn]) -> list[SplitDetail]:
    return [
        SplitDetail(
            splitwise_user_id=sd.splitwise_user_id,
            splitwise_user_name=sd.splitwise_user_name,
            amount_cents=sd.amount_cents,
        )
        for sd in items
    ]


TypedFields = tuple[TransactionType, Account, Optional[Category], Optional[Account]]


def _resolve_typed_fields(
    session: Session, data: BaseTransactionIn
) -> TypedFields:
    """Load the references of a transaction input and derive its type."""
    account = _get(session, Account, data.account_id, "Account")
    if data.receiving_account_id is not None:
        receiver = _get(session, Account, data.receiving_account_id, "Account")
        return TransactionType.transfer, account, None, receiver

    category = _get(session, Category, data.category_id, "Category")
    if category.type == CategoryType.expense:
        if data.amount_cents > 0:
            raise ValidationError("Amount of an expense must be negative")
        return TransactionType.expense, account, category, None

    if data.amount_cents < 0:
        raise ValidationError("Amount of an income must be positive")
    if data.split_details:
        raise ValidationError("Only expenses can be split")
    return TransactionType.income, account, category, None


def _check_amount(transaction: Transaction, amount_cents: int) -> None:
    if amount_cents == 0:
        raise ValidationError("Amount must not be zero")
    if transaction.type == TransactionType.expense:
        if amount_cents > 0:
            raise ValidationError("Amount of an expense must be negative")
    elif amount_cents < 0:
        raise ValidationError("Amount must be positive")
    if sum(sd.amount_cents for sd in transaction.split_details) > abs(amount_cents):
        raise ValidationError("Split amounts exceed the transaction amount")


@dataclass
class BatchResult:
    processed: int = 0
    templates_expanded: int = 0
    occurrences_created: int = 0
    skipped: int = 0


class PeriodicProcessor:
    """One settlement pass over due transactions and recurring templates.

    The pass only flushes. Committing (and retrying on a conflicting
    concurrent write) is left to ``database.run_with_retries``.
    """

    def __init__(
        self, session: Session, splitwise: Optional[SplitwiseClient] = None
    ) -> None:
        self.session = session
        self.splitwise = splitwise

    def run_batch(self, today: Optional[date] = None) -> BatchResult:
        today = today or local_today()
        processor = TransactionProcessor(self.session, self.splitwise, today)
        result = BatchResult()

        due_stmt = (
            select(Transaction)
            .where(
                Transaction.processed.is_(False),
                Transaction.date <= today,
                or_(
                    Transaction.needs_confirmation.is_(False),
                    Transaction.is_confirmed.is_(True),
                ),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        for transaction in self.session.scalars(due_stmt).all():
            try:
                processor.apply(transaction)
            except ObsoleteEntityError as exc:
                logger.warning(
                    f"batch_skip: transaction={transaction.id} reason={exc}"
                )
                result.skipped += 1
                continue
            result.processed += 1

        templates_stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.finished.is_(False),
                RecurringTransaction.start_date <= today,
            )
            .order_by(RecurringTransaction.id)
        )
        engine = RecurringEngine(self.session, processor)
        for template in self.session.scalars(templates_stmt).all():
            try:
                created = engine.expand(template, today)
            except ObsoleteEntityError as exc:
                logger.warning(
                    f"batch_skip: recurring_transaction={template.id} reason={exc}"
                )
                result.skipped += 1
                continue
            if created:
                result.templates_expanded += 1
                result.occurrences_created += len(created)

        self._roll_over_budgets(today)
        self.session.flush()
        logger.info(
            f"batch_run: today={today} processed={result.processed} "
            f"templates={result.templates_expanded} "
            f"occurrences={result.occurrences_created} skipped={result.skipped}"
        )
        return result

    def _roll_over_budgets(self, today: date) -> None:
        # Recurring budgets do not exist yet, so there is nothing to roll over.
        logger.debug(f"budget_rollover: today={today} rolled_over=0")


@dataclass
class ImportResult:
    fetched: int = 0
    skipped: int = 0
    stored: int = 0
    reimported: int = 0
    removed: int = 0


@dataclass
class ImporterInformation:
    last_import: Optional[datetime]
    awaiting_import: int


class SplitwiseService:
    """Keeps local ledger records in sync with Splitwise and derives expenses."""

    def __init__(
        self,
        session: Session,
        client: Optional[SplitwiseClient] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.client = client or SplitwiseClient()
        self.processor = TransactionProcessor(session, self.client, today)

    def last_updated_at(self) -> Optional[datetime]:
        return self.session.scalar(select(func.max(SplitwiseTransaction.updated_at)))

    def import_from_splitwise(self) -> ImportResult:
        """Pull every record changed since the last import and reconcile it.

        Only flushes; run it through ``database.run_with_retries``.
        """
        watermark = self.last_updated_at() or datetime.min
        expenses = self.client.get_expenses(watermark)
        result = ImportResult(fetched=len(expenses))

        for expense in expenses:
            # Expenses paid by the user are created and tracked locally.
            if expense.paid_amount_cents != 0:
                result.skipped += 1
                continue
            record = self.session.get(SplitwiseTransaction, expense.id)
            if record is not None and record.updated_at >= expense.updated_at:
                result.skipped += 1
                continue
            self._reconcile(record, expense, result)

        self.session.flush()
        logger.info(
            f"splitwise_import: watermark={watermark.isoformat()} "
            f"fetched={result.fetched} skipped={result.skipped} stored={result.stored} "
            f"reimported={result.reimported} removed={result.removed}"
        )
        return result

    def _reconcile(
        self,
        record: Optional[SplitwiseTransaction],
        expense: Expense,
        result: ImportResult,
    ) -> None:
        account_id: Optional[int] = None
        category_id: Optional[int] = None
        if record is not None and record.transaction is not None:
            derived = record.transaction
            account_id, category_id = derived.account_id, derived.category_id
            self.processor.revert_if_processed(derived, only_internally=True)
            record.transaction = None
            self.session.delete(derived)

        if expense.personal_amount_cents == 0:
            if record is not None:
                self.session.delete(record)
                result.removed += 1
            return

        if record is None:
            record = SplitwiseTransaction(id=expense.id, imported=False)
        record.description = expense.description
        record.date = expense.date
        record.is_deleted = expense.is_deleted
        record.paid_amount_cents = expense.paid_amount_cents
        record.personal_amount_cents = expense.personal_amount_cents
        record.updated_at = expense.updated_at
        record.split_details = [
            SplitDetail(
                splitwise_user_id=split.user_id,
                splitwise_user_name=split.user_name,
                amount_cents=split.amount_cents,
            )
            for split in expense.splits
        ]
        self.session.add(record)
        result.stored += 1

        if expense.is_deleted or account_id is None:
            record.imported = False
            return

        account = self.session.get(Account, account_id)
        category = self.session.get(Category, category_id) if category_id else None
        if (
            account is None
            or account.is_obsolete
            or category is None
            or category.is_obsolete
        ):
            logger.info(f"splitwise_import_deferred: id={record.id}")
            record.imported = False
            return

        self._derive(record, account, category)
        record.imported = True
        result.reimported += 1

    def _derive(
        self, record: SplitwiseTransaction, account: Account, category: Category
    ) -> Transaction:
        transaction = Transaction(
            description=record.description,
            date=record.date,
            type=TransactionType.expense,
            amount_cents=-record.personal_amount_cents,
            account=account,
            account_id=account.id,
            category=category,
            category_id=category.id,
            needs_confirmation=False,
            processed=False,
        )
        transaction.splitwise_transaction = record
        self.session.add(transaction)
        self.processor.process_if_needed(transaction)
        return transaction

    @retry_on_conflict
    def import_transaction(
        self, splitwise_id: int, category_id: int, account_id: Optional[int] = None
    ) -> Transaction:
        record = _get(
            self.session, SplitwiseTransaction, splitwise_id, "Splitwise transaction"
        )
        if record.paid_amount_cents != 0:
            raise ValidationError(
                "Splitwise transactions paid by the user can not be imported"
            )
        if record.is_deleted:
            raise ValidationError("Splitwise transaction is deleted")
        if record.imported:
            raise ValidationError("Splitwise transaction is already imported")

        category = _get(self.session, Category, category_id, "Category")
        if category.type != CategoryType.expense:
            raise ValidationError("Splitwise transactions require an expense category")
        if account_id is None:
            account = get_splitwise_account(self.session)
        else:
            account = _get(self.session, Account, account_id, "Account")

        transaction = self._derive(record, account, category)
        record.imported = True
        self.session.commit()
        logger.info(
            f"splitwise_imported: id={record.id} transaction={transaction.id}"
        )
        return transaction

    def get_splitwise_transactions(
        self, include_imported: bool = False
    ) -> list[SplitwiseTransaction]:
        stmt = select(SplitwiseTransaction).order_by(
            SplitwiseTransaction.date, SplitwiseTransaction.id
        )
        if not include_imported:
            stmt = stmt.where(SplitwiseTransaction.imported.is_(False))
        return list(self.session.scalars(stmt).all())

    def get_importer_information(self) -> ImporterInformation:
        awaiting = self.session.scalar(
            select(func.count(SplitwiseTransaction.id)).where(
                SplitwiseTransaction.imported.is_(False),
                SplitwiseTransaction.is_deleted.is_(False),
                SplitwiseTransaction.paid_amount_cents == 0,
            )
        )
        return ImporterInformation(
            last_import=self.last_updated_at(), awaiting_import=awaiting or 0
        )


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, account_id: int) -> Account:
        return _get(self.session, Account, account_id, "Account")

    def list_all(self, include_obsolete: bool = False) -> list[Account]:
        stmt = select(Account).order_by(Account.description)
        if not include_obsolete:
            stmt = stmt.where(Account.is_obsolete.is_(False))
        return list(self.session.scalars(stmt).all())

    def _check_unique_description(
        self, description: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Account.id).where(
            Account.is_obsolete.is_(False),
            func.lower(Account.description) == description.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationError(
                f"An active account with description \"{description}\" already exists"
            )

    def _clear_default(self) -> None:
        for account in self.session.scalars(
            select(Account).where(Account.is_default.is_(True))
        ):
            account.is_default = False

    @retry_on_conflict
    def create(self, data: AccountIn) -> Account:
        description = data.description.strip()
        self._check_unique_description(description)
        if data.type == AccountType.splitwise:
            existing = self.session.scalar(
                select(Account.id).where(Account.type == AccountType.splitwise)
            )
            if existing is not None:
                raise ValidationError("A Splitwise account already exists")
        if data.is_default:
            self._clear_default()

        account = Account(
            description=description,
            type=data.type,
            is_default=data.is_default,
            is_obsolete=False,
            icon=Icon(pack=data.icon_pack, name=data.icon_name, color=data.icon_color),
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    @retry_on_conflict
    def set_obsolete(self, account_id: int, obsolete: bool) -> Account:
        account = self.get(account_id)
        if obsolete:
            if account.current_balance != 0:
                raise ValidationError(
                    "An account with a balance other than 0 can not be made obsolete"
                )
            account.is_default = False
        else:
            self._check_unique_description(account.description, exclude_id=account.id)
        account.is_obsolete = obsolete
        self.session.commit()
        return account

    def get_balance_intervals(
        self, account_id: int, start: date, end: date
    ) -> list[BalanceInterval]:
        """Daily balance of one account over ``[start, end]``."""
        if end < start:
            raise ValidationError("Start date must not be after end date")
        account = self.get(account_id)
        snapshots = within(account.daily_balances, start, end)
        return to_daily_intervals(
            to_fixed_period(to_balance_intervals(snapshots), start, end)
        )


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, category_id: int) -> Category:
        return _get(self.session, Category, category_id, "Category")

    def list_all(self, include_obsolete: bool = False) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.description)
        if not include_obsolete:
            stmt = stmt.where(Category.is_obsolete.is_(False))
        return list(self.session.scalars(stmt).all())

    @retry_on_conflict
    def create(self, data: CategoryIn) -> Category:
        parent = None
        if data.parent_category_id is not None:
            parent = self.get(data.parent_category_id)
            if parent.is_obsolete:
                raise ObsoleteEntityError("Parent category is obsolete")
            if parent.parent_category_id is not None:
                raise ValidationError("A child category can not have children")
            if parent.type != data.type:
                raise ValidationError("Child category must have the type of its parent")
            self._check_expected_amounts(parent, data.expected_monthly_amount_cents)

        category = Category(
            description=data.description.strip(),
            type=data.type,
            is_obsolete=False,
            expected_monthly_amount_cents=data.expected_monthly_amount_cents,
            parent_category=parent,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    @staticmethod
    def _check_expected_amounts(parent: Category, new_amount: Optional[int]) -> None:
        if new_amount is None or parent.expected_monthly_amount_cents is None:
            return
        children_total = sum(
            abs(child.expected_monthly_amount_cents or 0) for child in parent.children
        )
        if children_total + abs(new_amount) > abs(parent.expected_monthly_amount_cents):
            raise ValidationError(
                "Expected monthly amounts of the children exceed the amount of the parent"
            )

    @retry_on_conflict
    def set_obsolete(self, category_id: int, obsolete: bool) -> Category:
        category = self.get(category_id)
        if not obsolete and category.parent_category is not None:
            if category.parent_category.is_obsolete:
                raise ObsoleteEntityError("Parent category is obsolete")
        category.is_obsolete = obsolete
        if obsolete:
            for child in category.children:
                child.is_obsolete = True
        self.session.commit()
        return category


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, budget_id: int) -> Budget:
        return _get(self.session, Budget, budget_id, "Budget")

    def list_active(self, on_date: Optional[date] = None) -> list[Budget]:
        on_date = on_date or local_today()
        stmt = (
            select(Budget)
            .where(Budget.start_date <= on_date, Budget.end_date >= on_date)
            .order_by(Budget.start_date, Budget.id)
        )
        return list(self.session.scalars(stmt).all())

    def _category(self, category_id: int) -> Category:
        category = _get(self.session, Category, category_id, "Category")
        if category.is_obsolete:
            raise ObsoleteEntityError("Category is obsolete")
        if category.type != CategoryType.expense:
            raise ValidationError("Budgets can only be created for expense categories")
        return category

    @retry_on_conflict
    def create(self, data: BudgetIn) -> Budget:
        category = self._category(data.category_id)
        budget = Budget(
            category=category,
            amount_cents=data.amount_cents,
            start_date=data.start_date,
            end_date=data.end_date,
            spent_cents=budget_spent(
                self.session, category.id, data.start_date, data.end_date
            ),
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    @retry_on_conflict
    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        category = self._category(data.category_id)
        budget.category = category
        budget.amount_cents = data.amount_cents
        budget.start_date = data.start_date
        budget.end_date = data.end_date
        budget.spent_cents = budget_spent(
            self.session, category.id, data.start_date, data.end_date
        )
        self.session.commit()
        return budget

    @retry_on_conflict
    def delete(self, budget_id: int) -> None:
        self.session.delete(self.get(budget_id))
        self.session.commit()


class TransactionService:
    def __init__(
        self,
        session: Session,
        splitwise: Optional[SplitwiseClient] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.processor = TransactionProcessor(session, splitwise, today)

    def get(self, transaction_id: int) -> Transaction:
        return _get(self.session, Transaction, transaction_id, "Transaction")

    def list_between(self, start: date, end: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.date >= start, Transaction.date <= end)
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def _checked_fields(
        self, data: TransactionIn
    ) -> TypedFields:
        fields = _resolve_typed_fields(self.session, data)
        _, account, category, receiver = fields
        self.processor.verify_references(
            account,
            category,
            receiver,
            [sd.splitwise_user_id for sd in data.split_details],
        )
        return fields

    def _fill(
        self,
        transaction: Transaction,
        data: TransactionIn,
        fields: TypedFields,
    ) -> None:
        type_, account, category, receiver = fields
        transaction.description = data.description
        transaction.date = data.date
        transaction.type = type_
        transaction.amount_cents = data.amount_cents
        transaction.account = account
        transaction.account_id = account.id
        transaction.category = category
        transaction.category_id = category.id if category else None
        transaction.receiving_account = receiver
        transaction.receiving_account_id = receiver.id if receiver else None
        if not data.needs_confirmation:
            transaction.is_confirmed = None
        elif not transaction.needs_confirmation:
            transaction.is_confirmed = False
        transaction.needs_confirmation = data.needs_confirmation
        transaction.split_details = _split_details(data.split_details)

    @retry_on_conflict
    def create(self, data: TransactionIn) -> Transaction:
        fields = self._checked_fields(data)
        transaction = Transaction(processed=False, needs_confirmation=False)
        self._fill(transaction, data, fields)
        transaction.payment_requests = [
            PaymentRequest(
                amount_cents=pr.amount_cents,
                count=pr.count,
                paid_count=0,
                description=pr.description,
            )
            for pr in data.payment_requests
        ]
        self.session.add(transaction)
        self.processor.process_if_needed(transaction)
        self.session.commit()
        self.session.refresh(transaction)
        return transaction

    @retry_on_conflict
    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        transaction = self.get(transaction_id)
        if transaction.splitwise_transaction is not None and not transaction.split_details:
            raise ValidationError(
                "Transactions imported from Splitwise can only change category"
            )
        # Nothing is reverted before the new input passed every check.
        fields = self._checked_fields(data)
        self.processor.revert_if_processed(transaction)
        self._fill(transaction, data, fields)
        self.processor.process_if_needed(transaction)
        self.session.commit()
        return transaction

    @retry_on_conflict
    def update_category(self, transaction_id: int, category_id: int) -> Transaction:
        transaction = self.get(transaction_id)
        if transaction.type != TransactionType.expense:
            raise ValidationError("Only the category of an expense can be changed")
        category = _get(self.session, Category, category_id, "Category")
        if category.is_obsolete:
            raise ObsoleteEntityError("Category is obsolete")
        if category.type != CategoryType.expense:
            raise ValidationError("Category type mismatch")
        self.processor.change_category(transaction, category.id)
        self.session.commit()
        return transaction

    @retry_on_conflict
    def delete(self, transaction_id: int) -> None:
        transaction = self.get(transaction_id)
        self.processor.revert_if_processed(transaction)
        record = transaction.splitwise_transaction
        if record is not None:
            # Imported records go back to the import queue.
            record.imported = False
            transaction.splitwise_transaction = None
        self.session.delete(transaction)
        self.session.commit()

    @retry_on_conflict
    def confirm(
        self,
        transaction_id: int,
        on_date: Optional[date] = None,
        amount_cents: Optional[int] = None,
    ) -> Transaction:
        """Confirm a transaction, optionally with the date and amount it ended up with."""
        transaction = self.get(transaction_id)
        if not transaction.needs_confirmation:
            raise ValidationError("Transaction does not need confirmation")
        if transaction.is_confirmed:
            raise ValidationError("Transaction is already confirmed")
        if amount_cents is not None:
            _check_amount(transaction, amount_cents)
        self.processor.verify_not_obsolete(transaction)
        if on_date is not None:
            transaction.date = on_date
        if amount_cents is not None:
            transaction.amount_cents = amount_cents
        transaction.is_confirmed = True
        self.processor.process_if_needed(transaction)
        self.session.commit()
        return transaction

    @retry_on_conflict
    def fulfill_payment_request(self, payment_request_id: int) -> PaymentRequest:
        request = _get(
            self.session, PaymentRequest, payment_request_id, "Payment request"
        )
        if request.paid_count >= request.count:
            raise ValidationError("Payment request is already completed")
        request.paid_count += 1
        self.session.commit()
        return request

    @retry_on_conflict
    def revert_payment_request(self, payment_request_id: int) -> PaymentRequest:
        request = _get(
            self.session, PaymentRequest, payment_request_id, "Payment request"
        )
        if request.paid_count == 0:
            raise ValidationError("Payment request has not been fulfilled")
        request.paid_count -= 1
        self.session.commit()
        return request


class RecurringTransactionService:
    def __init__(
        self,
        session: Session,
        splitwise: Optional[SplitwiseClient] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.processor = TransactionProcessor(session, splitwise, today)
        self.engine = RecurringEngine(session, self.processor)

    def get(self, recurring_id: int) -> RecurringTransaction:
        return _get(
            self.session, RecurringTransaction, recurring_id, "Recurring transaction"
        )

    @retry_on_conflict
    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        type_, account, category, receiver = _resolve_typed_fields(self.session, data)
        template = RecurringTransaction(
            description=data.description,
            type=type_,
            amount_cents=data.amount_cents,
            account=account,
            account_id=account.id,
            category=category,
            category_id=category.id if category else None,
            receiving_account=receiver,
            receiving_account_id=receiver.id if receiver else None,
            needs_confirmation=data.needs_confirmation,
            start_date=data.start_date,
            end_date=data.end_date,
            next_occurrence=data.start_date,
            interval=data.interval,
            interval_unit=data.interval_unit,
            finished=False,
            split_details=_split_details(data.split_details),
        )
        self.processor.verify_not_obsolete(template)
        self.session.add(template)
        self.engine.expand(template, self.processor.today)
        self.session.commit()
        self.session.refresh(template)
        return template

    @retry_on_conflict
    def update(
        self,
        recurring_id: int,
        data: RecurringTransactionIn,
        update_instances: bool = False,
    ) -> RecurringTransaction:
        """Change a template and continue expanding it.

        With ``update_instances`` the instances created so far are reverted and
        removed, and the template is expanded again from its start date.
        Otherwise existing instances stay and expansion resumes at the cursor.
        """
        template = self.get(recurring_id)
        type_, account, category, receiver = _resolve_typed_fields(self.session, data)
        if type_ != template.type:
            raise ValidationError(
                "Changing the type of a recurring transaction is not possible"
            )
        if not update_instances and data.start_date != template.start_date:
            raise ValidationError(
                "The start date can only change together with the created instances"
            )
        self.processor.verify_references(
            account,
            category,
            receiver,
            [sd.splitwise_user_id for sd in data.split_details],
        )

        if update_instances:
            for transaction in list(template.transactions):
                self.processor.revert_if_processed(transaction)
                transaction.recurring_transaction = None
                self.session.delete(transaction)
            template.last_occurrence = None

        template.description = data.description
        template.amount_cents = data.amount_cents
        template.account = account
        template.account_id = account.id
        template.category = category
        template.category_id = category.id if category else None
        template.receiving_account = receiver
        template.receiving_account_id = receiver.id if receiver else None
        template.needs_confirmation = data.needs_confirmation
        template.start_date = data.start_date
        template.end_date = data.end_date
        template.interval = data.interval
        template.interval_unit = data.interval_unit
        template.split_details = _split_details(data.split_details)

        template.finished = False
        if template.last_occurrence is None:
            template.next_occurrence = template.start_date
        else:
            # The new interval and end date apply from the last instance on.
            calculate_next_occurrence(template)
        if not template.finished:
            self.engine.expand(template, self.processor.today)
        self.session.commit()
        return template

    @retry_on_conflict
    def delete(self, recurring_id: int, delete_instances: bool = False) -> None:
        template = self.get(recurring_id)
        for transaction in list(template.transactions):
            if delete_instances:
                self.processor.revert_if_processed(transaction)
                self.session.delete(transaction)
            else:
                transaction.recurring_transaction = None
        self.session.delete(template)
        self.session.commit()


@dataclass
class CategoryReport:
    unit: IntervalUnit
    dates: list[date]
    expenses: list[int]
    incomes: list[int]
    results: Optional[list[int]]


@dataclass
class PeriodReport:
    unit: IntervalUnit
    dates: list[date]
    totals: int
    sums_per_interval: list[int]
    totals_per_category: dict[int, int] = field(default_factory=dict)
    daily_net_worth: list[BalanceInterval] = field(default_factory=list)


@dataclass
class CurrentDateReport:
    accounts: list[Account]
    budgets: list[Budget]
    latest_transactions: list[Transaction]
    upcoming_transactions: list[Transaction]
    unconfirmed_transactions: list[Transaction]
    historical_balance: list[BalanceInterval]
    net_worth: int


class ReportService:
    # Category reports fit a chart of at most this many bars.
    CATEGORY_REPORT_INTERVALS = 12
    # The current date report looks this far back and ahead.
    HISTORY = timedelta(weeks=12)
    LOOKAHEAD = timedelta(days=7)
    LIST_SIZE = 5

    def __init__(self, session: Session, today: Optional[date] = None) -> None:
        self.session = session
        self.today = today

    def current_date_report(self) -> CurrentDateReport:
        """Overview of the accounts, recent activity and running budgets."""
        today = self.today or local_today()
        first_date = today - self.HISTORY

        accounts = list(
            self.session.scalars(
                select(Account)
                .where(Account.is_obsolete.is_(False))
                .order_by(Account.description)
            ).all()
        )
        budgets = list(
            self.session.scalars(
                select(Budget)
                .where(Budget.start_date <= today, Budget.end_date >= today)
                .order_by(Budget.start_date, Budget.id)
            ).all()
        )
        recent = list(
            self.session.scalars(
                select(Transaction)
                .where(
                    Transaction.date >= first_date,
                    Transaction.date <= today + self.LOOKAHEAD,
                )
                .order_by(Transaction.date.desc(), Transaction.id.desc())
            ).all()
        )
        by_date = sorted(recent, key=lambda t: t.date)
        return CurrentDateReport(
            accounts=accounts,
            budgets=budgets,
            latest_transactions=[t for t in recent if t.processed][: self.LIST_SIZE],
            upcoming_transactions=[
                t for t in by_date if t.date > today and not t.needs_confirmation
            ][: self.LIST_SIZE],
            unconfirmed_transactions=[
                t for t in by_date if t.needs_confirmation and not t.is_confirmed
            ][: self.LIST_SIZE],
            # Obsolete accounts still count towards the historical balance.
            historical_balance=self.net_worth_timeline(first_date, today),
            net_worth=sum(a.current_balance for a in accounts),
        )

    def net_worth_timeline(self, start: date, end: date) -> list[BalanceInterval]:
        """Daily combined balance of all accounts over ``[start, end]``."""
        if end < start:
            raise ValidationError("Start date must not be after end date")
        snapshots = self.session.scalars(select(DailyBalance)).all()
        timeline = build_balance_timeline(within(snapshots, start, end))
        return to_daily_intervals(to_fixed_period(timeline, start, end))

    def _processed_between(
        self, start: date, end: date, category_ids: Optional[list[int]] = None
    ) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.processed.is_(True),
            Transaction.type != TransactionType.transfer,
            Transaction.date >= start,
            Transaction.date <= end,
        )
        if category_ids is not None:
            stmt = stmt.where(Transaction.category_id.in_(category_ids))
        return list(self.session.scalars(stmt.order_by(Transaction.date)).all())

    def category_report(
        self, category_id: int, start: date, end: date
    ) -> CategoryReport:
        category = _get(self.session, Category, category_id, "Category")
        unit, intervals = get_intervals(start, end, self.CATEGORY_REPORT_INTERVALS)
        category_ids = [category.id] + [child.id for child in category.children]
        transactions = self._processed_between(start, end, category_ids)

        grouped = group_by_interval(transactions, intervals, key=lambda t: t.date)

        def sum_of(type_: TransactionType) -> list[int]:
            return [
                sum(t.personal_amount_cents for t in grouped[i] if t.type == type_)
                for i in intervals
            ]

        expenses = sum_of(TransactionType.expense)
        incomes = sum_of(TransactionType.income)
        results = None
        if any(expenses) and any(incomes):
            results = [e + i for e, i in zip(expenses, incomes)]
        return CategoryReport(
            unit=unit,
            dates=to_dates(intervals),
            expenses=expenses,
            incomes=incomes,
            results=results,
        )

    def period_report(self, start: date, end: date) -> PeriodReport:
        unit, intervals = get_intervals(start, end)
        transactions = self._processed_between(start, end)
        grouped = group_by_interval(transactions, intervals, key=lambda t: t.date)

        per_category: dict[int, int] = defaultdict(int)
        for transaction in transactions:
            per_category[transaction.category_id] += transaction.personal_amount_cents

        return PeriodReport(
            unit=unit,
            dates=to_dates(intervals),
            totals=sum(t.personal_amount_cents for t in transactions),
            sums_per_interval=[
                sum(t.personal_amount_cents for t in grouped[i]) for i in intervals
            ],
            totals_per_category=dict(per_category),
            daily_net_worth=self.net_worth_timeline(start, end),
        )
