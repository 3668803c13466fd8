"""Apply and revert the financial effect of transactions.

Balances are kept as dated snapshots per account. Mutating the balance on a
date makes sure a snapshot exists on that date (seeded from the snapshot
before it) and shifts that snapshot and every later one by the same delta,
so the latest snapshot always holds the current balance.
"""
import logging
from datetime import date, datetime
from typing import Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import local_today
from errors import (
    InvalidReferenceError,
    InvariantViolationError,
    ObsoleteEntityError,
    ValidationError,
)
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    DailyBalance,
    RecurringTransaction,
    SplitDetail,
    SplitwiseTransaction,
    Transaction,
    TransactionType,
)
from splitwise import Split, SplitwiseClient

logger = logging.getLogger(__name__)


def needs_processing(transaction: Transaction, today: date) -> bool:
    # is_confirmed is always set when confirmation is needed.
    return transaction.date <= today and (
        not transaction.needs_confirmation or bool(transaction.is_confirmed)
    )


def get_splitwise_account(session: Session) -> Account:
    account = session.scalars(
        select(Account)
        .where(Account.type == AccountType.splitwise)
        .order_by(Account.id)
        .limit(1)
    ).first()
    if account is None:
        raise InvalidReferenceError("No Splitwise account exists")
    return account


def budgets_for(session: Session, category_id: int, on_date: date) -> list[Budget]:
    """Budgets tracking ``category_id`` (directly or through its parent) on ``on_date``."""
    category_ids = [category_id]
    category = session.get(Category, category_id)
    if category is not None and category.parent_category_id is not None:
        category_ids.append(category.parent_category_id)
    stmt = select(Budget).where(
        Budget.category_id.in_(category_ids),
        Budget.start_date <= on_date,
        Budget.end_date >= on_date,
    )
    return list(session.scalars(stmt).all())


def budget_spent(session: Session, category_id: int, start: date, end: date) -> int:
    """Personal spending on ``category_id`` and its children in ``[start, end]``.

    Counts the processed expenses a budget with that category and window
    would have been charged for by the processor.
    """
    child_ids = session.scalars(
        select(Category.id).where(Category.parent_category_id == category_id)
    ).all()
    stmt = select(Transaction).where(
        Transaction.type == TransactionType.expense,
        Transaction.processed.is_(True),
        Transaction.category_id.in_([category_id, *child_ids]),
        Transaction.date >= start,
        Transaction.date <= end,
    )
    return sum(abs(t.personal_amount_cents) for t in session.scalars(stmt).all())


class TransactionProcessor:
    def __init__(
        self,
        session: Session,
        splitwise: Optional[SplitwiseClient] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.splitwise = splitwise
        self.today = today or local_today()

    # Guards

    def verify_not_obsolete(
        self, entity: Union[Transaction, RecurringTransaction]
    ) -> None:
        account = self._resolve(Account, entity.account_id, entity.account, "Account")
        receiver = None
        if entity.receiving_account_id is not None:
            receiver = self._resolve(
                Account,
                entity.receiving_account_id,
                entity.receiving_account,
                "Receiving account",
            )
        category = None
        if entity.category_id is not None:
            category = self._resolve(
                Category, entity.category_id, entity.category, "Category"
            )
        self.verify_references(
            account,
            category,
            receiver,
            [sd.splitwise_user_id for sd in entity.split_details],
        )

    def verify_references(
        self,
        account: Account,
        category: Optional[Category] = None,
        receiver: Optional[Account] = None,
        split_user_ids: Iterable[int] = (),
    ) -> None:
        """Reject references a new or changed transaction may no longer use."""
        if account.is_obsolete:
            raise ObsoleteEntityError("Account is obsolete")
        if receiver is not None and receiver.is_obsolete:
            raise ObsoleteEntityError("Receiver is obsolete")
        if category is not None and category.is_obsolete:
            raise ObsoleteEntityError("Category is obsolete")

        split_user_ids = list(split_user_ids)
        if split_user_ids:
            known_users = {user.id for user in self._splitwise().get_users()}
            if any(user_id not in known_users for user_id in split_user_ids):
                raise ObsoleteEntityError("Splitwise user is obsolete")

    def _resolve(self, model, ident: Optional[int], loaded, label: str):
        entity = loaded
        if entity is None and ident is not None:
            entity = self.session.get(model, ident)
        if entity is None:
            raise InvalidReferenceError(f"{label} with identifier {ident} is not loaded")
        return entity

    def _splitwise(self) -> SplitwiseClient:
        if self.splitwise is None or not self.splitwise.enabled:
            raise ValidationError(
                "Splitwise integration is required for split transactions"
            )
        return self.splitwise

    # Single transactions

    def process_if_needed(self, transaction: Transaction) -> bool:
        if transaction.processed or not needs_processing(transaction, self.today):
            return False
        self.apply(transaction)
        return True

    def revert_if_processed(
        self, transaction: Transaction, only_internally: bool = False
    ) -> bool:
        if not transaction.processed:
            return False
        self.revert(transaction, only_internally)
        return True

    def apply(self, transaction: Transaction) -> None:
        if transaction.processed:
            raise InvariantViolationError(
                f"Transaction {transaction.id} has already been processed"
            )
        self.verify_not_obsolete(transaction)

        account = self._resolve(
            Account, transaction.account_id, transaction.account, "Account"
        )
        amount = transaction.amount_cents

        if transaction.type == TransactionType.expense:
            if transaction.split_details and transaction.splitwise_transaction is None:
                self._create_splitwise_expense(transaction)
            self.mutate_balance(account, transaction.date, -abs(amount))
            self.apply_budgets(
                transaction.category_id,
                transaction.date,
                abs(transaction.personal_amount_cents),
            )
            if transaction.split_details:
                self.mutate_balance(
                    get_splitwise_account(self.session),
                    transaction.date,
                    self._owed_by_others(transaction),
                )
        elif transaction.type == TransactionType.income:
            self.mutate_balance(account, transaction.date, abs(amount))
        elif transaction.type == TransactionType.transfer:
            receiver = self._resolve(
                Account,
                transaction.receiving_account_id,
                transaction.receiving_account,
                "Receiving account",
            )
            self.mutate_balance(account, transaction.date, -amount)
            self.mutate_balance(receiver, transaction.date, amount)
        else:
            raise InvariantViolationError(f"Unknown transaction type {transaction.type}")

        transaction.processed = True
        logger.debug(
            f"transaction_applied: id={transaction.id} type={transaction.type.value} "
            f"amount_cents={amount} date={transaction.date}"
        )

    def revert(self, transaction: Transaction, only_internally: bool = False) -> None:
        if not transaction.processed:
            raise InvariantViolationError(
                f"Transaction {transaction.id} has not been processed"
            )

        account = self._fresh(Account, transaction.account_id)
        amount = transaction.amount_cents

        if transaction.type == TransactionType.expense:
            self.mutate_balance(account, transaction.date, abs(amount))
            self.revert_budgets(
                transaction.category_id,
                transaction.date,
                abs(transaction.personal_amount_cents),
            )
            if transaction.split_details:
                self.mutate_balance(
                    get_splitwise_account(self.session),
                    transaction.date,
                    -self._owed_by_others(transaction),
                )
                if not only_internally:
                    self._delete_splitwise_expense(transaction)
        elif transaction.type == TransactionType.income:
            self.mutate_balance(account, transaction.date, -abs(amount))
        elif transaction.type == TransactionType.transfer:
            receiver = self._fresh(Account, transaction.receiving_account_id)
            self.mutate_balance(account, transaction.date, amount)
            self.mutate_balance(receiver, transaction.date, -amount)

        transaction.processed = False
        logger.debug(
            f"transaction_reverted: id={transaction.id} type={transaction.type.value} "
            f"amount_cents={amount} date={transaction.date}"
        )

    def change_category(self, transaction: Transaction, new_category_id: int) -> None:
        """Move the budget effect of an expense to another category."""
        if transaction.processed and transaction.type == TransactionType.expense:
            personal = abs(transaction.personal_amount_cents)
            self.revert_budgets(transaction.category_id, transaction.date, personal)
            self.apply_budgets(new_category_id, transaction.date, personal)
        transaction.category_id = new_category_id
        transaction.category = self.session.get(Category, new_category_id)

    # Balances and budgets

    def mutate_balance(self, account: Account, on_date: date, delta: int) -> None:
        entries = [db for db in account.daily_balances if db.date >= on_date]
        if not any(db.date == on_date for db in entries):
            earlier = [db for db in account.daily_balances if db.date < on_date]
            opening = max(earlier, key=lambda db: db.date).balance_cents if earlier else 0
            entry = DailyBalance(date=on_date, balance_cents=opening)
            account.daily_balances.append(entry)
            entries.append(entry)
        for entry in entries:
            entry.balance_cents += delta
        # Updates the versioned account row, so concurrent balance changes conflict.
        account.updated_at = datetime.utcnow()

    def apply_budgets(self, category_id: Optional[int], on_date: date, amount: int) -> None:
        if category_id is None:
            raise InvalidReferenceError("Expense transaction has no category")
        for budget in budgets_for(self.session, category_id, on_date):
            budget.spent_cents += amount

    def revert_budgets(self, category_id: Optional[int], on_date: date, amount: int) -> None:
        if category_id is None:
            raise InvalidReferenceError("Expense transaction has no category")
        for budget in budgets_for(self.session, category_id, on_date):
            budget.spent_cents -= amount

    def _fresh(self, model, ident: Optional[int]):
        entity = self.session.get(model, ident) if ident is not None else None
        if entity is None:
            raise InvalidReferenceError(
                f"{model.__name__} with identifier {ident} does not exist"
            )
        return entity

    # Splitwise

    @staticmethod
    def _owed_by_others(transaction: Transaction) -> int:
        return sum(sd.amount_cents for sd in transaction.split_details)

    def _create_splitwise_expense(self, transaction: Transaction) -> None:
        splits = [
            Split(
                user_id=sd.splitwise_user_id,
                user_name=sd.splitwise_user_name,
                amount_cents=sd.amount_cents,
            )
            for sd in transaction.split_details
        ]
        expense = self._splitwise().create_expense(
            transaction.amount_cents, transaction.description, transaction.date, splits
        )
        record = SplitwiseTransaction(
            id=expense.id,
            description=expense.description,
            date=expense.date,
            is_deleted=False,
            paid_amount_cents=expense.paid_amount_cents,
            personal_amount_cents=expense.personal_amount_cents,
            # The category is known here, so the record counts as imported.
            imported=True,
            updated_at=expense.updated_at,
            split_details=[
                SplitDetail(
                    splitwise_user_id=split.user_id,
                    splitwise_user_name=split.user_name,
                    amount_cents=split.amount_cents,
                )
                for split in splits
            ],
        )
        self.session.add(record)
        transaction.splitwise_transaction = record
        logger.info(
            f"splitwise_expense_created: id={expense.id} transaction={transaction.id}"
        )

    def _delete_splitwise_expense(self, transaction: Transaction) -> None:
        record = transaction.splitwise_transaction
        if record is None:
            return
        self._splitwise().delete_expense(record.id)
        record.is_deleted = True
        transaction.splitwise_transaction = None
        logger.info(
            f"splitwise_expense_deleted: id={record.id} transaction={transaction.id}"
        )
