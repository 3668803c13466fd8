from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class AccountType(str, Enum):
    normal = "normal"
    splitwise = "splitwise"


class IntervalUnit(str, Enum):
    days = "days"
    weeks = "weeks"
    months = "months"
    years = "years"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Icon(Base):
    __tablename__ = "icons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pack: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False)


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.normal
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_obsolete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    icon_id: Mapped[Optional[int]] = mapped_column(ForeignKey("icons.id"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    icon: Mapped[Optional["Icon"]] = relationship("Icon")
    daily_balances: Mapped[list["DailyBalance"]] = relationship(
        "DailyBalance",
        back_populates="account",
        order_by="DailyBalance.date",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def current_balance(self) -> int:
        if not self.daily_balances:
            return 0
        return max(self.daily_balances, key=lambda db: db.date).balance_cents


class DailyBalance(Base):
    __tablename__ = "daily_balances"

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), primary_key=True
    )
    date: Mapped[date] = mapped_column(Date, primary_key=True)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    account: Mapped["Account"] = relationship(
        "Account", back_populates="daily_balances"
    )

    __mapper_args__ = {"version_id_col": version}


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    is_obsolete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expected_monthly_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    parent_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id")
    )
    icon_id: Mapped[Optional[int]] = mapped_column(ForeignKey("icons.id"))

    icon: Mapped[Optional["Icon"]] = relationship("Icon")
    parent_category: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side=[id], back_populates="children"
    )
    children: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent_category"
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        CheckConstraint("start_date <= end_date", name="ck_budget_period"),
        Index("ix_budgets_category_period", "category_id", "start_date", "end_date"),
    )


class SplitDetail(Base):
    __tablename__ = "split_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    recurring_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_transactions.id")
    )
    splitwise_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("splitwise_transactions.id")
    )
    splitwise_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    splitwise_user_name: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_split_detail_amount_positive"),
    )


class PaymentRequest(Base):
    __tablename__ = "payment_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    paid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(String(250), nullable=False)

    __table_args__ = (
        CheckConstraint("paid_count <= count", name="ck_payment_request_paid"),
    )

    @property
    def amount_due_cents(self) -> int:
        return (self.count - self.paid_count) * self.amount_cents


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(250), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    receiving_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    needs_confirmation: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_confirmed: Mapped[Optional[bool]] = mapped_column(Boolean)
    recurring_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_transactions.id")
    )
    splitwise_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("splitwise_transactions.id")
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    receiving_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[receiving_account_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")
    recurring_transaction: Mapped[Optional["RecurringTransaction"]] = relationship(
        "RecurringTransaction", back_populates="transactions"
    )
    splitwise_transaction: Mapped[Optional["SplitwiseTransaction"]] = relationship(
        "SplitwiseTransaction", back_populates="transaction"
    )
    payment_requests: Mapped[list["PaymentRequest"]] = relationship(
        "PaymentRequest", cascade="all, delete-orphan"
    )
    split_details: Mapped[list["SplitDetail"]] = relationship(
        "SplitDetail",
        foreign_keys=[SplitDetail.transaction_id],
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint(
            "(category_id IS NULL) != (receiving_account_id IS NULL)",
            name="ck_transaction_category_xor_receiver",
        ),
        Index("ix_transactions_processed_date", "processed", "date"),
        Index("ix_transactions_category_date", "category_id", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
    )

    @property
    def personal_amount_cents(self) -> int:
        if self.type != TransactionType.expense:
            return self.amount_cents
        return self.amount_cents + sum(sd.amount_cents for sd in self.split_details)


class RecurringTransaction(Base, TimestampMixin):
    __tablename__ = "recurring_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(250), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    receiving_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    needs_confirmation: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    next_occurrence: Mapped[Optional[date]] = mapped_column(Date)
    last_occurrence: Mapped[Optional[date]] = mapped_column(Date)
    interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    interval_unit: Mapped[IntervalUnit] = mapped_column(
        SAEnum(IntervalUnit), nullable=False
    )
    finished: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    receiving_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[receiving_account_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurring_transaction"
    )
    split_details: Mapped[list["SplitDetail"]] = relationship(
        "SplitDetail",
        foreign_keys=[SplitDetail.recurring_transaction_id],
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("interval > 0", name="ck_recurring_interval_positive"),
        CheckConstraint(
            "(category_id IS NULL) != (receiving_account_id IS NULL)",
            name="ck_recurring_category_xor_receiver",
        ),
        Index("ix_recurring_finished_start", "finished", "start_date"),
    )


class SplitwiseTransaction(Base):
    __tablename__ = "splitwise_transactions"

    # Identifier assigned by Splitwise.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    description: Mapped[str] = mapped_column(String(250), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    personal_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    imported: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    split_details: Mapped[list["SplitDetail"]] = relationship(
        "SplitDetail",
        foreign_keys=[SplitDetail.splitwise_transaction_id],
        cascade="all, delete-orphan",
    )
    transaction: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", back_populates="splitwise_transaction", uselist=False
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (Index("ix_splitwise_updated_at", "updated_at"),)

    @property
    def owed_by_others_cents(self) -> int:
        return max(0, self.paid_amount_cents - self.personal_amount_cents)

    @property
    def owed_to_others_cents(self) -> int:
        return max(0, self.personal_amount_cents - self.paid_amount_cents)
