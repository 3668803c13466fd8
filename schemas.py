from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, CategoryType, IntervalUnit


class AccountIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=50)
    type: AccountType = AccountType.normal
    is_default: bool = False
    icon_pack: str = Field(default="fas", max_length=20)
    icon_name: str = Field(default="wallet", max_length=50)
    icon_color: str = Field(default="#000000", max_length=7)


class CategoryIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=50)
    type: CategoryType
    parent_category_id: Optional[int] = None
    expected_monthly_amount_cents: Optional[int] = None

    @model_validator(mode="after")
    def _check_expected_amount(self) -> "CategoryIn":
        amount = self.expected_monthly_amount_cents
        if amount is None:
            return self
        if self.type == CategoryType.expense and amount >= 0:
            raise ValueError("Expected monthly amount of an expense category must be negative")
        if self.type == CategoryType.income and amount <= 0:
            raise ValueError("Expected monthly amount of an income category must be positive")
        return self


class BudgetIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., gt=0)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _check_period(self) -> "BudgetIn":
        if self.start_date > self.end_date:
            raise ValueError("Start date must be before end date")
        return self


class SplitDetailIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    splitwise_user_id: int
    splitwise_user_name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)


class PaymentRequestIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    count: int = Field(default=1, gt=0)
    description: str = Field(..., min_length=1, max_length=250)


class BaseTransactionIn(BaseModel):
    account_id: int
    description: str = Field(..., min_length=1, max_length=250)
    amount_cents: int
    category_id: Optional[int] = None
    receiving_account_id: Optional[int] = None
    needs_confirmation: bool = False
    split_details: list[SplitDetailIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_shape(self):
        if (self.category_id is None) == (self.receiving_account_id is None):
            raise ValueError(
                "Exactly one of category or receiving account must be specified"
            )
        if self.amount_cents == 0:
            raise ValueError("Amount must not be zero")
        if self.receiving_account_id is not None:
            if self.receiving_account_id == self.account_id:
                raise ValueError("Sender account can not be the receiver as well")
            if self.amount_cents < 0:
                raise ValueError("Transfer amount must be positive")
            if self.split_details:
                raise ValueError("Transfers can not be split")
        split_total = sum(sd.amount_cents for sd in self.split_details)
        if split_total > abs(self.amount_cents):
            raise ValueError("Split amounts exceed the transaction amount")
        return self


class TransactionIn(BaseTransactionIn):
    date: date
    payment_requests: list[PaymentRequestIn] = Field(default_factory=list)


class RecurringTransactionIn(BaseTransactionIn):
    start_date: date
    end_date: Optional[date] = None
    interval: int = Field(..., gt=0)
    interval_unit: IntervalUnit

    @model_validator(mode="after")
    def _check_period(self) -> "RecurringTransactionIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self
