"""Shared test fixtures."""

from datetime import date, datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import Account, AccountType, Category, CategoryType
from splitwise import Expense, Split, SplitwiseUser


class FakeSplitwise:
    """In-memory stand-in for ``SplitwiseClient``."""

    enabled = True

    def __init__(self) -> None:
        self.expenses: dict[int, Expense] = {}
        self.users = [
            SplitwiseUser(id=2, first_name="Anna", last_name="Smit"),
            SplitwiseUser(id=3, first_name="Bob", last_name="Jansen"),
        ]
        self.created: list[Expense] = []
        self.deleted: list[int] = []
        self._next_id = 9000

    def put(
        self,
        expense_id: int,
        personal_cents: int,
        *,
        paid_cents: int = 0,
        on_date: date = date(2021, 1, 5),
        updated_at: datetime = datetime(2021, 1, 5, 12, 0),
        is_deleted: bool = False,
        description: str = "Dinner",
        splits: tuple[Split, ...] = (),
    ) -> Expense:
        expense = Expense(
            id=expense_id,
            description=description,
            date=on_date,
            is_deleted=is_deleted,
            paid_amount_cents=paid_cents,
            personal_amount_cents=personal_cents,
            updated_at=updated_at,
            splits=splits,
        )
        self.expenses[expense_id] = expense
        return expense

    def get_expenses(self, updated_after: datetime) -> list[Expense]:
        return sorted(
            (e for e in self.expenses.values() if e.updated_at > updated_after),
            key=lambda e: e.id,
        )

    def create_expense(
        self, total_cents: int, description: str, on_date: date, splits: list[Split]
    ) -> Expense:
        self._next_id += 1
        total = abs(total_cents)
        expense = self.put(
            self._next_id,
            total - sum(s.amount_cents for s in splits),
            paid_cents=total,
            on_date=on_date,
            updated_at=datetime(2021, 1, 1, 9, 0),
            description=description,
            splits=tuple(splits),
        )
        self.created.append(expense)
        return expense

    def delete_expense(self, expense_id: int) -> None:
        self.deleted.append(expense_id)

    def get_users(self) -> list[SplitwiseUser]:
        return list(self.users)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def splitwise() -> FakeSplitwise:
    return FakeSplitwise()


@pytest.fixture
def ledger(session):
    """Accounts and categories most tests need."""
    checking = Account(description="Checking", type=AccountType.normal)
    savings = Account(description="Savings", type=AccountType.normal)
    shared = Account(description="Splitwise", type=AccountType.splitwise)
    food = Category(description="Food", type=CategoryType.expense)
    groceries = Category(
        description="Groceries", type=CategoryType.expense, parent_category=food
    )
    salary = Category(description="Salary", type=CategoryType.income)
    session.add_all([checking, savings, shared, food, groceries, salary])
    session.commit()
    return SimpleNamespace(
        checking=checking,
        savings=savings,
        splitwise=shared,
        food=food,
        groceries=groceries,
        salary=salary,
    )
