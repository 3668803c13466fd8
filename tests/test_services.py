from datetime import date

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import (
    ConcurrencyConflictError,
    NotFoundError,
    ObsoleteEntityError,
    ValidationError,
)
from models import AccountType, CategoryType, IntervalUnit, Transaction
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    PaymentRequestIn,
    RecurringTransactionIn,
    SplitDetailIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    RecurringTransactionService,
    ReportService,
    TransactionService,
)

TODAY = date(2021, 1, 31)


def _expense(ledger, amount: int = -300, on: date = date(2021, 1, 5), **extra):
    return TransactionIn(
        account_id=ledger.checking.id,
        description="Groceries",
        amount_cents=amount,
        category_id=ledger.groceries.id,
        date=on,
        **extra,
    )


def _income(ledger, amount: int = 1_000, on: date = date(2021, 1, 3)):
    return TransactionIn(
        account_id=ledger.checking.id,
        description="Salary",
        amount_cents=amount,
        category_id=ledger.salary.id,
        date=on,
    )


def test_account_descriptions_and_defaults(session, ledger):
    accounts = AccountService(session)
    with pytest.raises(ValidationError):
        accounts.create(AccountIn(description="checking"))
    with pytest.raises(ValidationError):
        accounts.create(AccountIn(description="Shared", type=AccountType.splitwise))

    first = accounts.create(AccountIn(description="Wallet", is_default=True))
    second = accounts.create(AccountIn(description="Card", is_default=True))

    assert second.is_default
    assert not first.is_default
    assert second.icon.name == "wallet"


def test_account_obsolete_rules(session, ledger):
    TransactionService(session, today=TODAY).create(_income(ledger))
    accounts = AccountService(session)

    with pytest.raises(ValidationError):
        accounts.set_obsolete(ledger.checking.id, True)

    accounts.set_obsolete(ledger.savings.id, True)
    assert ledger.savings.is_obsolete
    accounts.create(AccountIn(description="Savings"))
    with pytest.raises(ValidationError):
        accounts.set_obsolete(ledger.savings.id, False)

    with pytest.raises(NotFoundError):
        accounts.get(999)


def test_account_balance_intervals_are_daily(session, ledger):
    transactions = TransactionService(session, today=TODAY)
    transactions.create(_income(ledger))
    transactions.create(_expense(ledger))

    daily = AccountService(session).get_balance_intervals(
        ledger.checking.id, date(2021, 1, 1), date(2021, 1, 6)
    )

    assert [d.balance_cents for d in daily] == [0, 0, 1_000, 1_000, 700, 700]
    assert daily[0].start == date(2021, 1, 1)
    assert daily[-1].end == date(2021, 1, 6)


def test_category_depth_and_expected_amounts(session, ledger):
    categories = CategoryService(session)
    with pytest.raises(ValidationError):
        categories.create(
            CategoryIn(
                description="Fruit",
                type=CategoryType.expense,
                parent_category_id=ledger.groceries.id,
            )
        )

    housing = categories.create(
        CategoryIn(
            description="Housing",
            type=CategoryType.expense,
            expected_monthly_amount_cents=-100_000,
        )
    )
    categories.create(
        CategoryIn(
            description="Rent",
            type=CategoryType.expense,
            parent_category_id=housing.id,
            expected_monthly_amount_cents=-80_000,
        )
    )
    with pytest.raises(ValidationError):
        categories.create(
            CategoryIn(
                description="Utilities",
                type=CategoryType.expense,
                parent_category_id=housing.id,
                expected_monthly_amount_cents=-30_000,
            )
        )

    with pytest.raises(PydanticValidationError):
        CategoryIn(
            description="Bonus",
            type=CategoryType.income,
            expected_monthly_amount_cents=-5,
        )


def test_category_obsolete_cascades_to_children(session, ledger):
    CategoryService(session).set_obsolete(ledger.food.id, True)
    assert ledger.food.is_obsolete
    assert ledger.groceries.is_obsolete

    with pytest.raises(ObsoleteEntityError):
        CategoryService(session).set_obsolete(ledger.groceries.id, False)


def test_budget_spent_is_computed_from_existing_transactions(session, ledger):
    TransactionService(session, today=TODAY).create(_expense(ledger))
    budgets = BudgetService(session)

    budget = budgets.create(
        BudgetIn(
            category_id=ledger.food.id,
            amount_cents=1_000,
            start_date=date(2021, 1, 1),
            end_date=date(2021, 1, 31),
        )
    )
    assert budget.spent_cents == 300

    budgets.update(
        budget.id,
        BudgetIn(
            category_id=ledger.food.id,
            amount_cents=1_000,
            start_date=date(2021, 2, 1),
            end_date=date(2021, 2, 28),
        ),
    )
    assert budget.spent_cents == 0

    with pytest.raises(ValidationError):
        budgets.create(
            BudgetIn(
                category_id=ledger.salary.id,
                amount_cents=1_000,
                start_date=date(2021, 1, 1),
                end_date=date(2021, 1, 31),
            )
        )
    with pytest.raises(PydanticValidationError):
        BudgetIn(
            category_id=ledger.food.id,
            amount_cents=0,
            start_date=date(2021, 1, 1),
            end_date=date(2021, 1, 31),
        )


def test_budget_follows_later_transactions(session, ledger):
    budget = BudgetService(session).create(
        BudgetIn(
            category_id=ledger.food.id,
            amount_cents=1_000,
            start_date=date(2021, 1, 1),
            end_date=date(2021, 1, 31),
        )
    )
    transactions = TransactionService(session, today=TODAY)
    txn = transactions.create(_expense(ledger, amount=-450))
    assert budget.spent_cents == 450

    transactions.delete(txn.id)
    assert budget.spent_cents == 0
    assert ledger.checking.current_balance == 0


def test_transaction_input_shape():
    with pytest.raises(PydanticValidationError):
        TransactionIn(
            account_id=1,
            description="Both",
            amount_cents=100,
            category_id=1,
            receiving_account_id=2,
            date=date(2021, 1, 1),
        )
    with pytest.raises(PydanticValidationError):
        TransactionIn(
            account_id=1,
            description="Self",
            amount_cents=100,
            receiving_account_id=1,
            date=date(2021, 1, 1),
        )


def test_transaction_sign_must_match_category(session, ledger):
    with pytest.raises(ValidationError):
        TransactionService(session, today=TODAY).create(_expense(ledger, amount=300))


def test_transaction_create_update_and_future(session, ledger):
    transactions = TransactionService(session, today=TODAY)
    txn = transactions.create(_expense(ledger))
    future = transactions.create(_expense(ledger, on=date(2021, 2, 10)))

    assert txn.processed
    assert not future.processed
    assert ledger.checking.current_balance == -300

    transactions.update(txn.id, _expense(ledger, amount=-500))
    assert txn.processed
    assert ledger.checking.current_balance == -500


def test_transaction_confirmation(session, ledger):
    transactions = TransactionService(session, today=TODAY)
    txn = transactions.create(_expense(ledger, needs_confirmation=True))

    assert txn.is_confirmed is False
    assert not txn.processed

    transactions.confirm(txn.id)
    assert txn.processed
    assert ledger.checking.current_balance == -300
    with pytest.raises(ValidationError):
        transactions.confirm(txn.id)


def test_transaction_category_change(session, ledger):
    transactions = TransactionService(session, today=TODAY)
    txn = transactions.create(_expense(ledger))
    with pytest.raises(ValidationError):
        transactions.update_category(txn.id, ledger.salary.id)

    transactions.update_category(txn.id, ledger.food.id)
    assert txn.category_id == ledger.food.id
    assert ledger.checking.current_balance == -300


def test_payment_requests(session, ledger):
    transactions = TransactionService(session, today=TODAY)
    txn = transactions.create(
        _expense(
            ledger,
            payment_requests=[
                PaymentRequestIn(amount_cents=100, count=2, description="Friends")
            ],
        )
    )
    request = txn.payment_requests[0]
    assert request.amount_due_cents == 200

    transactions.fulfill_payment_request(request.id)
    transactions.fulfill_payment_request(request.id)
    assert request.amount_due_cents == 0
    with pytest.raises(ValidationError):
        transactions.fulfill_payment_request(request.id)

    transactions.revert_payment_request(request.id)
    assert request.paid_count == 1


def test_split_transaction_round_trip(session, ledger, splitwise):
    transactions = TransactionService(session, splitwise, today=TODAY)
    txn = transactions.create(
        _expense(
            ledger,
            amount=-10_000,
            split_details=[
                SplitDetailIn(
                    splitwise_user_id=2,
                    splitwise_user_name="Anna Smit",
                    amount_cents=4_000,
                )
            ],
        )
    )
    assert len(splitwise.created) == 1
    assert txn.personal_amount_cents == -6_000
    assert ledger.splitwise.current_balance == 4_000

    transactions.delete(txn.id)
    assert splitwise.deleted == [splitwise.created[0].id]
    assert ledger.splitwise.current_balance == 0
    assert ledger.checking.current_balance == 0


def test_recurring_transaction_expands_on_create(session, ledger):
    recurring = RecurringTransactionService(session, today=TODAY)
    template = recurring.create(
        RecurringTransactionIn(
            account_id=ledger.checking.id,
            description="Gym",
            amount_cents=-2_000,
            category_id=ledger.groceries.id,
            start_date=date(2021, 1, 1),
            interval=1,
            interval_unit=IntervalUnit.weeks,
        )
    )

    assert len(template.transactions) == 5
    assert template.next_occurrence == date(2021, 2, 5)
    assert ledger.checking.current_balance == -10_000

    recurring.delete(template.id, delete_instances=True)
    assert ledger.checking.current_balance == 0
    assert session.query(Transaction).count() == 0


def test_recurring_delete_keeps_instances(session, ledger):
    recurring = RecurringTransactionService(session, today=TODAY)
    template = recurring.create(
        RecurringTransactionIn(
            account_id=ledger.checking.id,
            description="Allowance",
            amount_cents=500,
            category_id=ledger.salary.id,
            start_date=date(2021, 1, 20),
            interval=1,
            interval_unit=IntervalUnit.days,
            end_date=date(2021, 1, 22),
        )
    )
    assert template.finished

    recurring.delete(template.id)
    kept = session.query(Transaction).all()
    assert len(kept) == 3
    assert all(t.recurring_transaction_id is None for t in kept)
    assert ledger.checking.current_balance == 1_500


def _seed_reports(session, ledger) -> None:
    transactions = TransactionService(session, today=TODAY)
    transactions.create(_income(ledger))
    transactions.create(
        TransactionIn(
            account_id=ledger.checking.id,
            description="Save",
            amount_cents=200,
            receiving_account_id=ledger.savings.id,
            date=date(2021, 1, 4),
        )
    )
    transactions.create(_expense(ledger))


def test_net_worth_timeline(session, ledger):
    _seed_reports(session, ledger)
    daily = ReportService(session).net_worth_timeline(date(2021, 1, 1), date(2021, 1, 6))
    assert [d.balance_cents for d in daily] == [0, 0, 1_000, 1_000, 700, 700]


def test_period_report(session, ledger):
    _seed_reports(session, ledger)
    report = ReportService(session).period_report(date(2021, 1, 1), date(2021, 1, 31))

    assert report.unit == IntervalUnit.days
    assert len(report.dates) == 31
    assert report.totals == 700
    assert report.sums_per_interval[2] == 1_000
    assert report.sums_per_interval[4] == -300
    assert report.totals_per_category == {
        ledger.salary.id: 1_000,
        ledger.groceries.id: -300,
    }
    assert len(report.daily_net_worth) == 31


def test_category_report_fits_twelve_intervals(session, ledger):
    _seed_reports(session, ledger)
    report = ReportService(session).category_report(
        ledger.food.id, date(2021, 1, 1), date(2021, 12, 31)
    )

    assert report.unit == IntervalUnit.months
    assert len(report.dates) == 12
    assert report.expenses[0] == -300
    assert sum(report.expenses[1:]) == 0
    assert report.results is None


def _split_expense(ledger) -> TransactionIn:
    return _expense(
        ledger,
        amount=-10_000,
        split_details=[
            SplitDetailIn(
                splitwise_user_id=2, splitwise_user_name="Anna Smit", amount_cents=4_000
            )
        ],
    )


def test_update_with_invalid_input_changes_nothing(session, ledger, splitwise):
    transactions = TransactionService(session, splitwise, today=TODAY)
    txn = transactions.create(_split_expense(ledger))

    unknown_category = _split_expense(ledger).model_copy(update={"category_id": 999})
    with pytest.raises(NotFoundError):
        transactions.update(txn.id, unknown_category)

    ledger.savings.is_obsolete = True
    obsolete_account = _split_expense(ledger).model_copy(
        update={"account_id": ledger.savings.id}
    )
    with pytest.raises(ObsoleteEntityError):
        transactions.update(txn.id, obsolete_account)

    assert splitwise.deleted == []
    assert txn.processed
    assert txn.splitwise_transaction is not None
    assert ledger.checking.current_balance == -10_000
    assert ledger.splitwise.current_balance == 4_000


def test_interactive_write_is_retried_after_a_conflict(session, ledger, monkeypatch):
    commit = session.commit
    calls = []

    def conflicting_once():
        calls.append(1)
        if len(calls) == 1:
            raise StaleDataError("row was updated concurrently")
        commit()

    monkeypatch.setattr(session, "commit", conflicting_once)

    txn = TransactionService(session, today=TODAY).create(_expense(ledger))

    assert len(calls) == 2
    assert txn.processed
    assert session.query(Transaction).count() == 1
    assert ledger.checking.current_balance == -300


def test_interactive_write_gives_up_after_repeated_conflicts(
    session, ledger, monkeypatch
):
    calls = []

    def always_conflicting():
        calls.append(1)
        raise StaleDataError("row was updated concurrently")

    monkeypatch.setattr(session, "commit", always_conflicting)

    with pytest.raises(ConcurrencyConflictError) as excinfo:
        AccountService(session).create(AccountIn(description="Wallet"))

    attempts = get_settings().concurrency_retries
    assert excinfo.value.attempts == attempts
    assert len(calls) == attempts


def test_concurrent_balance_change_is_recomputed(
    session_factory, session, ledger, monkeypatch
):
    TransactionService(session, today=TODAY).create(_income(ledger))
    commit = session.commit
    interfered = []

    def commit_after_concurrent_income():
        if not interfered:
            interfered.append(True)
            with session_factory() as other:
                TransactionService(other, today=TODAY).create(_income(ledger, amount=500))
        commit()

    monkeypatch.setattr(session, "commit", commit_after_concurrent_income)

    TransactionService(session, today=TODAY).create(_expense(ledger))

    assert ledger.checking.current_balance == 1_200
    daily = AccountService(session).get_balance_intervals(
        ledger.checking.id, date(2021, 1, 3), date(2021, 1, 5)
    )
    assert [d.balance_cents for d in daily] == [1_500, 1_500, 1_200]


def test_confirm_with_actual_date_and_amount(session, ledger):
    transactions = TransactionService(session, today=TODAY)
    txn = transactions.create(_expense(ledger, needs_confirmation=True))

    transactions.confirm(txn.id, on_date=date(2021, 1, 7), amount_cents=-450)

    assert txn.date == date(2021, 1, 7)
    assert txn.amount_cents == -450
    assert txn.processed
    assert ledger.checking.current_balance == -450

    later = transactions.create(_expense(ledger, needs_confirmation=True))
    transactions.confirm(later.id, on_date=date(2021, 2, 3), amount_cents=-100)
    assert later.is_confirmed
    assert not later.processed

    wrong_sign = transactions.create(_expense(ledger, needs_confirmation=True))
    with pytest.raises(ValidationError):
        transactions.confirm(wrong_sign.id, amount_cents=100)
    assert wrong_sign.is_confirmed is False
    assert ledger.checking.current_balance == -450


def _gym(ledger, **overrides) -> RecurringTransactionIn:
    values = dict(
        account_id=ledger.checking.id,
        description="Gym",
        amount_cents=-2_000,
        category_id=ledger.groceries.id,
        start_date=date(2021, 1, 1),
        interval=1,
        interval_unit=IntervalUnit.weeks,
    )
    values.update(overrides)
    return RecurringTransactionIn(**values)


def test_recurring_update_recreates_instances(session, ledger):
    recurring = RecurringTransactionService(session, today=TODAY)
    template = recurring.create(_gym(ledger))
    assert ledger.checking.current_balance == -10_000

    recurring.update(
        template.id,
        _gym(ledger, amount_cents=-3_000, start_date=date(2021, 1, 15)),
        update_instances=True,
    )

    dates = sorted(t.date for t in session.query(Transaction).all())
    assert dates == [date(2021, 1, 15), date(2021, 1, 22), date(2021, 1, 29)]
    assert len(template.transactions) == 3
    assert template.next_occurrence == date(2021, 2, 5)
    assert ledger.checking.current_balance == -9_000


def test_recurring_update_keeps_instances_and_moves_cursor(session, ledger):
    recurring = RecurringTransactionService(session, today=TODAY)
    template = recurring.create(_gym(ledger))

    recurring.update(template.id, _gym(ledger, amount_cents=-3_000, interval=2))

    assert session.query(Transaction).count() == 5
    assert template.amount_cents == -3_000
    assert template.next_occurrence == date(2021, 2, 12)
    assert ledger.checking.current_balance == -10_000

    recurring.update(template.id, _gym(ledger, end_date=date(2021, 1, 30)))
    assert template.finished
    assert template.next_occurrence is None


def test_recurring_update_validation(session, ledger):
    recurring = RecurringTransactionService(session, today=TODAY)
    template = recurring.create(_gym(ledger))

    with pytest.raises(ValidationError):
        recurring.update(
            template.id,
            _gym(ledger, amount_cents=2_000, category_id=ledger.salary.id),
            update_instances=True,
        )
    with pytest.raises(ValidationError):
        recurring.update(template.id, _gym(ledger, start_date=date(2021, 1, 2)))

    assert session.query(Transaction).count() == 5
    assert ledger.checking.current_balance == -10_000


def test_current_date_report(session, ledger):
    transactions = TransactionService(session, today=TODAY)
    income = transactions.create(_income(ledger))
    expense = transactions.create(_expense(ledger))
    upcoming = transactions.create(_expense(ledger, on=date(2021, 2, 3)))
    unconfirmed = transactions.create(
        _expense(ledger, on=date(2021, 1, 20), needs_confirmation=True)
    )
    budget = BudgetService(session).create(
        BudgetIn(
            category_id=ledger.food.id,
            amount_cents=1_000,
            start_date=date(2021, 1, 1),
            end_date=date(2021, 1, 31),
        )
    )
    AccountService(session).set_obsolete(ledger.savings.id, True)

    report = ReportService(session, today=TODAY).current_date_report()

    assert [a.description for a in report.accounts] == ["Checking", "Splitwise"]
    assert report.net_worth == 700
    assert report.latest_transactions == [expense, income]
    assert report.upcoming_transactions == [upcoming]
    assert report.unconfirmed_transactions == [unconfirmed]
    assert report.budgets == [budget]
    assert len(report.historical_balance) == 85
    assert report.historical_balance[0].balance_cents == 0
    assert report.historical_balance[-1].balance_cents == 700
