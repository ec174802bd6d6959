from datetime import date

import pytest
from pydantic import ValidationError

from conftest import USER_EMAIL
from models import AccountType, StatsPeriod, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdate
from services import (
    AccountService,
    CategoryService,
    DashboardService,
    IngestService,
    TransactionFilters,
    TransactionService,
)


def _expense(category_id: str, amount: float, day: str, **extra) -> TransactionIn:
    return TransactionIn(name=f"Spend {amount}", amount=amount, category_id=category_id, date=day, **extra)


def test_create_requires_owned_category(db) -> None:
    food = CategoryService(db, USER_EMAIL).create(CategoryIn(name="Food"))
    transactions = TransactionService(db, "other@example.com")

    with pytest.raises(ValueError, match="Invalid category ID"):
        transactions.create(_expense(food["id"], 10, "2025-03-01"))


def test_create_fills_category_name_and_normalizes_date(db) -> None:
    food = CategoryService(db, USER_EMAIL).create(CategoryIn(name="Food"))
    txn = TransactionService(db, USER_EMAIL).create(
        _expense(food["id"], 12.999, "2025-03-01T18:30:00.000Z")
    )

    assert txn["category_name"] == "Food"
    assert txn["date"] == "2025-03-01"
    assert txn["amount"] == 13.0
    assert txn["type"] == "expense"


def test_date_validation_rejects_garbage() -> None:
    with pytest.raises(ValidationError, match="Invalid date format"):
        TransactionIn(name="x", amount=1, category_id="c", date="yesterday")


def test_list_filters_sorts_and_paginates(db) -> None:
    categories = CategoryService(db, USER_EMAIL)
    food = categories.create(CategoryIn(name="Food"))
    rent = categories.create(CategoryIn(name="Rent"))
    transactions = TransactionService(db, USER_EMAIL)
    for day in ("2025-03-01", "2025-03-05", "2025-03-03"):
        transactions.create(_expense(food["id"], 5, day))
    transactions.create(_expense(rent["id"], 900, "2025-03-02"))
    transactions.create(
        TransactionIn(name="Salary", amount=3000, type=TransactionType.income, category_id=rent["id"], date="2025-03-04")
    )

    items, pagination = transactions.list(TransactionFilters(category_id=food["id"]), page=1, per_page=2)
    assert [t["date"] for t in items] == ["2025-03-05", "2025-03-03"]
    assert pagination == {
        "page": 1,
        "per_page": 2,
        "total": 3,
        "total_pages": 2,
        "has_next": True,
        "has_prev": False,
    }

    ranged, _ = transactions.list(
        TransactionFilters(date_from=date(2025, 3, 2), date_to=date(2025, 3, 4))
    )
    assert [t["date"] for t in ranged] == ["2025-03-04", "2025-03-03", "2025-03-02"]

    incomes, _ = transactions.list(TransactionFilters(type=TransactionType.income))
    assert [t["name"] for t in incomes] == ["Salary"]


def test_account_balance_follows_transaction_lifecycle(db) -> None:
    food = CategoryService(db, USER_EMAIL).create(CategoryIn(name="Food"))
    accounts = AccountService(db, USER_EMAIL)
    wallet = accounts.create(AccountIn(name="Wallet", type=AccountType.cash, balance=100))
    transactions = TransactionService(db, USER_EMAIL)

    txn = transactions.create(_expense(food["id"], 30, "2025-03-01", account_id=wallet["id"]))
    assert accounts.get(wallet["id"])["balance"] == 70

    transactions.update(txn["id"], TransactionUpdate(amount=40))
    assert accounts.get(wallet["id"])["balance"] == 60

    transactions.update(txn["id"], TransactionUpdate(type=TransactionType.income))
    assert accounts.get(wallet["id"])["balance"] == 140

    transactions.delete(txn["id"])
    assert accounts.get(wallet["id"])["balance"] == 100

    with pytest.raises(ValueError, match="Transaction not found"):
        transactions.get(txn["id"])


def test_stats_for_month_week_and_all(db) -> None:
    categories = CategoryService(db, USER_EMAIL)
    food = categories.create(CategoryIn(name="Food"))
    rent = categories.create(CategoryIn(name="Rent"))
    transactions = TransactionService(db, USER_EMAIL)
    transactions.create(_expense(food["id"], 20, "2025-03-02"))
    transactions.create(_expense(food["id"], 15, "2025-03-10"))
    transactions.create(_expense(rent["id"], 800, "2025-03-01"))
    transactions.create(_expense(rent["id"], 800, "2025-02-01"))
    transactions.create(
        TransactionIn(name="Salary", amount=2500, type=TransactionType.income, category_id=rent["id"], date="2025-03-25")
    )

    today = date(2025, 3, 10)
    month = transactions.stats(StatsPeriod.month, 2025, 3, today=today)
    assert month["total_income"] == 2500
    assert month["total_expenses"] == 835
    assert month["net_income"] == 1665
    assert month["transaction_count"] == 4
    assert list(month["by_category"]) == ["Rent", "Food"]
    assert (month["period_start"], month["period_end"]) == ("2025-03-01", "2025-03-31")

    week = transactions.stats(StatsPeriod.week, 2025, 3, today=today)
    assert (week["period_start"], week["period_end"]) == ("2025-03-08", "2025-03-14")
    assert week["total_expenses"] == 15

    everything = transactions.stats(StatsPeriod.all, today=today)
    assert everything["transaction_count"] == 5
    assert everything["period_start"] is None


def test_ingest_expense_resolves_category(db) -> None:
    CategoryService(db, USER_EMAIL).create(CategoryIn(name="Coffee"))

    txn = IngestService(db, USER_EMAIL).ingest_expense(4.5, "cofee", today=date(2025, 3, 1))
    assert txn["category_name"] == "Coffee"
    assert txn["date"] == "2025-03-01"
    assert txn["notes"] == "Logged via Telegram"

    fallback = IngestService(db, USER_EMAIL).ingest_expense(3, None, today=date(2025, 3, 1))
    assert fallback["category_name"] == "Uncategorized"
    assert fallback["name"] == "Telegram expense"


def test_dashboard_summary(db) -> None:
    food = CategoryService(db, USER_EMAIL).create(CategoryIn(name="Food"))
    accounts = AccountService(db, USER_EMAIL)
    accounts.create(AccountIn(name="Bank", type=AccountType.checking, balance=1000))
    accounts.create(AccountIn(name="Card", type=AccountType.credit, balance=-250.5))
    TransactionService(db, USER_EMAIL).create(_expense(food["id"], 12, "2025-03-03"))

    summary = DashboardService(db, USER_EMAIL).summary(today=date(2025, 3, 15))
    assert summary["totalBalance"] == 749.5
    assert summary["monthlyExpenses"] == 12
    assert summary["accountsCount"] == 2
    assert summary["transactionsCount"] == 1
    assert summary["categoriesCount"] == 1
    assert len(summary["recentTransactions"]) == 1
