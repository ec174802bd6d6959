import pytest

from conftest import USER_EMAIL
from schemas import (
    BudgetIn,
    BudgetItemIn,
    BudgetItemUpdate,
    BudgetUpdate,
    CategoryIn,
    IncomeIn,
    IncomeUpdate,
    TransactionIn,
)
from services import BudgetService, CategoryService, IncomeService, TransactionService


def test_one_budget_per_month(db) -> None:
    budgets = BudgetService(db, USER_EMAIL)
    march = budgets.create(BudgetIn(year=2025, month=3, income=4000))
    april = budgets.create(BudgetIn(year=2025, month=4))

    assert march["year"] == 2025 and march["month"] == 3
    assert march["income"] == 4000

    with pytest.raises(ValueError, match="Budget for 2025/3 already exists"):
        budgets.create(BudgetIn(year=2025, month=3))
    with pytest.raises(ValueError, match="Budget for 2025/3 already exists"):
        budgets.update(april["id"], BudgetUpdate(month=3))

    assert [b["month"] for b in budgets.list()] == [4, 3]
    assert [b["id"] for b in budgets.list(2025, 3)] == [march["id"]]


def test_items_are_unique_per_category_and_cascade_on_delete(db) -> None:
    categories = CategoryService(db, USER_EMAIL)
    food = categories.create(CategoryIn(name="Food"))
    rent = categories.create(CategoryIn(name="Rent"))
    budgets = BudgetService(db, USER_EMAIL)
    budget = budgets.create(BudgetIn(year=2025, month=3))

    item = budgets.create_item(BudgetItemIn(budget_id=budget["id"], category_id=food["id"], amount=300))
    assert item["category_name"] == "Food"
    assert item["spent"] == 0
    other = budgets.create_item(BudgetItemIn(budget_id=budget["id"], category_id=rent["id"], amount=900))

    with pytest.raises(ValueError, match="already exists in this budget"):
        budgets.create_item(BudgetItemIn(budget_id=budget["id"], category_id=food["id"], amount=1))
    with pytest.raises(ValueError, match="already exists in this budget"):
        budgets.update_item(other["id"], BudgetItemUpdate(category_id=food["id"]))

    updated = budgets.update_item(item["id"], BudgetItemUpdate(amount=350))
    assert updated["amount"] == 350

    assert budgets.delete(budget["id"]) == 2
    assert db.find("budget_items") == []
    with pytest.raises(ValueError, match="Budget not found"):
        budgets.get(budget["id"])


def test_items_reject_foreign_budget(db) -> None:
    food = CategoryService(db, USER_EMAIL).create(CategoryIn(name="Food"))
    budget = BudgetService(db, USER_EMAIL).create(BudgetIn(year=2025, month=3))
    stranger = BudgetService(db, "other@example.com")

    with pytest.raises(ValueError, match="Invalid budget ID"):
        stranger.create_item(BudgetItemIn(budget_id=budget["id"], category_id=food["id"], amount=10))
    assert stranger.items() == []


def test_recalculate_updates_spent_from_month_expenses(db) -> None:
    categories = CategoryService(db, USER_EMAIL)
    food = categories.create(CategoryIn(name="Food"))
    fun = categories.create(CategoryIn(name="Fun"))
    budgets = BudgetService(db, USER_EMAIL)
    budget = budgets.create(BudgetIn(year=2025, month=3))
    budgets.create_item(BudgetItemIn(budget_id=budget["id"], category_id=food["id"], amount=100))
    budgets.create_item(BudgetItemIn(budget_id=budget["id"], category_id=fun["id"], amount=50))

    transactions = TransactionService(db, USER_EMAIL)
    transactions.create(TransactionIn(name="Market", amount=80, category_id=food["id"], date="2025-03-04"))
    transactions.create(TransactionIn(name="Bakery", amount=40, category_id=food["id"], date="2025-03-20"))
    transactions.create(TransactionIn(name="Old", amount=999, category_id=food["id"], date="2025-02-28"))

    progress = {p["item"]["category_name"]: p for p in budgets.recalculate(budget["id"])}
    assert progress["Food"]["spent"] == 120
    assert progress["Food"]["is_exceeded"] is True
    assert progress["Food"]["remaining"] == 0
    assert progress["Fun"]["spent"] == 0
    assert progress["Fun"]["percentage_used"] == 0

    stored = {i["category_name"]: i["spent"] for i in budgets.items(budget["id"])}
    assert stored == {"Food": 120, "Fun": 0}


def test_incomes_list_total_and_ownership(db) -> None:
    incomes = IncomeService(db, USER_EMAIL)
    salary = incomes.create(IncomeIn(year=2025, month=3, amount=3000, source="Salary"))
    incomes.create(IncomeIn(year=2025, month=3, amount=250.25, source="Freelance"))
    incomes.create(IncomeIn(year=2025, month=4, amount=3000))

    assert len(incomes.list(2025, 3)) == 2
    assert incomes.total(2025, 3) == 3250.25
    assert incomes.total(2024, 1) == 0

    assert incomes.update(salary["id"], IncomeUpdate(amount=3100))["amount"] == 3100
    with pytest.raises(ValueError, match="Income not found"):
        IncomeService(db, "other@example.com").delete(salary["id"])

    incomes.delete(salary["id"])
    assert incomes.total(2025, 3) == 250.25
