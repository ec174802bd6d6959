from __future__ import annotations

import json
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from rapidfuzz.distance import Levenshtein

from database import (
    Record,
    RecordNotFound,
    SheetsDatabase,
    SheetsError,
    TableNotFound,
    default_settings_row,
    now_iso,
)
from migrations import emoji_for
from models import (
    ACCOUNTS,
    BUDGET_INCOMES,
    BUDGET_ITEMS,
    BUDGETS,
    CATEGORIES,
    GOALS,
    SETTINGS,
    TELEGRAM_MESSAGES,
    TRANSACTIONS,
    USERS,
    GoalPeriod,
    MessageStatus,
    NotificationType,
    StatsPeriod,
    TransactionType,
)
from periods import Period, goal_window, local_today, month_bounds, parse_day, stats_window
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetItemIn,
    BudgetItemUpdate,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    GoalIn,
    GoalUpdate,
    IncomeIn,
    IncomeUpdate,
    SettingsUpdate,
    TelegramPayload,
    TransactionIn,
    TransactionUpdate,
)
from telegram import TelegramBot, TelegramError, render_message

logger = logging.getLogger(__name__)


def as_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(str(value).replace(",", "."))
    except ValueError:
        return default


def as_int(value: Any) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "y", "on"}


def typed(
    record: Record,
    *,
    floats: tuple[str, ...] = (),
    ints: tuple[str, ...] = (),
    bools: tuple[str, ...] = (),
) -> Record:
    result = dict(record)
    for key in floats:
        result[key] = as_float(result.get(key))
    for key in ints:
        result[key] = as_int(result.get(key))
    for key in bools:
        result[key] = as_bool(result.get(key))
    return result


def paginate(records: list[Record], page: int, per_page: int) -> tuple[list[Record], dict[str, Any]]:
    total = len(records)
    total_pages = math.ceil(total / per_page) if total else 0
    offset = (page - 1) * per_page
    return records[offset : offset + per_page], {
        "page": page,
        "per_page": per_page,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def _changes(data: Any) -> dict[str, Any]:
    return data.model_dump(exclude_unset=True, mode="json")


class UserService:
    def __init__(self, db: SheetsDatabase) -> None:
        self.db = db

    def get(self, email: str) -> Optional[Record]:
        users = self.db.find(USERS.name, {"email": email})
        return users[0] if users else None

    def profile(self, email: str) -> dict[str, Any]:
        user = self.get(email)
        if not user:
            raise RecordNotFound("User not found")
        return {
            "email": user.get("email"),
            "name": user.get("name"),
            "telegram_username": user.get("telegram_username") or None,
            "chatId": user.get("chatId") or None,
            "spreadsheetId": self.db.spreadsheet_id,
        }

    def update_telegram(
        self, email: str, telegram_username: Optional[str], chat_id: Optional[str]
    ) -> Record:
        user = self.get(email)
        if not user:
            raise RecordNotFound("User not found")
        return self.db.update(
            USERS.name,
            user["id"],
            {"telegram_username": telegram_username or "", "chatId": chat_id or ""},
        )


class SettingsService:
    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    @staticmethod
    def _present(row: Record) -> dict[str, Any]:
        return {
            "currency": row.get("currency") or "USD",
            "language": row.get("language") or "en",
            "dark_mode": as_bool(row.get("dark_mode")),
            "telegram_notifications": as_bool(row.get("telegram_notifications")),
            "telegram_chat_id": str(row.get("telegram_chat_id") or "") or None,
        }

    def _row(self) -> Record:
        row = self.db.find_by_id(SETTINGS.name, self.user_id)
        if row is None:
            row = self.db.insert(SETTINGS.name, default_settings_row(self.user_id))
        return row

    def get(self) -> dict[str, Any]:
        return self._present(self._row())

    def update(self, data: SettingsUpdate) -> dict[str, Any]:
        self._row()
        changes = _changes(data)
        if changes.get("currency"):
            changes["currency"] = changes["currency"].upper()
        row = self.db.update(SETTINGS.name, self.user_id, changes)
        return self._present(row)

    def reset(self) -> dict[str, Any]:
        self._row()
        defaults = default_settings_row(self.user_id)
        defaults.pop("user_id")
        row = self.db.update(SETTINGS.name, self.user_id, defaults)
        return self._present(row)


class CategoryAmbiguous(ValueError):
    pass


class CategoryService:
    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    def list_all(self) -> list[Record]:
        categories = self.db.find(CATEGORIES.name, {"user_id": self.user_id})
        return sorted(categories, key=lambda c: (c.get("name") or "").lower())

    def get(self, category_id: str) -> Record:
        category = self.db.find_by_id(CATEGORIES.name, category_id)
        if not category or category.get("user_id") != self.user_id:
            raise RecordNotFound("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        wanted = name.strip().lower()
        return any(
            (c.get("name") or "").strip().lower() == wanted and c.get("id") != exclude_id
            for c in self.list_all()
        )

    def create(self, data: CategoryIn) -> Record:
        self.db.ensure_table(CATEGORIES)
        if self._name_taken(data.name):
            raise ValueError("Category with this name already exists")
        color = data.color.upper() if data.color else ""
        return self.db.insert(
            CATEGORIES.name,
            {
                "user_id": self.user_id,
                "name": data.name.strip(),
                "color": color,
                "emoji": data.emoji or emoji_for(color, data.name),
            },
        )

    def update(self, category_id: str, data: CategoryUpdate) -> Record:
        self.get(category_id)
        changes = _changes(data)
        if changes.get("name"):
            if self._name_taken(changes["name"], exclude_id=category_id):
                raise ValueError("Category with this name already exists")
            changes["name"] = changes["name"].strip()
        if changes.get("color"):
            changes["color"] = changes["color"].upper()
        return self.db.update(CATEGORIES.name, category_id, changes)

    def delete(self, category_id: str) -> None:
        self.get(category_id)
        self.db.delete(CATEGORIES.name, category_id)

    def resolve(self, name: Optional[str]) -> Record:
        """Find a category by exact or near match, creating it when unknown."""
        raw = (name or "").strip()
        if not raw:
            raw = "Uncategorized"
        wanted = raw.lower()
        categories = self.list_all()
        for category in categories:
            if (category.get("name") or "").strip().lower() == wanted:
                return category

        best_distance: Optional[int] = None
        best: list[Record] = []
        for category in categories:
            dist = int(Levenshtein.distance(wanted, (category.get("name") or "").strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c["name"] for c in best}))
                raise CategoryAmbiguous(f"Category '{raw}' is ambiguous; matches: {options}")
            return best[0]
        return self.create(CategoryIn(name=raw))


class AccountService:
    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id
        self._ready = False

    def _ensure(self) -> None:
        if not self._ready:
            self.db.ensure_table(ACCOUNTS)
            self._ready = True

    @staticmethod
    def _present(record: Record) -> Record:
        return typed(record, floats=("balance",))

    def list_all(self) -> list[Record]:
        self._ensure()
        accounts = self.db.find(ACCOUNTS.name, {"user_id": self.user_id})
        return [self._present(a) for a in sorted(accounts, key=lambda a: (a.get("name") or "").lower())]

    def get(self, account_id: str) -> Record:
        self._ensure()
        account = self.db.find_by_id(ACCOUNTS.name, account_id)
        if not account or account.get("user_id") != self.user_id:
            raise RecordNotFound("Account not found")
        return self._present(account)

    def create(self, data: AccountIn) -> Record:
        self._ensure()
        record = self.db.insert(
            ACCOUNTS.name,
            {
                "user_id": self.user_id,
                "name": data.name.strip(),
                "type": data.type.value,
                "balance": round(data.balance, 2),
                "currency": data.currency.upper(),
            },
        )
        return self._present(record)

    def update(self, account_id: str, data: AccountUpdate) -> Record:
        self.get(account_id)
        changes = _changes(data)
        if changes.get("currency"):
            changes["currency"] = changes["currency"].upper()
        return self._present(self.db.update(ACCOUNTS.name, account_id, changes))

    def delete(self, account_id: str) -> None:
        self.get(account_id)
        self.db.delete(ACCOUNTS.name, account_id)

    def adjust_balance(self, account_id: str, delta: float) -> Record:
        account = self.get(account_id)
        balance = round(account["balance"] + delta, 2)
        return self._present(self.db.update(ACCOUNTS.name, account_id, {"balance": balance}))


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


def transaction_effect(record: Record) -> float:
    amount = abs(as_float(record.get("amount")))
    if record.get("type") == TransactionType.income.value:
        return amount
    return -amount


def transaction_type(record: Record) -> TransactionType:
    if record.get("type") == TransactionType.income.value:
        return TransactionType.income
    return TransactionType.expense


class TransactionService:
    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    @staticmethod
    def _present(record: Record) -> Record:
        result = typed(record, floats=("amount",))
        result["type"] = transaction_type(record).value
        return result

    def _all(self) -> list[Record]:
        return self.db.find(TRANSACTIONS.name, {"user_id": self.user_id})

    def _category(self, category_id: str) -> Record:
        try:
            return CategoryService(self.db, self.user_id).get(category_id)
        except RecordNotFound as exc:
            raise ValueError("Invalid category ID or category does not belong to user") from exc

    def _account(self, account_id: str) -> Record:
        try:
            return AccountService(self.db, self.user_id).get(account_id)
        except RecordNotFound as exc:
            raise ValueError("Invalid account ID or account does not belong to user") from exc

    def list(
        self, filters: TransactionFilters, page: int = 1, per_page: int = 50
    ) -> tuple[list[Record], dict[str, Any]]:
        matches = []
        for record in self._all():
            if filters.category_id and record.get("category_id") != filters.category_id:
                continue
            if filters.type and transaction_type(record) != filters.type:
                continue
            day = parse_day(record.get("date", ""))
            if filters.date_from and (day is None or day < filters.date_from):
                continue
            if filters.date_to and (day is None or day > filters.date_to):
                continue
            matches.append(record)
        matches.sort(key=lambda r: (r.get("date") or "", r.get("created_at") or ""), reverse=True)
        items, pagination = paginate(matches, page, per_page)
        return [self._present(r) for r in items], pagination

    def recent(self, limit: int = 10) -> list[Record]:
        items, _ = self.list(TransactionFilters(), page=1, per_page=limit)
        return items

    def count(self) -> int:
        return len(self._all())

    def get(self, transaction_id: str) -> Record:
        record = self.db.find_by_id(TRANSACTIONS.name, transaction_id)
        if not record or record.get("user_id") != self.user_id:
            raise RecordNotFound("Transaction not found")
        return self._present(record)

    def create(self, data: TransactionIn) -> Record:
        category = self._category(data.category_id)
        if data.account_id:
            self._account(data.account_id)
        record = self.db.insert(
            TRANSACTIONS.name,
            {
                "user_id": self.user_id,
                "name": data.name.strip(),
                "amount": round(data.amount, 2),
                "type": data.type.value,
                "category_id": data.category_id,
                "category_name": data.category_name or category.get("name"),
                "account_id": data.account_id or "",
                "date": data.date,
                "time": data.time or "",
                "notes": data.notes or "",
                "receipt_url": data.receipt_url or "",
            },
        )
        # second write, no rollback if it fails
        if data.account_id:
            AccountService(self.db, self.user_id).adjust_balance(
                data.account_id, transaction_effect(record)
            )
        return self._present(record)

    def update(self, transaction_id: str, data: TransactionUpdate) -> Record:
        current = self.get(transaction_id)
        changes = _changes(data)
        if changes.get("category_id") and changes["category_id"] != current.get("category_id"):
            category = self._category(changes["category_id"])
            changes.setdefault("category_name", category.get("name"))
        if changes.get("account_id"):
            self._account(changes["account_id"])
        if "amount" in changes:
            changes["amount"] = round(changes["amount"], 2)

        updated = self.db.update(TRANSACTIONS.name, transaction_id, changes)
        balance_touched = {"amount", "type", "account_id"} & changes.keys()
        if balance_touched:
            accounts = AccountService(self.db, self.user_id)
            if current.get("account_id"):
                accounts.adjust_balance(current["account_id"], -transaction_effect(current))
            if updated.get("account_id"):
                accounts.adjust_balance(updated["account_id"], transaction_effect(updated))
        return self._present(updated)

    def delete(self, transaction_id: str) -> None:
        current = self.get(transaction_id)
        self.db.delete(TRANSACTIONS.name, transaction_id)
        if current.get("account_id"):
            AccountService(self.db, self.user_id).adjust_balance(
                current["account_id"], -transaction_effect(current)
            )

    def in_period(self, period: Optional[Period]) -> list[Record]:
        if period is None:
            return self._all()
        result = []
        for record in self._all():
            day = parse_day(record.get("date", ""))
            if day is not None and period.contains(day):
                result.append(record)
        return result

    def expenses_between(self, period: Period) -> float:
        return round(
            sum(
                abs(as_float(r.get("amount")))
                for r in self.in_period(period)
                if transaction_type(r) == TransactionType.expense
            ),
            2,
        )

    def spent_by_category(self, period: Period) -> dict[str, float]:
        totals: dict[str, float] = {}
        for record in self.in_period(period):
            if transaction_type(record) != TransactionType.expense:
                continue
            key = record.get("category_id") or ""
            totals[key] = totals.get(key, 0.0) + abs(as_float(record.get("amount")))
        return {key: round(value, 2) for key, value in totals.items()}

    def stats(
        self,
        period: StatsPeriod = StatsPeriod.month,
        year: Optional[int] = None,
        month: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> dict[str, Any]:
        today = today or local_today()
        window = stats_window(period, year, month, today=today)
        records = self.in_period(window)
        income = 0.0
        expenses = 0.0
        by_category: dict[str, float] = {}
        for record in records:
            amount = abs(as_float(record.get("amount")))
            if transaction_type(record) == TransactionType.income:
                income += amount
                continue
            expenses += amount
            name = record.get("category_name") or "Uncategorized"
            by_category[name] = by_category.get(name, 0.0) + amount
        ranked = sorted(by_category.items(), key=lambda item: item[1], reverse=True)
        return {
            "total_income": round(income, 2),
            "total_expenses": round(expenses, 2),
            "net_income": round(income - expenses, 2),
            "transaction_count": len(records),
            "period": period.value,
            "year": year or today.year,
            "month": month or today.month,
            "period_start": window.start.isoformat() if window else None,
            "period_end": window.end.isoformat() if window else None,
            "by_category": {name: round(total, 2) for name, total in ranked},
        }


class IngestService:
    """Log an expense from a short chat message."""

    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    def ingest_expense(
        self,
        amount: float,
        category: Optional[str] = None,
        note: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> Record:
        today = today or local_today()
        resolved = CategoryService(self.db, self.user_id).resolve(category)
        name = note or (category.strip() if category else "") or "Telegram expense"
        return TransactionService(self.db, self.user_id).create(
            TransactionIn(
                name=name,
                amount=amount,
                type=TransactionType.expense,
                category_id=resolved["id"],
                category_name=resolved.get("name"),
                date=today.isoformat(),
                notes="Logged via Telegram",
            )
        )


class BudgetService:
    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    @staticmethod
    def _present(record: Record) -> Record:
        return typed(record, floats=("income",), ints=("year", "month"))

    @staticmethod
    def _present_item(record: Record) -> Record:
        return typed(record, floats=("amount", "spent"))

    def list(self, year: Optional[int] = None, month: Optional[int] = None) -> list[Record]:
        filters: dict[str, Any] = {"user_id": self.user_id}
        if year is not None:
            filters["year"] = year
        if month is not None:
            filters["month"] = month
        budgets = [self._present(b) for b in self.db.find(BUDGETS.name, filters)]
        return sorted(budgets, key=lambda b: (b["year"] or 0, b["month"] or 0), reverse=True)

    def get(self, budget_id: str) -> Record:
        budget = self.db.find_by_id(BUDGETS.name, budget_id)
        if not budget or budget.get("user_id") != self.user_id:
            raise RecordNotFound("Budget not found")
        return self._present(budget)

    def _conflict(self, year: int, month: int, exclude_id: Optional[str] = None) -> bool:
        return any(b["id"] != exclude_id for b in self.list(year, month))

    def create(self, data: BudgetIn) -> Record:
        if self._conflict(data.year, data.month):
            raise ValueError(f"Budget for {data.year}/{data.month} already exists")
        record = self.db.insert(
            BUDGETS.name,
            {
                "user_id": self.user_id,
                "year": data.year,
                "month": data.month,
                "income": round(data.income, 2),
            },
        )
        return self._present(record)

    def update(self, budget_id: str, data: BudgetUpdate) -> Record:
        current = self.get(budget_id)
        changes = _changes(data)
        year = changes.get("year", current["year"])
        month = changes.get("month", current["month"])
        if ("year" in changes or "month" in changes) and self._conflict(
            year, month, exclude_id=budget_id
        ):
            raise ValueError(f"Budget for {year}/{month} already exists")
        return self._present(self.db.update(BUDGETS.name, budget_id, changes))

    def delete(self, budget_id: str) -> int:
        self.get(budget_id)
        items = self.db.find(BUDGET_ITEMS.name, {"budget_id": budget_id})
        for item in items:
            self.db.delete(BUDGET_ITEMS.name, item["id"])
        self.db.delete(BUDGETS.name, budget_id)
        return len(items)

    def items(self, budget_id: Optional[str] = None) -> list[Record]:
        if budget_id:
            self.get(budget_id)
            budget_ids = {budget_id}
        else:
            budget_ids = {b["id"] for b in self.list()}
        return [
            self._present_item(item)
            for item in self.db.find(BUDGET_ITEMS.name)
            if item.get("budget_id") in budget_ids
        ]

    def _owned_budget(self, budget_id: str) -> Record:
        try:
            return self.get(budget_id)
        except RecordNotFound as exc:
            raise ValueError("Invalid budget ID or budget does not belong to user") from exc

    def create_item(self, data: BudgetItemIn) -> Record:
        self._owned_budget(data.budget_id)
        category_name = data.category_name
        if not category_name:
            try:
                category_name = CategoryService(self.db, self.user_id).get(data.category_id)["name"]
            except RecordNotFound as exc:
                raise ValueError(
                    "Invalid category ID or category does not belong to user"
                ) from exc
        if any(i.get("category_id") == data.category_id for i in self.items(data.budget_id)):
            raise ValueError("Budget item for this category already exists in this budget")
        record = self.db.insert(
            BUDGET_ITEMS.name,
            {
                "budget_id": data.budget_id,
                "category_id": data.category_id,
                "category_name": category_name,
                "amount": round(data.amount, 2),
                "spent": 0,
            },
        )
        return self._present_item(record)

    def get_item(self, item_id: str) -> Record:
        item = self.db.find_by_id(BUDGET_ITEMS.name, item_id)
        if not item:
            raise RecordNotFound("Budget item not found")
        try:
            self.get(item["budget_id"])
        except RecordNotFound as exc:
            raise RecordNotFound("Budget item not found") from exc
        return self._present_item(item)

    def update_item(self, item_id: str, data: BudgetItemUpdate) -> Record:
        current = self.get_item(item_id)
        changes = _changes(data)
        new_category = changes.get("category_id")
        if new_category and new_category != current.get("category_id"):
            siblings = self.items(current["budget_id"])
            if any(i.get("category_id") == new_category for i in siblings):
                raise ValueError("Budget item for this category already exists in this budget")
        return self._present_item(self.db.update(BUDGET_ITEMS.name, item_id, changes))

    def delete_item(self, item_id: str) -> None:
        self.get_item(item_id)
        self.db.delete(BUDGET_ITEMS.name, item_id)

    def recalculate(self, budget_id: str) -> list[dict[str, Any]]:
        """Refresh each item's spent amount from the month's expenses."""
        budget = self.get(budget_id)
        start, end = month_bounds(budget["year"], budget["month"])
        spent = TransactionService(self.db, self.user_id).spent_by_category(
            Period("budget", start, end)
        )
        progress = []
        for item in self.items(budget_id):
            amount_spent = spent.get(item.get("category_id") or "", 0.0)
            if amount_spent != item["spent"]:
                item = self._present_item(
                    self.db.update(BUDGET_ITEMS.name, item["id"], {"spent": amount_spent})
                )
            limit = item["amount"]
            progress.append(
                {
                    "item": item,
                    "spent": amount_spent,
                    "remaining": round(max(limit - amount_spent, 0.0), 2),
                    "percentage_used": round(amount_spent / limit * 100, 2) if limit else 0.0,
                    "is_exceeded": amount_spent > limit,
                }
            )
        return progress


class IncomeService:
    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id
        self._ready = False

    def _ensure(self) -> None:
        if not self._ready:
            self.db.ensure_table(BUDGET_INCOMES)
            self._ready = True

    @staticmethod
    def _present(record: Record) -> Record:
        return typed(record, floats=("amount",), ints=("year", "month"))

    def list(self, year: Optional[int] = None, month: Optional[int] = None) -> list[Record]:
        self._ensure()
        filters: dict[str, Any] = {"user_id": self.user_id}
        if year is not None:
            filters["year"] = year
        if month is not None:
            filters["month"] = month
        incomes = [self._present(i) for i in self.db.find(BUDGET_INCOMES.name, filters)]
        return sorted(
            incomes,
            key=lambda i: (i["year"] or 0, i["month"] or 0, i.get("created_at") or ""),
            reverse=True,
        )

    def total(self, year: int, month: int) -> float:
        return round(sum(i["amount"] for i in self.list(year, month)), 2)

    def get(self, income_id: str) -> Record:
        self._ensure()
        income = self.db.find_by_id(BUDGET_INCOMES.name, income_id)
        if not income or income.get("user_id") != self.user_id:
            raise RecordNotFound("Income not found")
        return self._present(income)

    def create(self, data: IncomeIn) -> Record:
        self._ensure()
        record = self.db.insert(
            BUDGET_INCOMES.name,
            {
                "user_id": self.user_id,
                "year": data.year,
                "month": data.month,
                "amount": round(data.amount, 2),
                "source": (data.source or "").strip(),
            },
        )
        return self._present(record)

    def update(self, income_id: str, data: IncomeUpdate) -> Record:
        self.get(income_id)
        return self._present(self.db.update(BUDGET_INCOMES.name, income_id, _changes(data)))

    def delete(self, income_id: str) -> None:
        self.get(income_id)
        self.db.delete(BUDGET_INCOMES.name, income_id)


class TelegramMessageService:
    def __init__(self, db: SheetsDatabase, user_id: str, bot: TelegramBot) -> None:
        self.db = db
        self.user_id = user_id
        self.bot = bot

    def send(self, chat_id: str, payload: TelegramPayload) -> Record:
        text = render_message(
            "notification.html", kind=payload.type.value, message=payload.message
        )
        return self.deliver(chat_id, text, payload.model_dump(mode="json"))

    def deliver(self, chat_id: str, text: str, payload: dict[str, Any]) -> Record:
        record: Record = {
            "id": str(uuid.uuid4()),
            "user_id": self.user_id,
            "chat_id": str(chat_id),
            "payload": payload,
            "status": MessageStatus.sent.value,
            "error": "",
            "telegram_message_id": "",
            "sent_at": now_iso(),
        }
        try:
            result = self.bot.send_message(str(chat_id), text)
            record["telegram_message_id"] = (result or {}).get("message_id", "")
        except TelegramError as exc:
            record["status"] = MessageStatus.failed.value
            record["error"] = str(exc)
            logger.warning(f"telegram_send_failed: chat_id={chat_id} error={exc}")

        try:
            self.db.insert(TELEGRAM_MESSAGES.name, record)
        except (SheetsError, TableNotFound) as exc:
            logger.warning(f"telegram_log_failed: chat_id={chat_id} error={exc}")
        return record

    def list(
        self, page: int = 1, per_page: int = 20, status: Optional[MessageStatus] = None
    ) -> tuple[list[Record], dict[str, Any]]:
        filters: dict[str, Any] = {"user_id": self.user_id}
        if status is not None:
            filters["status"] = status.value
        messages = self.db.find(TELEGRAM_MESSAGES.name, filters)
        messages.sort(key=lambda m: m.get("sent_at") or m.get("created_at") or "", reverse=True)
        items, pagination = paginate(messages, page, per_page)
        return [self._present(m) for m in items], pagination

    @staticmethod
    def _present(record: Record) -> Record:
        result = dict(record)
        try:
            result["payload"] = json.loads(record.get("payload") or "{}")
        except json.JSONDecodeError as exc:
            logger.debug(f"telegram_payload_unreadable: id={record.get('id')} error={exc}")
        return result


class GoalService:
    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    @staticmethod
    def _present(record: Record) -> Record:
        return typed(record, floats=("limit_amount",), bools=("notify_telegram",))

    def list(self) -> list[Record]:
        goals = self.db.find(GOALS.name, {"user_id": self.user_id})
        return [self._present(g) for g in sorted(goals, key=lambda g: (g.get("name") or "").lower())]

    def get(self, goal_id: str) -> Record:
        goal = self.db.find_by_id(GOALS.name, goal_id)
        if not goal or goal.get("user_id") != self.user_id:
            raise RecordNotFound("Goal not found")
        return self._present(goal)

    def _name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        wanted = name.strip().lower()
        return any(
            (g.get("name") or "").strip().lower() == wanted and g["id"] != exclude_id
            for g in self.list()
        )

    def create(self, data: GoalIn) -> Record:
        if self._name_taken(data.name):
            raise ValueError("Goal with this name already exists")
        record = self.db.insert(
            GOALS.name,
            {
                "user_id": self.user_id,
                "name": data.name.strip(),
                "limit_amount": round(data.limit_amount, 2),
                "period": data.period.value,
                "notify_telegram": data.notify_telegram,
                "last_notified_at": "",
            },
        )
        return self._present(record)

    def update(self, goal_id: str, data: GoalUpdate) -> Record:
        self.get(goal_id)
        changes = _changes(data)
        if changes.get("name"):
            if self._name_taken(changes["name"], exclude_id=goal_id):
                raise ValueError("Goal with this name already exists")
            changes["name"] = changes["name"].strip()
        if "period" in changes:
            # a new window starts counting alerts again
            changes["last_notified_at"] = ""
        return self._present(self.db.update(GOALS.name, goal_id, changes))

    def delete(self, goal_id: str) -> None:
        self.get(goal_id)
        self.db.delete(GOALS.name, goal_id)

    def _progress(self, goal: Record, today: date) -> dict[str, Any]:
        try:
            period = GoalPeriod(goal.get("period"))
        except ValueError:
            period = GoalPeriod.monthly
        window = goal_window(period, today=today)
        current = TransactionService(self.db, self.user_id).expenses_between(window)
        limit = goal["limit_amount"]
        return {
            "goal": goal,
            "current_amount": current,
            "remaining": round(max(limit - current, 0.0), 2),
            "percentage_used": round(current / limit * 100, 2) if limit else 0.0,
            "is_exceeded": current > limit,
            "period_start": window.start.isoformat(),
            "period_end": window.end.isoformat(),
        }

    def progress(self, goal_id: str, *, today: Optional[date] = None) -> dict[str, Any]:
        return self._progress(self.get(goal_id), today or local_today())

    def check_alerts(
        self,
        messages: TelegramMessageService,
        chat_id: Optional[str],
        *,
        today: Optional[date] = None,
    ) -> list[str]:
        """Send one goal_alert per exceeded goal and window."""
        if not chat_id:
            return []
        # stamped with the local day so it compares against the same window
        today = today or local_today()
        stamp = today.isoformat()
        alerted = []
        for goal in self.list():
            if not goal["notify_telegram"]:
                continue
            progress = self._progress(goal, today)
            if not progress["is_exceeded"]:
                continue
            last = parse_day(goal.get("last_notified_at") or "")
            if last and progress["period_start"] <= last.isoformat() <= progress["period_end"]:
                continue
            text = render_message(
                "goal_alert.html",
                goal_name=goal["name"],
                period=goal.get("period"),
                current=progress["current_amount"],
                limit=goal["limit_amount"],
                period_start=progress["period_start"],
                period_end=progress["period_end"],
            )
            payload = {
                "type": NotificationType.goal_alert.value,
                "message": f"Goal '{goal['name']}' exceeded",
                "data": {"goal_id": goal["id"], "current_amount": progress["current_amount"]},
            }
            result = messages.deliver(chat_id, text, payload)
            if result["status"] == MessageStatus.sent.value:
                self.db.update(GOALS.name, goal["id"], {"last_notified_at": stamp})
                alerted.append(goal["id"])
        if alerted:
            logger.info(f"goal_alerts_sent: user={self.user_id} count={len(alerted)}")
        return alerted


class DashboardService:
    def __init__(self, db: SheetsDatabase, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    def summary(self, *, today: Optional[date] = None) -> dict[str, Any]:
        today = today or local_today()
        transactions = TransactionService(self.db, self.user_id)
        accounts = AccountService(self.db, self.user_id).list_all()
        stats = transactions.stats(StatsPeriod.month, today.year, today.month, today=today)
        return {
            "totalBalance": round(sum(a["balance"] for a in accounts), 2),
            "monthlyIncome": stats["total_income"],
            "monthlyExpenses": stats["total_expenses"],
            "netIncome": stats["net_income"],
            "accountsCount": len(accounts),
            "transactionsCount": transactions.count(),
            "categoriesCount": len(CategoryService(self.db, self.user_id).list_all()),
            "recentTransactions": transactions.recent(10),
        }
