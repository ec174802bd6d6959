from dataclasses import dataclass
from enum import Enum


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class GoalPeriod(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class StatsPeriod(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"
    all = "all"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    cash = "cash"
    investment = "investment"


class NotificationType(str, Enum):
    budget_alert = "budget_alert"
    goal_alert = "goal_alert"
    transaction_reminder = "transaction_reminder"
    custom = "custom"


class MessageStatus(str, Enum):
    sent = "sent"
    failed = "failed"


class ConnectionStatus(str, Enum):
    connected = "connected"
    pending = "pending"
    disconnected = "disconnected"


class ShareRole(str, Enum):
    viewer = "viewer"
    editor = "editor"
    owner = "owner"


class ImportMode(str, Enum):
    append = "append"
    overwrite = "overwrite"
    insert = "insert"


class SheetTemplate(str, Enum):
    default = "default"
    basic = "basic"
    advanced = "advanced"


@dataclass(frozen=True)
class TableSchema:
    name: str
    columns: tuple[str, ...]
    key: str = "id"


USERS = TableSchema(
    "users",
    (
        "id",
        "name",
        "email",
        "password_hash",
        "telegram_username",
        "chatId",
        "created_at",
        "updated_at",
    ),
)

SETTINGS = TableSchema(
    "settings",
    (
        "user_id",
        "currency",
        "language",
        "dark_mode",
        "telegram_notifications",
        "telegram_chat_id",
        "created_at",
        "updated_at",
    ),
    key="user_id",
)

CATEGORIES = TableSchema(
    "categories",
    ("id", "user_id", "name", "emoji", "color", "created_at", "updated_at"),
)

TRANSACTIONS = TableSchema(
    "transactions",
    (
        "id",
        "user_id",
        "name",
        "amount",
        "type",
        "category_id",
        "category_name",
        "account_id",
        "date",
        "time",
        "notes",
        "receipt_url",
        "created_at",
        "updated_at",
    ),
)

BUDGETS = TableSchema(
    "budgets",
    ("id", "user_id", "year", "month", "income", "created_at", "updated_at"),
)

BUDGET_ITEMS = TableSchema(
    "budget_items",
    (
        "id",
        "budget_id",
        "category_id",
        "category_name",
        "amount",
        "spent",
        "created_at",
        "updated_at",
    ),
)

BUDGET_INCOMES = TableSchema(
    "budget_incomes",
    ("id", "user_id", "year", "month", "amount", "source", "created_at", "updated_at"),
)

GOALS = TableSchema(
    "goals",
    (
        "id",
        "user_id",
        "name",
        "limit_amount",
        "period",
        "notify_telegram",
        "last_notified_at",
        "created_at",
        "updated_at",
    ),
)

TELEGRAM_MESSAGES = TableSchema(
    "telegram_messages",
    (
        "id",
        "user_id",
        "chat_id",
        "payload",
        "status",
        "error",
        "telegram_message_id",
        "sent_at",
        "created_at",
    ),
)

ACCOUNTS = TableSchema(
    "accounts",
    ("id", "user_id", "name", "type", "balance", "currency", "created_at", "updated_at"),
)

# Order matters: a freshly created spreadsheet reuses its first tab for users.
CORE_TABLES: tuple[TableSchema, ...] = (
    USERS,
    SETTINGS,
    CATEGORIES,
    TRANSACTIONS,
    BUDGETS,
    BUDGET_ITEMS,
    GOALS,
    TELEGRAM_MESSAGES,
)

ALL_TABLES: tuple[TableSchema, ...] = CORE_TABLES + (BUDGET_INCOMES, ACCOUNTS)

TABLES_BY_NAME: dict[str, TableSchema] = {schema.name: schema for schema in ALL_TABLES}
