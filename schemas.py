from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    AccountType,
    GoalPeriod,
    ImportMode,
    NotificationType,
    ShareRole,
    SheetTemplate,
    TransactionType,
)

HEX_COLOR = r"^#[0-9A-Fa-f]{6}$"
HTTP_URL = r"^https?://\S+$"
EMAIL = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def normalize_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) > 10:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00")).date()
            else:
                parsed = date.fromisoformat(text)
        except ValueError as exc:
            raise ValueError("Invalid date format") from exc
        return parsed.isoformat()
    return value


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)
    emoji: Optional[str] = Field(default=None, min_length=1, max_length=10)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)
    emoji: Optional[str] = Field(default=None, min_length=1, max_length=10)


class TransactionIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    amount: float = Field(..., gt=0)
    type: TransactionType = TransactionType.expense
    category_id: str = Field(..., min_length=1)
    category_name: Optional[str] = Field(default=None, max_length=100)
    date: str
    time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}(:\d{2})?$")
    notes: Optional[str] = Field(default=None, max_length=500)
    receipt_url: Optional[str] = Field(default=None, pattern=HTTP_URL)
    account_id: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def normalize_date_field(cls, value: Any) -> Any:
        return normalize_date(value)


class TransactionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[float] = Field(default=None, gt=0)
    type: Optional[TransactionType] = None
    category_id: Optional[str] = Field(default=None, min_length=1)
    category_name: Optional[str] = Field(default=None, max_length=100)
    date: Optional[str] = None
    time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}(:\d{2})?$")
    notes: Optional[str] = Field(default=None, max_length=500)
    receipt_url: Optional[str] = Field(default=None, pattern=HTTP_URL)
    account_id: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def normalize_date_field(cls, value: Any) -> Any:
        return normalize_date(value)


class BudgetIn(BaseModel):
    year: int = Field(..., ge=2000, le=3000)
    month: int = Field(..., ge=1, le=12)
    income: float = Field(default=0, ge=0)


class BudgetUpdate(BaseModel):
    year: Optional[int] = Field(default=None, ge=2000, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    income: Optional[float] = Field(default=None, ge=0)


class BudgetItemIn(BaseModel):
    budget_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    category_name: Optional[str] = Field(default=None, max_length=100)
    amount: float = Field(..., ge=0)


class BudgetItemUpdate(BaseModel):
    category_id: Optional[str] = Field(default=None, min_length=1)
    category_name: Optional[str] = Field(default=None, max_length=100)
    amount: Optional[float] = Field(default=None, ge=0)
    spent: Optional[float] = Field(default=None, ge=0)


class IncomeIn(BaseModel):
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    amount: float = Field(..., ge=0)
    source: Optional[str] = Field(default=None, max_length=100)


class IncomeUpdate(BaseModel):
    year: Optional[int] = Field(default=None, ge=2000, le=2100)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    amount: Optional[float] = Field(default=None, ge=0)
    source: Optional[str] = Field(default=None, max_length=100)


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    limit_amount: float = Field(..., gt=0)
    period: GoalPeriod
    notify_telegram: bool = False


class GoalUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    limit_amount: Optional[float] = Field(default=None, gt=0)
    period: Optional[GoalPeriod] = None
    notify_telegram: Optional[bool] = None


class SettingsUpdate(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    currency: Optional[str] = Field(default=None, pattern=r"^[A-Za-z]{3}$")
    language: Optional[str] = Field(default=None, min_length=2, max_length=10)
    dark_mode: Optional[bool] = None
    telegram_notifications: Optional[bool] = None
    telegram_chat_id: Optional[str] = None


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance: float = 0
    currency: str = Field(default="USD", pattern=r"^[A-Za-z]{3}$")


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    balance: Optional[float] = None
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Za-z]{3}$")


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    telegram_username: Optional[str] = Field(default=None, max_length=64)
    chat_id: Optional[str] = Field(default=None, alias="chatId", max_length=64)


class RefreshIn(BaseModel):
    token: Optional[str] = None


class TelegramPayload(BaseModel):
    type: NotificationType
    message: str = Field(..., min_length=1, max_length=4096)
    data: Optional[dict[str, Any]] = None


class TelegramSendIn(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    chat_id: str = Field(..., min_length=1)
    payload: TelegramPayload


class NotificationSetupIn(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    chat_id: str = Field(..., min_length=1)
    notification_types: list[NotificationType] = Field(
        default_factory=lambda: [
            NotificationType.budget_alert,
            NotificationType.goal_alert,
        ]
    )


class WebhookConfigIn(BaseModel):
    webhook_url: str = Field(..., pattern=HTTP_URL)
    bot_token: Optional[str] = None


class TelegramUser(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = Field(..., min_length=1)
    username: Optional[str] = None
    first_name: Optional[str] = None


class TelegramConnectIn(BaseModel):
    telegram_data: Optional[TelegramUser] = None


class SheetCreateIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    template: SheetTemplate = SheetTemplate.default


class ShareIn(BaseModel):
    email: str = Field(..., pattern=EMAIL)
    role: ShareRole = ShareRole.viewer


class ImportIn(BaseModel):
    data: list[list[Any]] = Field(..., min_length=1)
    sheet_name: str = Field(..., min_length=1)
    mode: ImportMode = ImportMode.append
