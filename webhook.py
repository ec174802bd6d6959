import logging
import re
from typing import Any, Callable, Optional

from auth import UserSession
from config import get_settings
from csv_utils import parse_amount
from database import SheetsDatabase, SheetsError
from models import StatsPeriod
from periods import local_today
from services import (
    CategoryAmbiguous,
    GoalService,
    IngestService,
    SettingsService,
    TelegramMessageService,
    TransactionService,
)
from telegram import TelegramBot, TelegramConnectionStore, TelegramError, render_message

logger = logging.getLogger(__name__)

QUICK_EXPENSE = re.compile(r"^(\d+(?:[.,]\d{1,2})?)(?:\s+(.{1,40}))?$")
CONNECT_PARAM = "connect_budget_app"
QUICK_PREFIX = "quick_expense_"
CONNECT_PREFIX = "connect_app_"
# Telegram rejects callback_data above 64 bytes.
CALLBACK_LIMIT = 64


def _user_name(user: dict[str, Any]) -> str:
    parts = [user.get("first_name") or "", user.get("last_name") or ""]
    return " ".join(p for p in parts if p).strip() or user.get("username") or "there"


def _markup(rows: list[list[dict[str, str]]]) -> Optional[dict[str, Any]]:
    return {"inline_keyboard": rows} if rows else None


def fit_category(amount: float, category: Optional[str]) -> Optional[str]:
    """Shorten a category so its quick expense callback stays within Telegram's limit."""
    if not category:
        return None
    room = CALLBACK_LIMIT - len(f"{QUICK_PREFIX}{amount:.2f}_".encode("utf-8"))
    while category and len(category.encode("utf-8")) > room:
        category = category[:-1]
    return category.strip() or None


def quick_expense_callback(amount: float, category: Optional[str]) -> str:
    data = f"{QUICK_PREFIX}{amount:.2f}"
    if category:
        data = f"{data}_{category}"
    if len(data.encode("utf-8")) > CALLBACK_LIMIT:
        raise ValueError("Quick expense does not fit in a callback")
    return data


def parse_quick_expense(data: str) -> tuple[str, Optional[str]]:
    amount, _, category = data[len(QUICK_PREFIX) :].partition("_")
    return amount, category or None


class TelegramWebhookHandler:
    def __init__(
        self,
        bot: TelegramBot,
        store: TelegramConnectionStore,
        open_db: Callable[[UserSession], SheetsDatabase],
    ) -> None:
        self.bot = bot
        self.store = store
        self.open_db = open_db
        self.frontend_url = get_settings().frontend_url

    def _link_row(self, text: str, url: str) -> list[list[dict[str, str]]]:
        # Telegram only accepts public https links on buttons
        if not url.startswith("https://"):
            return []
        return [[{"text": text, "url": url}]]

    def handle(self, update: dict[str, Any]) -> str:
        if update.get("callback_query"):
            return self._handle_callback(update["callback_query"])
        message = update.get("message") or update.get("edited_message")
        if message and message.get("text") is not None:
            return self._handle_message(message)
        return "ignored"

    def _handle_message(self, message: dict[str, Any]) -> str:
        chat_id = str(message["chat"]["id"])
        user = message.get("from") or {}
        text = (message.get("text") or "").strip()
        logger.info(f"telegram_message: chat_id={chat_id} length={len(text)}")

        if text.startswith("/start"):
            parts = text.split(maxsplit=1)
            if len(parts) > 1 and parts[1].strip() == CONNECT_PARAM:
                self._send_connect_intro(chat_id, user)
                return "connect_intro"
            self.bot.send_message(
                chat_id,
                render_message(
                    "welcome.html",
                    user_name=_user_name(user),
                    frontend_url=self.frontend_url,
                    chat_id=chat_id,
                ),
                _markup(self._link_row("🌐 Open Budget Manager", self.frontend_url)),
            )
            return "welcome"
        if text.startswith("/help"):
            self.bot.send_message(chat_id, render_message("detailed_help.html"))
            return "help"

        match = QUICK_EXPENSE.match(text)
        if match:
            try:
                amount = parse_amount(match.group(1))
                category = fit_category(amount, (match.group(2) or "").strip())
                callback = quick_expense_callback(amount, category)
            except ValueError:
                self.bot.send_message(chat_id, render_message("help.html"))
                return "help"
            keyboard = {
                "inline_keyboard": [
                    [
                        {"text": "✅ Yes, log it", "callback_data": callback},
                        {"text": "❌ Cancel", "callback_data": "cancel_expense"},
                    ]
                ]
            }
            self.bot.send_message(
                chat_id,
                render_message(
                    "quick_expense.html",
                    amount=amount,
                    category=category,
                    user_name=_user_name(user),
                ),
                keyboard,
            )
            return "quick_expense"

        self.bot.send_message(chat_id, render_message("help.html"))
        return "help"

    def _send_connect_intro(self, chat_id: str, user: dict[str, Any]) -> None:
        keyboard = [[{"text": "🔗 Connect to Budget App", "callback_data": f"{CONNECT_PREFIX}{chat_id}"}]]
        keyboard += self._link_row("📱 Open Budget Manager", self.frontend_url)
        keyboard.append([{"text": "❓ Help & Features", "callback_data": "show_help"}])
        self.bot.send_message(
            chat_id,
            render_message("connect_intro.html", user_name=_user_name(user), chat_id=chat_id),
            _markup(keyboard),
        )

    def _handle_callback(self, query: dict[str, Any]) -> str:
        query_id = str(query.get("id"))
        data = query.get("data") or ""
        user = query.get("from") or {}
        chat = (query.get("message") or {}).get("chat") or {}
        chat_id = str(chat.get("id") or user.get("id"))
        logger.info(f"telegram_callback: chat_id={chat_id} data={data[:20]}")

        if data.startswith(CONNECT_PREFIX):
            self._send_connection_status(chat_id, user)
            self.bot.answer_callback_query(query_id, "Connection processed!")
            return "connect"
        if data == "show_help" or data == "log_expense":
            template = "detailed_help.html" if data == "show_help" else "help.html"
            self.bot.send_message(chat_id, render_message(template))
            self.bot.answer_callback_query(query_id)
            return data
        if data.startswith(QUICK_PREFIX):
            answer = self._log_quick_expense(chat_id, data)
            self.bot.answer_callback_query(query_id, answer)
            return "quick_expense_logged" if answer == "Expense logged!" else "quick_expense_rejected"
        if data == "cancel_expense":
            self.bot.send_message(chat_id, render_message("expense_cancelled.html"))
            self.bot.answer_callback_query(query_id, "Cancelled")
            return "cancel_expense"
        if data == "view_summary":
            self._send_summary(chat_id)
            self.bot.answer_callback_query(query_id)
            return "view_summary"
        self.bot.answer_callback_query(query_id)
        return "ignored"

    def _send_connection_status(self, chat_id: str, user: dict[str, Any]) -> None:
        connection = self.store.get_by_chat_id(chat_id)
        keyboard = [
            [
                {"text": "💰 Log Expense", "callback_data": "log_expense"},
                {"text": "📊 View Summary", "callback_data": "view_summary"},
            ]
        ]
        keyboard += self._link_row(
            "📱 Return to Budget App", f"{self.frontend_url}/settings?telegram_connected=true"
        )
        self.bot.send_message(
            chat_id,
            render_message(
                "connected.html",
                linked=connection is not None,
                email=connection.email if connection else None,
                chat_id=chat_id,
                user_name=_user_name(user),
                username=user.get("username"),
            ),
            _markup(keyboard),
        )

    def _linked_session(self, chat_id: str) -> Optional[UserSession]:
        connection = self.store.get_by_chat_id(chat_id)
        if connection is None or connection.session is None:
            self.bot.send_message(chat_id, render_message("not_connected.html", chat_id=chat_id))
            return None
        return connection.session

    def _log_quick_expense(self, chat_id: str, data: str) -> str:
        session = self._linked_session(chat_id)
        if session is None:
            return "Please connect your account first"
        amount_text, category = parse_quick_expense(data)
        try:
            amount = parse_amount(amount_text)
        except ValueError:
            return "Invalid amount"

        db = self.open_db(session)
        try:
            transaction = IngestService(db, session.email).ingest_expense(amount, category)
        except CategoryAmbiguous as exc:
            self.bot.send_message(chat_id, render_message("help.html"))
            logger.info(f"telegram_quick_expense_ambiguous: chat_id={chat_id} error={exc}")
            return "Category is ambiguous, please be more specific"

        # the row is already written, later failures are only logged
        try:
            self.bot.send_message(
                chat_id,
                render_message(
                    "expense_logged.html",
                    amount=transaction["amount"],
                    category=transaction.get("category_name"),
                    date=transaction.get("date"),
                ),
            )
        except TelegramError as exc:
            logger.warning(f"telegram_quick_expense_confirm_failed: chat_id={chat_id} error={exc}")
        try:
            chat_for_alerts = SettingsService(db, session.email).get()["telegram_chat_id"] or chat_id
            GoalService(db, session.email).check_alerts(
                TelegramMessageService(db, session.email, self.bot), chat_for_alerts
            )
        except (TelegramError, SheetsError, ValueError) as exc:
            logger.warning(f"goal_alerts_failed: email={session.email} error={exc}")
        return "Expense logged!"

    def _send_summary(self, chat_id: str) -> None:
        session = self._linked_session(chat_id)
        if session is None:
            return
        today = local_today()
        stats = TransactionService(self.open_db(session), session.email).stats(
            StatsPeriod.month, today.year, today.month, today=today
        )
        stats["by_category"] = dict(list(stats["by_category"].items())[:5])
        self.bot.send_message(
            chat_id,
            render_message("summary.html", stats=stats, year=today.year, month=today.month),
        )
