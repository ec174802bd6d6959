import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape

from auth import UserSession
from config import get_settings
from models import ConnectionStatus

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class TelegramError(RuntimeError):
    pass


def format_amount(value: Any) -> str:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        amount = 0.0
    return f"{amount:,.2f}"


_env = Environment(
    loader=FileSystemLoader(Path(__file__).resolve().parent / "templates" / "telegram"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)
_env.filters["money"] = format_amount


def render_message(template: str, **context: Any) -> str:
    return _env.get_template(template).render(**context).strip()


class TelegramBot:
    def __init__(self, token: Optional[str] = None, timeout: Optional[float] = None) -> None:
        settings = get_settings()
        self.token = token if token is not None else settings.telegram_bot_token
        self.timeout = timeout or settings.http_timeout_secs

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def _call(self, method: str, payload: Optional[dict[str, Any]] = None) -> Any:
        if not self.token:
            raise TelegramError("Telegram bot token not configured")
        url = f"{TELEGRAM_API}/bot{self.token}/{method}"
        try:
            response = requests.post(url, json=payload or {}, timeout=self.timeout)
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error(f"telegram_request_failed: method={method} error={exc}")
            raise TelegramError(f"Telegram API request failed: {method}") from exc
        if not body.get("ok"):
            description = body.get("description") or "unknown error"
            logger.error(f"telegram_api_error: method={method} description={description}")
            raise TelegramError(f"Telegram API error: {description}")
        return body.get("result")

    def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return self._call("sendMessage", payload)

    def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        self._call("answerCallbackQuery", payload)

    def set_webhook(self, url: str, secret_token: Optional[str] = None) -> bool:
        payload: dict[str, Any] = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if secret_token:
            payload["secret_token"] = secret_token
        return bool(self._call("setWebhook", payload))

    def get_webhook_info(self) -> dict[str, Any]:
        return self._call("getWebhookInfo")

    def get_me(self) -> dict[str, Any]:
        return self._call("getMe")


@dataclass
class TelegramConnection:
    email: str
    chat_id: str
    telegram_username: Optional[str] = None
    status: ConnectionStatus = ConnectionStatus.connected
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session: Optional[UserSession] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "chat_id": self.chat_id,
            "telegram_username": self.telegram_username,
            "status": self.status.value,
            "connected_at": self.connected_at.isoformat(),
            "has_session": self.session is not None,
        }


class TelegramConnectionStore:
    """Process-local map from user email and chat id to a Telegram link."""

    def __init__(self) -> None:
        self._connections: dict[str, TelegramConnection] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _chat_key(chat_id: str) -> str:
        return f"chat_{chat_id}"

    def store_connection(self, connection: TelegramConnection) -> TelegramConnection:
        with self._lock:
            previous = self._connections.get(connection.email)
            if previous and previous.chat_id != connection.chat_id:
                self._connections.pop(self._chat_key(previous.chat_id), None)
            self._connections[connection.email] = connection
            self._connections[self._chat_key(connection.chat_id)] = connection
        logger.info(
            f"telegram_connection_stored: email={connection.email} chat_id={connection.chat_id}"
        )
        return connection

    def get_by_email(self, email: str) -> Optional[TelegramConnection]:
        with self._lock:
            return self._connections.get(email)

    def get_by_chat_id(self, chat_id: str) -> Optional[TelegramConnection]:
        with self._lock:
            return self._connections.get(self._chat_key(str(chat_id)))

    def is_user_connected(self, email: str) -> bool:
        connection = self.get_by_email(email)
        return connection is not None and connection.status == ConnectionStatus.connected

    def remove_connection(self, email: str) -> bool:
        with self._lock:
            connection = self._connections.pop(email, None)
            if connection is None:
                return False
            self._connections.pop(self._chat_key(connection.chat_id), None)
        logger.info(f"telegram_connection_removed: email={email}")
        return True

    def all_connections(self) -> list[TelegramConnection]:
        with self._lock:
            unique = {conn.email: conn for conn in self._connections.values()}
        return list(unique.values())

    def clear(self) -> None:
        with self._lock:
            self._connections.clear()


connection_store = TelegramConnectionStore()
