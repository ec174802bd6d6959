import logging
import time
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    GoogleAuthFailed,
    InvalidToken,
    UserSession,
    authorization_url,
    decode_session_token,
    exchange_code,
    fetch_user_info,
    issue_session_token,
    refresh_credentials,
    sheets_client,
    strip_credentials,
)
from config import get_settings
from csrf import generate_state_token, validate_state_token
from csv_utils import export_records
from database import (
    RecordNotFound,
    SheetsDatabase,
    SheetsError,
    backup,
    get_or_create_user_database,
    open_database,
    spreadsheet_url,
)
from migrations import CategoryEmojiMigration
from models import CORE_TABLES, MessageStatus, StatsPeriod, TransactionType
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
    ImportIn,
    IncomeIn,
    IncomeUpdate,
    NotificationSetupIn,
    ProfileUpdate,
    RefreshIn,
    SettingsUpdate,
    SheetCreateIn,
    ShareIn,
    TelegramConnectIn,
    TelegramSendIn,
    TransactionIn,
    TransactionUpdate,
    WebhookConfigIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    DashboardService,
    GoalService,
    IncomeService,
    SettingsService,
    TelegramMessageService,
    TransactionFilters,
    TransactionService,
    UserService,
)
from telegram import TelegramBot, TelegramConnection, TelegramError, connection_store
from webhook import TelegramWebhookHandler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open(Path(__file__).resolve().parent / "pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()
STARTED_AT = time.monotonic()

app = FastAPI(title="Budget Manager API", version=APP_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        return JSONResponse(
            status_code=404,
            content={
                "success": False,
                "message": f"Resource not found - {request.url.path}",
                "path": request.url.path,
                "method": request.method,
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation error", "errors": errors},
    )


@app.exception_handler(SheetsError)
async def sheets_exception_handler(request: Request, exc: SheetsError):
    logger.error(f"sheets_request_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=500, content={"success": False, "message": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(
        status_code=500, content={"success": False, "message": "Internal Server Error"}
    )


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    logger.info(
        f"api_started: version={APP_VERSION} env={settings.environment} "
        f"telegram_configured={bool(settings.telegram_bot_token)}"
    )


def ok(data: Any = None, message: Optional[str] = None, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    body.update(extra)
    return body


def http_error(exc: ValueError) -> HTTPException:
    status_code = 404 if isinstance(exc, RecordNotFound) else 400
    return HTTPException(status_code=status_code, detail=str(exc))


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(authorization: Optional[str] = Header(default=None)) -> UserSession:
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Access token required")
    try:
        return decode_session_token(token)
    except InvalidToken as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


def open_user_database(session: UserSession) -> SheetsDatabase:
    return open_database(sheets_client(session.google_credentials), session.spreadsheet_id)


def get_db(user: UserSession = Depends(get_current_user)) -> SheetsDatabase:
    return open_user_database(user)


def get_bot() -> TelegramBot:
    return TelegramBot()


def require_development() -> None:
    if not get_settings().is_development:
        raise HTTPException(status_code=403, detail="Debug endpoints are disabled")


def remember_connection(user: UserSession, chat_id: str, username: Optional[str]) -> TelegramConnection:
    return connection_store.store_connection(
        TelegramConnection(
            email=user.email,
            chat_id=str(chat_id),
            telegram_username=username,
            session=replace(user, chat_id=str(chat_id), telegram_username=username),
        )
    )


def run_goal_alerts(db: SheetsDatabase, user: UserSession) -> None:
    bot = get_bot()
    if not bot.configured:
        return
    try:
        chat_id = SettingsService(db, user.email).get()["telegram_chat_id"] or user.chat_id
        GoalService(db, user.email).check_alerts(
            TelegramMessageService(db, user.email, bot), chat_id
        )
    except (SheetsError, ValueError) as exc:
        logger.warning(f"goal_alerts_failed: email={user.email} error={exc}")


# --- health ---------------------------------------------------------------


@app.get("/")
def root():
    return ok({"name": "Budget Manager API", "version": APP_VERSION})


@app.get("/health")
def health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "version": APP_VERSION,
        "message": "Budget Manager API is running",
    }


# --- auth -----------------------------------------------------------------


@app.get("/api/v1/auth/google")
def auth_google():
    return {
        "success": True,
        "authUrl": authorization_url(generate_state_token()),
        "message": "Redirect to this URL to authenticate with Google",
    }


@app.get("/api/v1/auth/google/callback")
def auth_google_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    target = f"{get_settings().frontend_url}/auth/callback"
    if error:
        return RedirectResponse(f"{target}?{urlencode({'error': error})}", status_code=302)
    if not code:
        return RedirectResponse(f"{target}?error=missing_code", status_code=302)
    if not validate_state_token(state or ""):
        return RedirectResponse(f"{target}?error=invalid_state", status_code=302)
    try:
        token = exchange_code(code)
        email, name = fetch_user_info(token)
        db = get_or_create_user_database(sheets_client(token), email, name)
        user_row = UserService(db).get(email) or {}
    except (GoogleAuthFailed, SheetsError, ValueError) as exc:
        logger.error(f"auth_callback_failed: error={exc}")
        return RedirectResponse(f"{target}?{urlencode({'error': str(exc)})}", status_code=302)

    session = UserSession(
        email=email,
        name=user_row.get("name") or name,
        spreadsheet_id=db.spreadsheet_id,
        telegram_username=user_row.get("telegram_username") or None,
        chat_id=user_row.get("chatId") or None,
        google_credentials=strip_credentials(token),
    )
    existing = connection_store.get_by_email(email)
    if existing:
        remember_connection(session, existing.chat_id, existing.telegram_username)
    logger.info(f"auth_login: email={email} spreadsheet_id={db.spreadsheet_id}")
    query = urlencode({"token": issue_session_token(session)})
    return RedirectResponse(f"{target}?{query}", status_code=302)


@app.post("/api/v1/auth/refresh")
def auth_refresh(
    payload: Optional[RefreshIn] = Body(default=None),
    authorization: Optional[str] = Header(default=None),
):
    token = (payload.token if payload else None) or _bearer(authorization)
    if not token:
        raise HTTPException(status_code=400, detail="Token is required")
    try:
        session = decode_session_token(token, leeway=get_settings().jwt_refresh_grace_secs)
    except InvalidToken as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    try:
        credentials = refresh_credentials(session.google_credentials)
    except GoogleAuthFailed as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    session = replace(session, google_credentials=credentials)
    return ok({"token": issue_session_token(session)}, "Token refreshed successfully")


@app.get("/api/v1/auth/profile")
def auth_profile(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    try:
        profile = UserService(db).profile(user.email)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok({"user": profile}, "Profile retrieved successfully")


@app.put("/api/v1/auth/profile")
def auth_update_profile(
    data: ProfileUpdate,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    users = UserService(db)
    changes = data.model_dump(exclude_unset=True)
    try:
        current = users.profile(user.email)
        username = changes.get("telegram_username", current["telegram_username"])
        chat_id = changes.get("chat_id", current["chatId"])
        users.update_telegram(user.email, username, chat_id)
        profile = users.profile(user.email)
    except ValueError as exc:
        raise http_error(exc) from exc
    session = replace(user, telegram_username=username or None, chat_id=chat_id or None)
    if chat_id:
        remember_connection(session, chat_id, username)
    return ok(
        {"user": profile, "token": issue_session_token(session)},
        "Profile updated successfully",
    )


@app.get("/api/v1/auth/validate-database")
def auth_validate_database(user: UserSession = Depends(get_current_user)):
    try:
        db = open_user_database(user)
    except SheetsError as exc:
        logger.warning(f"database_validation_failed: email={user.email} error={exc}")
        db = None
    if db is None or not db.is_accessible():
        raise HTTPException(
            status_code=400, detail="Database validation failed. Please re-authenticate."
        )
    return ok({"valid": True, "spreadsheetId": db.spreadsheet_id}, "Database is valid")


@app.post("/api/v1/auth/recreate-database")
def auth_recreate_database(
    user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)
):
    db.recreate(user.email, user.name)
    return ok({"spreadsheetId": db.spreadsheet_id}, "Database recreated successfully")


@app.post("/api/v1/auth/logout")
def auth_logout(user: UserSession = Depends(get_current_user)):
    logger.info(f"auth_logout: email={user.email}")
    return ok(message="Logged out successfully")


# --- categories -------------------------------------------------------------


@app.get("/api/v1/categories")
@app.get("/api/v1/data/categories")
def list_categories(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    return ok(CategoryService(db, user.email).list_all())


@app.post("/api/v1/categories", status_code=201)
@app.post("/api/v1/data/categories", status_code=201)
def create_category(
    data: CategoryIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        category = CategoryService(db, user.email).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(category, "Category created successfully")


@app.post("/api/v1/categories/migrate-emojis")
def migrate_category_emojis(
    user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)
):
    result = CategoryEmojiMigration(db).run()
    if result["migrated"] == 0:
        return ok(result["before"], "All categories already have emojis")
    return ok(result, f"Migrated {result['migrated']} categories")


@app.put("/api/v1/categories/{category_id}")
@app.put("/api/v1/data/categories/{category_id}")
def update_category(
    category_id: str,
    data: CategoryUpdate,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        category = CategoryService(db, user.email).update(category_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(category, "Category updated successfully")


@app.delete("/api/v1/categories/{category_id}")
@app.delete("/api/v1/data/categories/{category_id}")
def delete_category(
    category_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        CategoryService(db, user.email).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(message="Category deleted successfully")


# --- transactions -----------------------------------------------------------


@app.get("/api/v1/transactions")
@app.get("/api/v1/data/transactions")
def list_transactions(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    category_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    type: Optional[TransactionType] = None,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    filters = TransactionFilters(
        type=type, category_id=category_id, date_from=date_from, date_to=date_to
    )
    items, pagination = TransactionService(db, user.email).list(filters, page, per_page)
    return ok({"transactions": items, "pagination": pagination})


@app.get("/api/v1/transactions/stats")
def transaction_stats(
    period: StatsPeriod = StatsPeriod.month,
    year: Optional[int] = Query(None, ge=2000, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    return ok(TransactionService(db, user.email).stats(period, year, month))


@app.post("/api/v1/transactions", status_code=201)
@app.post("/api/v1/data/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    background_tasks: BackgroundTasks,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        transaction = TransactionService(db, user.email).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    if transaction["type"] == TransactionType.expense.value:
        background_tasks.add_task(run_goal_alerts, db, user)
    return ok(transaction, "Transaction created successfully")


@app.put("/api/v1/transactions/{transaction_id}")
@app.put("/api/v1/data/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    data: TransactionUpdate,
    background_tasks: BackgroundTasks,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        transaction = TransactionService(db, user.email).update(transaction_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    if transaction["type"] == TransactionType.expense.value:
        background_tasks.add_task(run_goal_alerts, db, user)
    return ok(transaction, "Transaction updated successfully")


@app.delete("/api/v1/transactions/{transaction_id}")
@app.delete("/api/v1/data/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        TransactionService(db, user.email).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(message="Transaction deleted successfully")


# --- budgets ----------------------------------------------------------------


@app.get("/api/v1/budgets")
@app.get("/api/v1/budgets/monthly")
def list_budgets(
    year: Optional[int] = Query(None, ge=2000, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    return ok(BudgetService(db, user.email).list(year, month))


@app.post("/api/v1/budgets", status_code=201)
def create_budget(
    data: BudgetIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        budget = BudgetService(db, user.email).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(budget, "Budget created successfully")


@app.get("/api/v1/budgets/items")
def list_budget_items(
    budget_id: Optional[str] = None,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        items = BudgetService(db, user.email).items(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(items)


@app.post("/api/v1/budgets/items", status_code=201)
def create_budget_item(
    data: BudgetItemIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        item = BudgetService(db, user.email).create_item(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(item, "Budget item created successfully")


@app.put("/api/v1/budgets/items/{item_id}")
def update_budget_item(
    item_id: str,
    data: BudgetItemUpdate,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        item = BudgetService(db, user.email).update_item(item_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(item, "Budget item updated successfully")


@app.delete("/api/v1/budgets/items/{item_id}")
def delete_budget_item(
    item_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        BudgetService(db, user.email).delete_item(item_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(message="Budget item deleted successfully")


@app.get("/api/v1/budgets/incomes")
def list_incomes(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    return ok(IncomeService(db, user.email).list(year, month))


@app.get("/api/v1/budgets/incomes/sum")
def income_sum(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    if year is None or month is None:
        raise HTTPException(status_code=400, detail="year and month are required")
    return ok({"total": IncomeService(db, user.email).total(year, month)})


@app.post("/api/v1/budgets/incomes", status_code=201)
def create_income(
    data: IncomeIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    return ok(IncomeService(db, user.email).create(data), "Income created successfully")


@app.put("/api/v1/budgets/incomes/{income_id}")
def update_income(
    income_id: str,
    data: IncomeUpdate,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        income = IncomeService(db, user.email).update(income_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(income, "Income updated successfully")


@app.delete("/api/v1/budgets/incomes/{income_id}")
def delete_income(
    income_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        IncomeService(db, user.email).delete(income_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(message="Income deleted successfully")


@app.get("/api/v1/budgets/{budget_id}/items")
def budget_items(
    budget_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        items = BudgetService(db, user.email).items(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(items)


@app.post("/api/v1/budgets/{budget_id}/recalculate")
def recalculate_budget(
    budget_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        progress = BudgetService(db, user.email).recalculate(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(progress, "Budget spending recalculated")


@app.put("/api/v1/budgets/{budget_id}")
def update_budget(
    budget_id: str,
    data: BudgetUpdate,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        budget = BudgetService(db, user.email).update(budget_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(budget, "Budget updated successfully")


@app.delete("/api/v1/budgets/{budget_id}")
def delete_budget(
    budget_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        removed_items = BudgetService(db, user.email).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok({"deleted_items": removed_items}, "Budget deleted successfully")


# --- goals ------------------------------------------------------------------


@app.get("/api/v1/goals")
def list_goals(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    return ok(GoalService(db, user.email).list())


@app.post("/api/v1/goals", status_code=201)
def create_goal(
    data: GoalIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        goal = GoalService(db, user.email).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(goal, "Goal created successfully")


@app.get("/api/v1/goals/{goal_id}/progress")
def goal_progress(
    goal_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        progress = GoalService(db, user.email).progress(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(progress)


@app.put("/api/v1/goals/{goal_id}")
def update_goal(
    goal_id: str,
    data: GoalUpdate,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        goal = GoalService(db, user.email).update(goal_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(goal, "Goal updated successfully")


@app.delete("/api/v1/goals/{goal_id}")
def delete_goal(
    goal_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        GoalService(db, user.email).delete(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(message="Goal deleted successfully")


# --- settings ---------------------------------------------------------------


@app.get("/api/v1/settings")
def get_user_settings(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    return ok(SettingsService(db, user.email).get())


@app.put("/api/v1/settings")
def update_user_settings(
    data: SettingsUpdate,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    return ok(SettingsService(db, user.email).update(data), "Settings updated successfully")


@app.post("/api/v1/settings/reset")
def reset_user_settings(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    return ok(SettingsService(db, user.email).reset(), "Settings reset to defaults")


# --- telegram ---------------------------------------------------------------


@app.get("/api/v1/telegram/messages")
def telegram_messages(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    status: Optional[MessageStatus] = None,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    service = TelegramMessageService(db, user.email, get_bot())
    items, pagination = service.list(page, per_page, status)
    return ok({"messages": items, "pagination": pagination})


@app.post("/api/v1/telegram/send", status_code=201)
def telegram_send(
    data: TelegramSendIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    bot = get_bot()
    if not bot.configured:
        raise HTTPException(status_code=500, detail="Telegram bot token not configured")
    record = TelegramMessageService(db, user.email, bot).send(data.chat_id, data.payload)
    result = {
        "message_id": record["id"],
        "status": record["status"],
        "telegram_message_id": record["telegram_message_id"] or None,
    }
    if record["status"] == MessageStatus.failed.value:
        return JSONResponse(
            status_code=502,
            content={
                "success": False,
                "message": f"Failed to send Telegram message: {record['error']}",
                "data": result,
            },
        )
    return ok(result, "Telegram message sent successfully")


@app.post("/api/v1/telegram/notifications/setup")
def telegram_setup_notifications(
    data: NotificationSetupIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    settings = SettingsService(db, user.email).update(
        SettingsUpdate(telegram_chat_id=data.chat_id, telegram_notifications=True)
    )
    return ok(
        {
            "chat_id": data.chat_id,
            "notification_types": [t.value for t in data.notification_types],
            "settings": settings,
        },
        "Telegram notifications configured successfully",
    )


@app.post("/api/v1/telegram/configure")
def telegram_configure_webhook(data: WebhookConfigIn, user: UserSession = Depends(get_current_user)):
    settings = get_settings()
    token = data.bot_token or settings.telegram_bot_token
    if not token:
        raise HTTPException(status_code=400, detail="Telegram bot token is required")
    try:
        TelegramBot(token).set_webhook(data.webhook_url, settings.telegram_webhook_secret or None)
    except TelegramError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    logger.info(f"telegram_webhook_configured: url={data.webhook_url} by={user.email}")
    return ok({"webhook_url": data.webhook_url}, "Telegram webhook configured successfully")


@app.post("/api/v1/telegram/webhook")
def telegram_webhook(
    update: dict[str, Any] = Body(...),
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
):
    settings = get_settings()
    if settings.telegram_webhook_secret and (
        x_telegram_bot_api_secret_token != settings.telegram_webhook_secret
    ):
        raise HTTPException(status_code=403, detail="Invalid webhook secret")
    bot = get_bot()
    if not bot.configured:
        raise HTTPException(status_code=500, detail="Telegram bot token not configured")
    try:
        handled = TelegramWebhookHandler(bot, connection_store, open_user_database).handle(update)
    except Exception:
        # a non-2xx reply makes Telegram redeliver the update
        logger.exception(f"telegram_webhook_failed: update_id={update.get('update_id')}")
        handled = "failed"
    return {"ok": True, "handled": handled}


@app.get("/api/v1/telegram/test")
def telegram_test(user: UserSession = Depends(get_current_user)):
    try:
        bot_info = get_bot().get_me()
    except TelegramError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ok({"bot": bot_info}, "Telegram connection tested successfully")


@app.post("/api/v1/telegram/connect")
def telegram_connect(
    data: TelegramConnectIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    if data.telegram_data is None:
        raise HTTPException(status_code=400, detail="Telegram data is required")
    telegram_user = data.telegram_data
    connection = remember_connection(user, telegram_user.id, telegram_user.username)
    try:
        UserService(db).update_telegram(user.email, telegram_user.username, telegram_user.id)
        SettingsService(db, user.email).update(SettingsUpdate(telegram_chat_id=telegram_user.id))
    except (SheetsError, ValueError) as exc:
        logger.warning(f"telegram_connect_persist_failed: email={user.email} error={exc}")
    session = replace(user, telegram_username=telegram_user.username, chat_id=telegram_user.id)
    return ok(
        {"connection": connection.to_dict(), "token": issue_session_token(session)},
        "Telegram connection processed successfully",
    )


@app.get("/api/v1/telegram/status")
def telegram_status(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    connection = connection_store.get_by_email(user.email)
    if connection is None:
        row = UserService(db).get(user.email) or {}
        if row.get("chatId"):
            connection = remember_connection(
                user, row["chatId"], row.get("telegram_username") or None
            )
    if connection is None:
        return ok(
            {"connected": False, "telegram_username": None, "chat_id": None, "connected_at": None},
            "No Telegram connection found",
        )
    return ok(
        {
            "connected": connection_store.is_user_connected(user.email),
            "telegram_username": connection.telegram_username,
            "chat_id": connection.chat_id,
            "connected_at": connection.connected_at.isoformat(),
        },
        "Connection status retrieved successfully",
    )


@app.post("/api/v1/telegram/disconnect")
def telegram_disconnect(
    user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)
):
    removed = connection_store.remove_connection(user.email)
    try:
        UserService(db).update_telegram(user.email, None, None)
        SettingsService(db, user.email).update(
            SettingsUpdate(telegram_chat_id=None, telegram_notifications=False)
        )
    except (SheetsError, ValueError) as exc:
        logger.warning(f"telegram_disconnect_persist_failed: email={user.email} error={exc}")
    session = replace(user, telegram_username=None, chat_id=None)
    return ok(
        {"removed": removed, "token": issue_session_token(session)},
        "Telegram disconnected successfully",
    )


@app.get("/api/v1/telegram/connect-success")
def telegram_connect_success(username: Optional[str] = None, chat_id: Optional[str] = None):
    if not username or not chat_id:
        raise HTTPException(status_code=400, detail="Missing username or chat_id")
    query = urlencode({"telegram_connected": "true", "username": username})
    return RedirectResponse(f"{get_settings().frontend_url}/settings?{query}", status_code=302)


@app.get("/api/v1/telegram/debug", dependencies=[Depends(require_development)])
def telegram_debug(user: UserSession = Depends(get_current_user)):
    settings = get_settings()
    bot = get_bot()
    info: dict[str, Any] = {
        "bot_configured": bot.configured,
        "bot_username": settings.telegram_bot_username or None,
        "webhook_secret_configured": bool(settings.telegram_webhook_secret),
        "frontend_url": settings.frontend_url,
    }
    if bot.configured:
        try:
            info["bot"] = bot.get_me()
            info["webhook"] = bot.get_webhook_info()
        except TelegramError as exc:
            info["error"] = str(exc)
    return ok(info, "Debug information retrieved successfully")


@app.get("/api/v1/telegram/debug/connections", dependencies=[Depends(require_development)])
def telegram_debug_connections(user: UserSession = Depends(get_current_user)):
    connections = [c.to_dict() for c in connection_store.all_connections()]
    return ok({"count": len(connections), "connections": connections})


# --- sheets -----------------------------------------------------------------


@app.post("/api/v1/sheets/create", status_code=201)
def sheets_create(
    data: Optional[SheetCreateIn] = Body(default=None),
    user: UserSession = Depends(get_current_user),
):
    data = data or SheetCreateIn()
    db = get_or_create_user_database(sheets_client(user.google_credentials), user.email, user.name)
    return ok(
        {
            "spreadsheet_id": db.spreadsheet_id,
            "spreadsheet_url": spreadsheet_url(db.spreadsheet_id),
            "name": data.name or db.spreadsheet.title,
            "template": data.template.value,
        },
        "User database ready",
    )


@app.post("/api/v1/sheets/setup-schema")
def sheets_setup_schema(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    created = db.setup_schema()
    return ok(
        {"created_tables": created, "validation": db.validate_schema()},
        "Database schema set up successfully",
    )


@app.post("/api/v1/sheets/schema/init")
def sheets_init_schema(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    created = db.setup_schema()
    return ok({"created_tables": created}, "Schema initialized successfully")


@app.get("/api/v1/sheets/validate-schema")
def sheets_validate_schema(
    user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)
):
    return ok(db.validate_schema())


@app.get("/api/v1/sheets/info")
def sheets_info(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    return ok(db.info())


@app.post("/api/v1/sheets/share")
def sheets_share(
    data: ShareIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    db.share(data.email, data.role)
    return ok({"email": data.email, "role": data.role.value}, "Spreadsheet shared successfully")


@app.get("/api/v1/sheets/export")
def sheets_export(
    format: str = Query("json", pattern="^(json|csv)$"),
    sheets: Optional[str] = None,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    tables = [s.strip() for s in (sheets or "").split(",") if s.strip()]
    if not tables:
        tables = [schema.name for schema in CORE_TABLES]
    try:
        exported = db.export(tables)
    except ValueError as exc:
        raise http_error(exc) from exc
    if format == "json":
        return ok(
            {
                "format": "json",
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "data": exported,
            }
        )
    if len(tables) != 1:
        raise HTTPException(status_code=400, detail="CSV export requires exactly one sheet")
    table = tables[0]
    records = exported[table]
    headers = list(records[0].keys()) if records else db.headers(table)
    return Response(
        content=export_records(headers, records),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{table}.csv"'},
    )


@app.post("/api/v1/sheets/import")
def sheets_import(
    data: ImportIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        count = db.import_rows(data.sheet_name, data.data, data.mode)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(
        {"rows_imported": count, "sheet_name": data.sheet_name, "mode": data.mode.value},
        "Data imported successfully",
    )


@app.post("/api/v1/sheets/backup", status_code=201)
def sheets_backup(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    result = backup(sheets_client(user.google_credentials), db)
    return ok(result, "Backup created successfully")


# --- data -------------------------------------------------------------------


@app.get("/api/v1/data/accounts")
def list_accounts(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    return ok(AccountService(db, user.email).list_all())


@app.post("/api/v1/data/accounts", status_code=201)
def create_account(
    data: AccountIn,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    return ok(AccountService(db, user.email).create(data), "Account created successfully")


@app.put("/api/v1/data/accounts/{account_id}")
def update_account(
    account_id: str,
    data: AccountUpdate,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        account = AccountService(db, user.email).update(account_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(account, "Account updated successfully")


@app.delete("/api/v1/data/accounts/{account_id}")
def delete_account(
    account_id: str,
    user: UserSession = Depends(get_current_user),
    db: SheetsDatabase = Depends(get_db),
):
    try:
        AccountService(db, user.email).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ok(message="Account deleted successfully")


@app.get("/api/v1/data/dashboard")
def dashboard(user: UserSession = Depends(get_current_user), db: SheetsDatabase = Depends(get_db)):
    return ok(DashboardService(db, user.email).summary())


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=5000, reload=False)


if __name__ == "__main__":
    main()
