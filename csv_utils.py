import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Any, Sequence

FORMULA_PREFIXES = ("=", "+", "@", "\t", "\r")
SHELL_PREFIX = re.compile(r"^(cmd|powershell|bash|sh)\b", re.IGNORECASE)
NEGATIVE_NUMBER = re.compile(r"^-\d+([.,]\d+)?$")


def sanitize_csv_value(value: str) -> str:
    """Prefix cells a spreadsheet would evaluate with a tab."""
    text = (value or "").strip()
    if not text:
        return ""
    risky = (
        text.startswith(FORMULA_PREFIXES)
        or (text.startswith("-") and not NEGATIVE_NUMBER.match(text))
        or SHELL_PREFIX.match(text) is not None
    )
    return f"\t{text}" if risky else text


def parse_amount(value: str) -> float:
    """Read a user typed amount such as ``12,50`` or ``1.234,56``."""
    text = re.sub(r"[\s€$]", "", value or "").replace(",", ".")
    whole, dot, cents = text.rpartition(".")
    if dot:
        text = f"{whole.replace('.', '')}.{cents}"
    try:
        amount = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount must be positive")
    try:
        return float(amount.quantize(Decimal("0.01")))
    except InvalidOperation as exc:
        raise ValueError("Amount is too large") from exc


def export_records(headers: Sequence[str], records: Sequence[dict[str, Any]]) -> str:
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    writer.writerows(
        [sanitize_csv_value(str(record.get(h, "") or "")) for h in headers] for record in records
    )
    return buffer.getvalue()
