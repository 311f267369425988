import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from errors import ValidationError

CENTS = Decimal("0.01")


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalization and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not s[:9].isdigit():
                return False
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            total = sum(i * int(ch) for i, ch in enumerate(s[:9], 1))
            return (total + 10 * check_val) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(s[:12]))
            return (10 - total % 10) % 10 == int(s[-1])
        return False


class TextValidator:
    @staticmethod
    def require(value: Optional[str], field: str) -> str:
        """Strip and return ``value``; empty or missing text is rejected."""
        if value is None or not str(value).strip():
            raise ValidationError(f"{field} is required.")
        return str(value).strip()

    @staticmethod
    def optional(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None


def as_date(value: Any) -> Optional[date]:
    """Coerce ``value`` to a calendar date.

    Datetimes are truncated to their date; ISO strings are parsed. None passes through.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid date: {value!r}") from e


def as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp: {value!r}") from e


def as_money(value: Any) -> Optional[Decimal]:
    """Parse ``value`` as a currency amount rounded to cents."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
