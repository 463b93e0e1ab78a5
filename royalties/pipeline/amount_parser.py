"""
Statement amount parser.

Handles the amount conventions seen across royalty statements:
- $1,234.56 / USD 1234.56 / 1234.56 EUR
- 1.234,56          -> European decimal comma
- (1,234.56)        -> negative (parentheses)
- -1,234.56 / 1,234.56-  -> negative (minus)
- 12.3456           -> sub-cent precision kept (per-stream rates)
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel

_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY"}
_CODE = re.compile(r"\b(USD|EUR|GBP|JPY|CAD|AUD|SEK|NOK|DKK|CHF)\b", re.IGNORECASE)
_MINUS_SIGNS = ("-", "−")


class AmountParseResult(BaseModel):
    amount: Optional[Decimal] = None
    raw_text: str
    is_negative: bool = False
    currency: Optional[str] = None
    sign_convention: Optional[str] = None  # PARENTHESES, MINUS, NONE


def _normalize_separators(s: str) -> str:
    """Drop thousands separators and turn a decimal comma into a point."""
    if "," in s and "." in s:
        if s.rfind(",") > s.rfind("."):
            return s.replace(".", "").replace(",", ".")
        return s.replace(",", "")
    if "," in s:
        head, _, tail = s.rpartition(",")
        if len(tail) in (1, 2) and s.count(",") == 1:
            return f"{head}.{tail}"
        return s.replace(",", "")
    return s


def parse_amount(raw) -> AmountParseResult:
    """
    Parse a monetary amount from a statement cell.
    Numbers pass through; unparseable text yields amount=None.
    """
    if isinstance(raw, (int, float, Decimal)) and not isinstance(raw, bool):
        value = Decimal(str(raw))
        return AmountParseResult(
            amount=value, raw_text=str(raw), is_negative=value < 0, sign_convention="NONE"
        )

    text = "" if raw is None else str(raw)
    s = text.strip()
    if not s or s in ("-", "--", "n/a", "N/A"):
        return AmountParseResult(raw_text=text)

    currency = None
    for symbol, code in _SYMBOLS.items():
        if symbol in s:
            currency = code
            s = s.replace(symbol, "")
    m = _CODE.search(s)
    if m:
        currency = m.group(1).upper()
        s = _CODE.sub("", s)
    s = s.strip()

    is_negative = False
    sign_convention = "NONE"

    if s.startswith("(") and s.endswith(")"):
        s = s[1:-1].strip()
        is_negative = True
        sign_convention = "PARENTHESES"

    if s.endswith(_MINUS_SIGNS):
        s = s[:-1].strip()
        is_negative = True
        sign_convention = "MINUS"
    elif s.startswith(_MINUS_SIGNS):
        s = s[1:].strip()
        is_negative = not is_negative if sign_convention == "PARENTHESES" else True
        sign_convention = "MINUS"

    s = _normalize_separators(s.replace(" ", "").replace(" ", ""))

    try:
        amount = Decimal(s)
    except (InvalidOperation, ValueError):
        return AmountParseResult(raw_text=text, currency=currency)
    if not amount.is_finite():
        return AmountParseResult(raw_text=text, currency=currency)

    return AmountParseResult(
        amount=-amount if is_negative else amount,
        raw_text=text,
        is_negative=is_negative,
        currency=currency,
        sign_convention=sign_convention,
    )
