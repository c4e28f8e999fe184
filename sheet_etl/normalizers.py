"""Cell value normalizers (date/amount/percent/enum)."""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any, Callable

WEEK_CODE_RE = re.compile(r"^(\d{2})-(\d{1,2})-(\d{1,2})$")
KR_DATE_RE = re.compile(r"^(\d{2,4})[.\-/](\d{1,2})[.\-/](\d{1,2})$")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
LEADING_FLOAT_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")

ERROR_VALUES = frozenset(
    {"#REF!", "#N/A", "#VALUE!", "#DIV/0!", "#NAME?", "#NULL!", "알 수 없음", "N/A", "-"}
)


def _text(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _parse_float_prefix(text: str) -> float | None:
    match = LEADING_FLOAT_RE.match(text)
    if not match:
        return None
    try:
        number = float(match.group(0))
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _is_number(raw: Any) -> bool:
    return isinstance(raw, (int, float)) and not isinstance(raw, bool)


def normalize_date(raw: Any) -> str | None:
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()

    text = _text(raw)
    if text is None:
        return None

    if ISO_DATE_RE.match(text):
        return text[:10]

    # 26.02.22 / 2026.02.22 / 26-01-05
    match = KR_DATE_RE.match(text)
    if match:
        year = int(match.group(1))
        if year < 100:
            year += 2000
        month = match.group(2).zfill(2)
        day = match.group(3).zfill(2)
        return f"{year}-{month}-{day}"
    return None


def normalize_week_code(raw: Any) -> str | None:
    """"26-1-1" -> "2026-01-W1"; ISO dates pass through unchanged."""
    text = _text(raw)
    if text is None:
        return None
    if ISO_DATE_RE.match(text):
        return text
    match = WEEK_CODE_RE.match(text)
    if not match:
        return None
    year = 2000 + int(match.group(1))
    month = match.group(2).zfill(2)
    return f"{year}-{month}-W{int(match.group(3))}"


def normalize_amount(raw: Any) -> float | int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if _is_number(raw):
        return raw if math.isfinite(raw) else None

    text = str(raw).strip()
    if not text or text in ERROR_VALUES:
        return None
    cleaned = re.sub(r"[,\s원₩]", "", text)
    return _parse_float_prefix(cleaned)


def normalize_percent(raw: Any) -> float | None:
    """"59.18%", 59.18, 0.5918 -> 0.5918. Values above 1 are read as percent points."""
    if raw is None or isinstance(raw, bool):
        return None
    if _is_number(raw):
        if not math.isfinite(raw):
            return None
        return raw / 100 if raw > 1 else raw

    text = str(raw).strip().replace("%", "", 1)
    number = _parse_float_prefix(text)
    if number is None:
        return None
    return number / 100 if number > 1 else number


PAYMENT_METHOD_MAP: dict[str, str] = {
    "계좌이체": "BANK_TRANSFER",
    "법인카드": "CARD",
    "현금": "CASH",
    "수표": "CHECK",
}

PROJECT_STATUS_MAP: dict[str, str] = {
    "계약전": "CONTRACT_PENDING",
    "사업진행중": "IN_PROGRESS",
    "사업종료": "COMPLETED",
    "종료(잔금대기)": "COMPLETED_PENDING_PAYMENT",
    "제안서작성중": "CONTRACT_PENDING",
    "서류제출완료": "CONTRACT_PENDING",
    "연속사업": "IN_PROGRESS",
    "26년 계획확인": "CONTRACT_PENDING",
}

PROJECT_TYPE_MAP: dict[str, str] = {
    "AC": "CONSULTING",
    "컨설팅": "CONSULTING",
    "교육": "OTHER",
    "공간": "SPACE_BIZ",
    "투자": "IMPACT_INVEST",
    "개발협력": "DEV_COOPERATION",
    "KOICA": "DEV_COOPERATION",
}

SETTLEMENT_TYPE_MAP: dict[str, str] = {
    "Type1": "TYPE1",
    "Type2": "TYPE2",
    "Type4": "TYPE4",
    "Type1. 세금계산서발행+공급가액": "TYPE1",
    "Type2. 세금계산서발행+공급대가": "TYPE2",
    "Type4. 세금계산서미발행+공급대가": "TYPE4",
    "세금계산서발행+공급가액기준": "TYPE1",
    "세금계산서발행+공급대가기준": "TYPE2",
}

ACCOUNT_TYPE_MAP: dict[str, str] = {
    "전용통장": "DEDICATED",
    "전용계좌": "DEDICATED",
    "운영통장": "OPERATING",
    "운영계좌": "OPERATING",
}


def _lookup_enum(raw: Any, table: dict[str, str], default: str | None) -> str | None:
    text = _text(raw)
    if text is None:
        return None
    if text in table:
        return table[text]
    # "법인카드(뒷번호1)" 같은 부가 표기는 포함 관계로 매칭한다.
    for key, code in table.items():
        if key in text:
            return code
    return default


def normalize_payment_method(raw: Any) -> str | None:
    return _lookup_enum(raw, PAYMENT_METHOD_MAP, "OTHER")


def normalize_project_status(raw: Any) -> str | None:
    return _lookup_enum(raw, PROJECT_STATUS_MAP, None)


def normalize_project_type(raw: Any) -> str | None:
    return _lookup_enum(raw, PROJECT_TYPE_MAP, "OTHER")


def normalize_settlement_type(raw: Any) -> str | None:
    text = _text(raw)
    if text is None:
        return None
    compact = re.sub(r"\s+", "", text)
    for pattern, code in SETTLEMENT_TYPE_MAP.items():
        if re.sub(r"\s+", "", pattern) in compact:
            return code
    return None


def normalize_account_type(raw: Any) -> str | None:
    # 전용/운영 통장 표기가 없으면 별도 계좌가 없는 것으로 본다.
    return _lookup_enum(raw, ACCOUNT_TYPE_MAP, "NONE")


def normalize_string(raw: Any) -> str | None:
    return _text(raw)


TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "normalizeDate": normalize_date,
    "normalizeWeekCode": normalize_week_code,
    "normalizeAmount": normalize_amount,
    "normalizePercent": normalize_percent,
    "normalizePaymentMethod": normalize_payment_method,
    "normalizeProjectStatus": normalize_project_status,
    "normalizeProjectType": normalize_project_type,
    "normalizeSettlementType": normalize_settlement_type,
    "normalizeAccountType": normalize_account_type,
    "normalizeString": normalize_string,
}


def get_transform(name: str | None) -> Callable[[Any], Any] | None:
    if not name:
        return None
    return TRANSFORMS.get(str(name).strip())
