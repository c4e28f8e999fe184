"""Step 4: validation (rule pass + optional LLM review)."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from sheet_etl.extractor import SOURCE_KEY, ExtractionResult
from sheet_etl.llm_client import CompletionClient, CompletionOptions, complete_json

logger = logging.getLogger(__name__)

BATCH_SIZE = 20  # LLM에 한 번에 보내는 레코드 수
SEVERITIES = ("error", "warning", "info")
AMOUNT_FIELDS = ("expenseAmount", "depositAmount", "bankAmount", "balanceAfter")
PROJECT_IDENTITY_FIELDS = ("name", "budgetCategory", "budgetSubCategory", "budgetDetail", "expenseCategory")

VALIDATION_SYSTEM_PROMPT = (
    "You are a Korean business data quality analyst. Validate data records and report issues in JSON."
)


@dataclass
class ValidationIssue:
    severity: str
    sheet: str
    message: str
    row: int | None = None
    field: str | None = None
    suggestion: str | None = None
    source: str = "rule"

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "sheet": self.sheet,
            "row": self.row,
            "field": self.field,
            "message": self.message,
            "suggestion": self.suggestion,
            "source": self.source,
        }


@dataclass
class ValidationStats:
    input_records: int = 0
    output_records: int = 0
    errors: int = 0
    warnings: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "input_records": self.input_records,
            "output_records": self.output_records,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class ValidationReport:
    collection: str
    sheet_name: str
    issues: list[ValidationIssue] = field(default_factory=list)
    cleaned_records: list[dict[str, Any]] = field(default_factory=list)
    stats: ValidationStats = field(default_factory=ValidationStats)


def _blank(value: Any) -> bool:
    # 0, "", None, False 는 값이 없는 것으로 본다.
    if isinstance(value, (dict, list)):
        return False
    return not value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _source_row(record: dict[str, Any]) -> int | None:
    source = record.get(SOURCE_KEY)
    if isinstance(source, dict):
        return source.get("row")
    return None


def validate_record(record: dict[str, Any], collection: str, sheet_name: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    row = _source_row(record)

    def issue(severity: str, field_name: str, message: str) -> None:
        issues.append(ValidationIssue(severity=severity, sheet=sheet_name, row=row, field=field_name, message=message))

    if collection == "projects":
        # 예산총괄/그룹예산 행은 사업명 없이 비목만 있을 수 있다.
        if all(_blank(record.get(name)) for name in PROJECT_IDENTITY_FIELDS):
            issue("error", "name", "사업명 누락")
        amount = record.get("contractAmount")
        if _is_number(amount) and amount < 0:
            issue("warning", "contractAmount", f"음수 계약금액: {amount}")
        rate = record.get("profitRate")
        if _is_number(rate) and (rate < 0 or rate > 1):
            issue("warning", "profitRate", f"비정상 수익률: {rate}")

    elif collection == "transactions":
        if _blank(record.get("dateTime")) and _blank(record.get("weekCode")):
            issue("error", "dateTime", "거래일시 또는 주차 누락")
        if _blank(record.get("method")):
            issue("error", "method", "결제수단 누락")
        amounts = record.get("amounts")
        if not isinstance(amounts, dict):
            amounts = {}
        if all(amounts.get(name) is None for name in AMOUNT_FIELDS):
            issue("error", "amounts", "거래금액 계열 필드 누락")

    elif collection == "members":
        if _blank(record.get("name")):
            issue("error", "name", "성명 누락")

    elif collection == "participationEntries":
        if _blank(record.get("memberName")):
            issue("error", "memberName", "참여자명 누락")
        rate = record.get("rate")
        if _is_number(rate) and (rate < 0 or rate > 100):
            issue("warning", "rate", f"비정상 참여율: {rate}%")

    return issues


def build_validation_prompt(records: list[dict[str, Any]], collection: str, sheet_name: str) -> str:
    sample = [
        {key: value for key, value in record.items() if key != SOURCE_KEY}
        for record in records[:BATCH_SIZE]
    ]
    return (
        "## Task\n"
        "You are validating data extracted from Korean business management Excel sheets for Firestore import.\n"
        f'Review these {len(sample)} records for the "{collection}" collection (source: "{sheet_name}").\n\n'
        "## Records\n"
        f"{json.dumps(sample, ensure_ascii=False, indent=2, default=str)}\n\n"
        "## Validation Rules\n"
        "1. Check for missing required fields\n"
        "2. Flag obvious data quality issues (wrong types, impossible values)\n"
        "3. Check Korean text for truncation or encoding issues\n"
        "4. Check numeric values for reasonableness (e.g., project amounts typically 1M~10B KRW)\n"
        "5. Check date ranges for logic (start before end)\n\n"
        "## Response Format\n"
        "```json\n"
        "{\n"
        '  "issues": [\n'
        "    {\n"
        '      "severity": "warning",\n'
        '      "field": "contractAmount",\n'
        '      "message": "금액이 비정상적으로 높음 (100억 초과)",\n'
        '      "suggestion": "단위 확인 필요 (원 vs 천원)"\n'
        "    }\n"
        "  ]\n"
        "}\n"
        "```\n"
        "Return empty issues array if no problems found."
    )


def parse_llm_issues(payload: Any, sheet_name: str) -> list[ValidationIssue]:
    """
    Convert an LLM `{"issues": [...]}` payload into advisory issues.

    LLM findings never gate records: `error` is recorded as `warning` and
    unknown severities become `info`.
    """
    if not isinstance(payload, dict):
        return []
    raw_issues = payload.get("issues") or []
    if not isinstance(raw_issues, list):
        return []

    issues: list[ValidationIssue] = []
    for raw in raw_issues:
        if not isinstance(raw, dict) or not raw.get("message"):
            continue
        severity = str(raw.get("severity") or "info").lower()
        if severity == "error":
            severity = "warning"
        elif severity not in SEVERITIES:
            severity = "info"
        row = raw.get("row")
        issues.append(
            ValidationIssue(
                severity=severity,
                sheet=sheet_name,
                message=str(raw["message"]),
                row=row if isinstance(row, int) and not isinstance(row, bool) else None,
                field=str(raw["field"]) if raw.get("field") else None,
                suggestion=str(raw["suggestion"]) if raw.get("suggestion") else None,
                source="llm",
            )
        )
    return issues


class Validator:
    def __init__(
        self,
        llm_client: CompletionClient | None = None,
        use_llm: bool = False,
        options: CompletionOptions | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.llm_client = llm_client
        self.use_llm = bool(use_llm) and llm_client is not None
        self.options = options or CompletionOptions(system=VALIDATION_SYSTEM_PROMPT, max_tokens=2048)
        self.sleep = sleep

    def validate(
        self,
        extractions: list[ExtractionResult],
        use_llm: bool | None = None,
    ) -> list[ValidationReport]:
        return [
            self.validate_extraction(extraction, use_llm=use_llm)
            for extraction in extractions
            if extraction.records
        ]

    def validate_extraction(self, extraction: ExtractionResult, use_llm: bool | None = None) -> ValidationReport:
        logger.info("[Validate] %s (%d records)", extraction.sheet_name, len(extraction.records))

        issues: list[ValidationIssue] = []
        cleaned: list[dict[str, Any]] = []
        for record in extraction.records:
            record_issues = validate_record(record, extraction.target_collection, extraction.sheet_name)
            issues.extend(record_issues)
            if not any(item.severity == "error" for item in record_issues):
                cleaned.append(record)

        review = self.use_llm if use_llm is None else (bool(use_llm) and self.llm_client is not None)
        if review:
            issues.extend(self._llm_review(extraction))

        errors = sum(1 for item in issues if item.severity == "error")
        warnings = sum(1 for item in issues if item.severity == "warning")
        logger.info(
            "  -> %d/%d clean, %d errors, %d warnings",
            len(cleaned),
            len(extraction.records),
            errors,
            warnings,
        )
        return ValidationReport(
            collection=extraction.target_collection,
            sheet_name=extraction.sheet_name,
            issues=issues,
            cleaned_records=cleaned,
            stats=ValidationStats(
                input_records=len(extraction.records),
                output_records=len(cleaned),
                errors=errors,
                warnings=warnings,
            ),
        )

    def _llm_review(self, extraction: ExtractionResult) -> list[ValidationIssue]:
        prompt = build_validation_prompt(extraction.records, extraction.target_collection, extraction.sheet_name)
        try:
            payload = complete_json(self.llm_client, prompt, options=self.options, sleep=self.sleep)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("[Validate] LLM validation skipped for %s: %s", extraction.sheet_name, exc)
            return []
        return parse_llm_issues(payload, extraction.sheet_name)
