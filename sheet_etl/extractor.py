"""Step 3: record extraction (mapped columns -> normalized records with provenance)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from sheet_etl.excel_reader import ParsedSheet
from sheet_etl.normalizers import get_transform
from sheet_etl.schema_mapper import HEADER_SEGMENT_SEPARATOR, ColumnMapping, SheetMapping
from sheet_etl.sheet_profiles import HeaderOverride, SheetProfileRegistry

logger = logging.getLogger(__name__)

UNMAPPED_FIELD = "unmapped"
SOURCE_KEY = "_source"


class SheetParser(Protocol):
    def parse_sheet(
        self,
        path: str | Path,
        sheet_name: str,
        override: HeaderOverride | None = None,
    ) -> ParsedSheet: ...


@dataclass
class ExtractionStats:
    total: int = 0
    extracted: int = 0
    errored: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "extracted": self.extracted, "errored": self.errored}


@dataclass
class ExtractionResult:
    sheet_name: str
    target_collection: str
    records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    stats: ExtractionStats = field(default_factory=ExtractionStats)
    source_path: Path | None = None


def _segments(header: str) -> list[str]:
    return [segment.strip() for segment in header.split(HEADER_SEGMENT_SEPARATOR)]


def _resolve_header(target: str, parsed_headers: list[str]) -> str | None:
    if target in parsed_headers:
        return target

    target_segments = _segments(target)
    target_last = target_segments[-1]
    candidates = [h for h in parsed_headers if _segments(h)[-1] == target_last]
    if len(candidates) == 1:
        return candidates[0]

    if len(candidates) > 1 and len(target_segments) > 1:
        target_prev = target_segments[-2]
        refined = [
            h for h in candidates
            if len(_segments(h)) > 1 and target_prev in _segments(h)[-2]
        ]
        if refined:
            return refined[0]

    compact_target = re.sub(r"\s+", "", target)
    if not compact_target:
        return None
    for header in parsed_headers:
        compact_header = re.sub(r"\s+", "", header)
        # 빈 헤더는 모든 문자열에 포함되므로 건너뛴다.
        if not compact_header:
            continue
        if compact_header in compact_target or compact_target in compact_header:
            return header
    return None


def build_column_resolver(parsed_headers: list[str], column_mappings: list[ColumnMapping]) -> dict[str, str]:
    """
    Map each mapping's excel_column to the header key actually present in the parsed sheet.

    Order: exact -> unique last-segment match -> second-to-last segment
    refinement -> whitespace-insensitive containment. Unresolved columns are
    left out and read by their own name.
    """
    resolver: dict[str, str] = {}
    for mapping in column_mappings:
        resolved = _resolve_header(mapping.excel_column, parsed_headers)
        if resolved is not None:
            resolver[mapping.excel_column] = resolved
    return resolver


def assign_field(record: dict[str, Any], dotted_field: str, value: Any) -> None:
    """"amounts.bankAmount" -> record["amounts"]["bankAmount"]."""
    parts = dotted_field.split(".")
    current = record
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def _apply_mapping(raw: Any, mapping: ColumnMapping) -> Any:
    transform = get_transform(mapping.transform)
    if transform is not None:
        return transform(raw)
    if isinstance(raw, str):
        return raw.strip()
    return raw


def extract_records(
    parsed: ParsedSheet,
    column_mappings: list[ColumnMapping],
    sheet_name: str,
) -> tuple[list[dict[str, Any]], list[str]]:
    """
    Apply column mappings to every parsed row.

    Returns (records, row_errors). Every record carries
    `_source = {"sheet", "row", "sheetRow"}`; `row` is the 1-indexed position
    among data rows, `sheetRow` the physical row number.
    """
    active = [m for m in column_mappings if m.target_field != UNMAPPED_FIELD]
    resolver = build_column_resolver(parsed.headers, active)

    records: list[dict[str, Any]] = []
    errors: list[str] = []
    for idx, row in enumerate(parsed.rows):
        position = idx + 1
        try:
            record: dict[str, Any] = {}
            for mapping in active:
                key = resolver.get(mapping.excel_column, mapping.excel_column)
                assign_field(record, mapping.target_field, _apply_mapping(row.get(key), mapping))
        except Exception as exc:  # pylint: disable=broad-except
            errors.append(f"Row {position}: {exc}")
            continue

        sheet_row = parsed.row_numbers[idx] if idx < len(parsed.row_numbers) else None
        record[SOURCE_KEY] = {"sheet": sheet_name, "row": position, "sheetRow": sheet_row}
        records.append(record)
    return records, errors


class RecordExtractor:
    def __init__(self, reader: SheetParser, registry: SheetProfileRegistry):
        self.reader = reader
        self.registry = registry

    def extract(self, mappings: list[SheetMapping]) -> list[ExtractionResult]:
        return [self.extract_sheet(mapping) for mapping in mappings if not mapping.skipped]

    def extract_sheet(self, mapping: SheetMapping) -> ExtractionResult:
        if mapping.skipped:
            raise ValueError(f"skipped mapping cannot be extracted: {mapping.sheet_name}")
        result = ExtractionResult(
            sheet_name=mapping.sheet_name,
            target_collection=mapping.target_collection,
            source_path=mapping.source_path,
        )

        if not mapping.column_mappings:
            message = f"No column mappings for sheet {mapping.sheet_name}; nothing to extract"
            logger.warning("[Extract] %s", message)
            result.errors.append(message)
            return result

        logger.info("[Extract] %s -> %s", mapping.sheet_name, mapping.target_collection)
        try:
            if mapping.source_path is None:
                raise ValueError("source_path가 비어 있습니다.")
            parsed = self.reader.parse_sheet(
                mapping.source_path,
                mapping.sheet_name,
                override=self.registry.overrides_for(mapping.sheet_name),
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("[Extract] extraction failed for %s: %s", mapping.sheet_name, exc)
            result.errors.append(str(exc))
            result.stats.errored = 1
            return result

        records, row_errors = extract_records(parsed, mapping.column_mappings, mapping.sheet_name)
        result.records = records
        result.errors.extend(row_errors)
        result.stats = ExtractionStats(
            total=len(parsed.rows),
            extracted=len(records),
            errored=len(row_errors),
        )
        logger.info(
            "  -> %d records extracted (%d errors from %d rows)",
            len(records),
            len(row_errors),
            len(parsed.rows),
        )
        return result
