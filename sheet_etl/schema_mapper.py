"""Step 2: schema mapping (Korean sheet headers -> target document fields)."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

import yaml

from sheet_etl.discovery import ManifestEntry, SheetManifest
from sheet_etl.excel_reader import synthesize_headers
from sheet_etl.llm_client import CompletionClient, CompletionOptions, complete_json
from sheet_etl.normalizers import TRANSFORMS
from sheet_etl.schema_catalog import schema_to_prompt_text

logger = logging.getLogger(__name__)

DEFAULT_RULE_CONFIDENCE = 0.85
HEADER_SEGMENT_SEPARATOR = " > "
LAST_SEGMENT_BONUS = 1000
MAX_PROMPT_HEADER_ROWS = 2
MAX_PROMPT_CELLS = 15

MAPPING_SYSTEM_PROMPT = (
    "You are a data engineer specializing in Korean business management systems. "
    "Map Excel column headers to Firestore field names. Respond ONLY with valid JSON."
)


class SchemaMappingError(RuntimeError):
    """Raised when mapping rules are malformed."""


@dataclass
class ColumnMapping:
    excel_column: str
    target_field: str
    transform: str | None = None
    confidence: float = DEFAULT_RULE_CONFIDENCE
    note: str | None = None

    def __post_init__(self) -> None:
        self.confidence = clamp_confidence(self.confidence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "excel_column": self.excel_column,
            "target_field": self.target_field,
            "transform": self.transform,
            "confidence": self.confidence,
            "note": self.note,
        }


@dataclass
class SheetMapping:
    source_path: Path | None
    sheet_name: str
    target_collection: str
    column_mappings: list[ColumnMapping] = field(default_factory=list)
    skipped: bool = False
    skip_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_path": str(self.source_path) if self.source_path is not None else None,
            "sheet_name": self.sheet_name,
            "target_collection": self.target_collection,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "column_mappings": [mapping.to_dict() for mapping in self.column_mappings],
        }


@dataclass(frozen=True)
class MappingRule:
    patterns: tuple[str, ...]
    target_field: str
    transform: str | None = None
    confidence: float = DEFAULT_RULE_CONFIDENCE


def clamp_confidence(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:
        return 0.0
    return max(0.0, min(1.0, number))


def load_mapping_rules(path: str | Path) -> dict[str, list[MappingRule]]:
    """
    Load `{collection: [rule, ...]}` from YAML.

    Each rule needs a non-empty `patterns` list and a `field`; `transform`
    must name a registered normalizer when given.
    """
    rules_path = Path(path)
    if not rules_path.exists():
        raise SchemaMappingError(f"매핑 규칙 파일이 없습니다: {rules_path}")
    with rules_path.open("r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise SchemaMappingError(f"매핑 규칙 최상위는 mapping 이어야 합니다: {rules_path}")

    result: dict[str, list[MappingRule]] = {}
    for collection, raw_rules in loaded.items():
        if not isinstance(raw_rules, list):
            raise SchemaMappingError(f"{collection}: 규칙 목록(list)이 필요합니다.")
        rules: list[MappingRule] = []
        for idx, raw in enumerate(raw_rules):
            where = f"{collection}[{idx}]"
            if not isinstance(raw, dict):
                raise SchemaMappingError(f"{where}: mapping 이어야 합니다.")
            patterns = raw.get("patterns")
            if not isinstance(patterns, list) or not patterns or not all(str(p).strip() for p in patterns):
                raise SchemaMappingError(f"{where}: patterns 가 비어 있습니다.")
            target_field = str(raw.get("field") or "").strip()
            if not target_field:
                raise SchemaMappingError(f"{where}: field 가 비어 있습니다.")
            transform = raw.get("transform")
            if transform is not None and transform not in TRANSFORMS:
                raise SchemaMappingError(f"{where}: 알 수 없는 transform: {transform}")
            rules.append(
                MappingRule(
                    patterns=tuple(str(p) for p in patterns),
                    target_field=target_field,
                    transform=transform,
                    confidence=clamp_confidence(raw.get("confidence", DEFAULT_RULE_CONFIDENCE)),
                )
            )
        result[str(collection)] = rules
    return result


def _skip_mapping(manifest: SheetManifest, entry: ManifestEntry) -> SheetMapping | None:
    if entry.is_skipped:
        return SheetMapping(
            source_path=manifest.source_path,
            sheet_name=entry.name,
            target_collection="",
            skipped=True,
            skip_reason=entry.hint or "Marked as skip in profile",
        )
    if not entry.target_collection:
        return SheetMapping(
            source_path=manifest.source_path,
            sheet_name=entry.name,
            target_collection="",
            skipped=True,
            skip_reason="No target collection defined",
        )
    return None


def match_headers(headers: Iterable[str], rules: list[MappingRule]) -> list[ColumnMapping]:
    """
    Score every rule pattern against each header and keep the best match.

    A pattern inside the last `" > "` segment outranks any whole-header match;
    whole-header matching is allowed only for single-level headers. A target
    field is assigned at most once per sheet.
    """
    mappings: list[ColumnMapping] = []
    used_fields: set[str] = set()

    for header in headers:
        if not header or header.startswith("col_"):
            continue

        segments = header.split(HEADER_SEGMENT_SEPARATOR)
        last_segment = segments[-1].strip()
        is_multi_level = len(segments) > 1

        best: MappingRule | None = None
        best_score = 0
        for rule in rules:
            if rule.target_field in used_fields:
                continue
            for pattern in rule.patterns:
                score = 0
                if pattern in last_segment:
                    score = len(pattern) + LAST_SEGMENT_BONUS
                elif not is_multi_level and pattern in header:
                    score = len(pattern)
                if score > best_score:
                    best_score = score
                    best = rule

        if best is not None:
            used_fields.add(best.target_field)
            mappings.append(
                ColumnMapping(
                    excel_column=header,
                    target_field=best.target_field,
                    transform=best.transform,
                    confidence=best.confidence,
                )
            )
    return mappings


class StaticSchemaMapper:
    """Deterministic rule-table mapper. Never calls the network."""

    def __init__(self, rules: dict[str, list[MappingRule]]):
        self.rules = rules

    def map_manifests(self, manifests: list[SheetManifest]) -> list[SheetMapping]:
        results: list[SheetMapping] = []
        for manifest in manifests:
            for entry in manifest.entries:
                results.append(self.map_entry(manifest, entry))
        return results

    def map_entry(self, manifest: SheetManifest, entry: ManifestEntry) -> SheetMapping:
        skipped = _skip_mapping(manifest, entry)
        if skipped is not None:
            return skipped

        collection = entry.target_collection
        rules = self.rules.get(collection)
        if not rules:
            return SheetMapping(
                source_path=manifest.source_path,
                sheet_name=entry.name,
                target_collection=collection,
                skipped=True,
                skip_reason=f"No mapping rules for collection: {collection}",
            )

        headers = synthesize_headers(entry.info.header_rows)
        column_mappings = match_headers(headers, rules)
        logger.info("[Static Map] %s -> %s: %d/%d columns mapped", entry.name, collection, len(column_mappings), len(headers))
        return SheetMapping(
            source_path=manifest.source_path,
            sheet_name=entry.name,
            target_collection=collection,
            column_mappings=column_mappings,
        )


def build_mapping_prompt(entry: ManifestEntry) -> str:
    collection = entry.target_collection
    info = entry.info

    header_lines = [
        f"Header Row {idx + 1}: {json.dumps([c for c in row if c][:MAX_PROMPT_CELLS], ensure_ascii=False)}"
        for idx, row in enumerate(info.header_rows[:MAX_PROMPT_HEADER_ROWS])
    ]
    data_lines = [
        f"Data Row {idx + 1}: {json.dumps([c for c in row if c][:MAX_PROMPT_CELLS], ensure_ascii=False)}"
        for idx, row in enumerate(info.sample_rows)
    ]
    transforms = ", ".join(TRANSFORMS.keys())
    hint_line = f"- Hint: {entry.hint}\n" if entry.hint else ""

    return (
        "## Task\n"
        f'Map the Korean Excel column headers to Firestore fields for the "{collection}" collection.\n\n'
        "## Sheet Info\n"
        f"- Name: {info.name}\n"
        f"- Size: {info.row_count} rows x {info.col_count} columns\n"
        f"- Merged cells: {info.merged_cell_count}\n"
        f"{hint_line}\n"
        "## Excel Headers\n"
        f"{chr(10).join(header_lines)}\n\n"
        "## Sample Data\n"
        f"{chr(10).join(data_lines)}\n\n"
        "## Target Firestore Schema\n"
        f"{schema_to_prompt_text(collection)}\n\n"
        "## Instructions\n"
        "1. Map each non-empty Excel header to the most appropriate Firestore field\n"
        f'2. Set "transform" to one of: {transforms}, or null\n'
        '3. Set "confidence" (0-1) for each mapping\n'
        "4. Skip columns that are purely formatting or empty\n"
        '5. For unmappable columns, set firestoreField to "unmapped" with a note\n\n'
        "## Response Format\n"
        "```json\n"
        "{\n"
        '  "mappings": [\n'
        "    {\n"
        '      "excelColumn": "사업명",\n'
        '      "firestoreField": "name",\n'
        '      "transform": "normalizeString",\n'
        '      "confidence": 0.95,\n'
        '      "note": "Direct match to project name"\n'
        "    }\n"
        "  ]\n"
        "}\n"
        "```"
    )


def parse_column_mappings(payload: Any) -> list[ColumnMapping]:
    if not isinstance(payload, dict):
        raise SchemaMappingError("LLM 응답에 mappings 객체가 없습니다.")
    raw_mappings = payload.get("mappings") or []
    if not isinstance(raw_mappings, list):
        raise SchemaMappingError("LLM 응답의 mappings 가 list 가 아닙니다.")

    mappings: list[ColumnMapping] = []
    for raw in raw_mappings:
        if not isinstance(raw, dict):
            continue
        excel_column = str(raw.get("excelColumn") or "").strip()
        target_field = str(raw.get("firestoreField") or "").strip()
        if not excel_column or not target_field:
            continue
        transform = raw.get("transform")
        mappings.append(
            ColumnMapping(
                excel_column=excel_column,
                target_field=target_field,
                transform=str(transform) if transform else None,
                confidence=raw.get("confidence", 0.0),
                note=str(raw["note"]) if raw.get("note") else None,
            )
        )
    return mappings


class LLMSchemaMapper:
    """
    Completion-backed mapper.

    One call per mappable sheet. A failed call (gateway error after retries,
    unparseable JSON, exhausted budget) leaves the sheet active with zero
    column mappings so extraction reports it instead of silently dropping it.
    """

    def __init__(
        self,
        client: CompletionClient,
        options: CompletionOptions | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.options = options or CompletionOptions(system=MAPPING_SYSTEM_PROMPT, max_tokens=2048)
        self.sleep = sleep

    def map_manifests(self, manifests: list[SheetManifest]) -> list[SheetMapping]:
        results: list[SheetMapping] = []
        for manifest in manifests:
            for entry in manifest.entries:
                results.append(self.map_entry(manifest, entry))
        return results

    def map_entry(self, manifest: SheetManifest, entry: ManifestEntry) -> SheetMapping:
        skipped = _skip_mapping(manifest, entry)
        if skipped is not None:
            return skipped

        collection = entry.target_collection
        logger.info("[LLM Map] %s -> %s", entry.name, collection)
        try:
            payload = complete_json(self.client, build_mapping_prompt(entry), options=self.options, sleep=self.sleep)
            column_mappings = parse_column_mappings(payload)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("[LLM Map] mapping failed for %s: %s", entry.name, exc)
            column_mappings = []
        else:
            high = sum(1 for m in column_mappings if m.confidence >= 0.8)
            low = sum(1 for m in column_mappings if m.confidence < 0.5)
            logger.info("  -> %d columns mapped (%d high-conf, %d low-conf)", len(column_mappings), high, low)

        return SheetMapping(
            source_path=manifest.source_path,
            sheet_name=entry.name,
            target_collection=collection,
            column_mappings=column_mappings,
        )
