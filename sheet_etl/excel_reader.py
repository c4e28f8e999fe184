"""Workbook reader adapter (openpyxl): merged cells, multi-row headers, data rows."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

from openpyxl import load_workbook
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from sheet_etl.sheet_profiles import HeaderOverride


class WorkbookReadError(RuntimeError):
    """Raised when a workbook or sheet cannot be read."""


@dataclass(frozen=True)
class SheetInfo:
    name: str
    row_count: int
    col_count: int
    merged_cell_count: int
    merged_ranges: tuple[str, ...]
    header_rows: tuple[tuple[str, ...], ...]
    sample_rows: tuple[tuple[str, ...], ...]
    data_start_row: int
    header_row_count: int
    header_start_row: int = 1


@dataclass
class ParsedSheet:
    name: str
    headers: list[str]
    rows: list[dict[str, Any]]
    row_numbers: list[int] = field(default_factory=list)


DATA_LIKE_PATTERNS = (
    re.compile(r"^-?\d+([.,]\d+)?$"),
    re.compile(r"^\d{4}[-/.]\d{1,2}[-/.]\d{1,2}"),
    re.compile(r"^\d{2}-\d{1,2}-\d{1,2}$"),
    re.compile(r"^\d{4}-\d{2}-\d{2}T"),
)


def clean_header(raw: Any) -> str:
    if raw is None:
        return ""
    text = str(raw).strip().replace("\n", " ")
    text = re.sub(r"\s+", " ", text)
    text = text.replace("<", "").replace(">", "")
    return text[:100]


def synthesize_headers(header_rows: list[list[Any]] | tuple[tuple[Any, ...], ...]) -> list[str]:
    """
    Collapse multi-row headers into a single row.

    Row1: ["<입금합계>", ""] + Row2: ["입금액(사업비)", "매입부가세 반환"]
      -> ["입금합계 > 입금액(사업비)", "입금합계 > 매입부가세 반환"]
    """
    rows = [list(row) for row in header_rows]
    if not rows:
        return []
    if len(rows) == 1:
        return [clean_header(value) for value in rows[0]]

    col_count = max(len(row) for row in rows)
    result: list[str] = []
    for col_idx in range(col_count):
        parts: list[str] = []
        for row in rows:
            value = row[col_idx] if col_idx < len(row) else None
            if value is None:
                continue
            text = clean_header(value)
            if text and text not in parts:
                parts.append(text)
        result.append(" > ".join(parts) or f"col_{col_idx + 1}")
    return result


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _is_data_like(value: Any) -> bool:
    if isinstance(value, (bool, int, float, date)):
        return True
    text = str(value).strip()
    return any(pattern.match(text) for pattern in DATA_LIKE_PATTERNS)


def detect_header_boundary(rows: list[list[Any]], max_header: int) -> tuple[int, int]:
    """
    Return (header_row_count, data_start_row) with data_start_row 1-indexed.

    The first row (after row 1) whose non-empty cells are more than 40% data-like,
    or whose first non-empty cell is the sequence number 1, starts the data block.
    """
    if len(rows) < 2:
        return 1, 2

    for idx in range(1, min(len(rows), max_header + 3)):
        non_empty = [value for value in rows[idx] if not _is_blank(value)]
        if len(non_empty) < 2:
            continue

        data_like = sum(1 for value in non_empty if _is_data_like(value))
        if data_like / len(non_empty) > 0.4:
            return idx, idx + 1

        first = non_empty[0]
        if isinstance(first, (int, float)) and not isinstance(first, bool) and first == 1:
            return idx, idx + 1
    return 1, 2


class ExcelWorkbookReader:
    """
    Read-only workbook access used by discovery and extraction.

    Loaded workbooks are cached per path so the discovery re-scan and the
    per-sheet extraction do not reopen the file.
    """

    def __init__(self, max_header_rows: int = 5, max_sample_rows: int = 5):
        self.max_header_rows = max_header_rows
        self.max_sample_rows = max_sample_rows
        self._workbooks: dict[Path, Workbook] = {}

    def _open(self, path: str | Path) -> Workbook:
        workbook_path = Path(path)
        cached = self._workbooks.get(workbook_path)
        if cached is not None:
            return cached
        if not workbook_path.exists():
            raise WorkbookReadError(f"엑셀 파일이 없습니다: {workbook_path}")
        try:
            workbook = load_workbook(workbook_path, data_only=True)
        except Exception as exc:  # pylint: disable=broad-except
            raise WorkbookReadError(f"엑셀 파일을 열 수 없습니다: {workbook_path} ({exc})") from exc
        self._workbooks[workbook_path] = workbook
        return workbook

    def close(self) -> None:
        for workbook in self._workbooks.values():
            workbook.close()
        self._workbooks.clear()

    def __enter__(self) -> "ExcelWorkbookReader":
        return self

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()

    def discover_sheets(
        self,
        path: str | Path,
        overrides: dict[str, HeaderOverride] | None = None,
        sheet_names: list[str] | None = None,
    ) -> list[SheetInfo]:
        workbook = self._open(path)
        overrides = overrides or {}
        wanted = set(sheet_names) if sheet_names is not None else None

        results: list[SheetInfo] = []
        for ws in workbook.worksheets:
            if wanted is not None and ws.title not in wanted:
                continue
            info = self._scan_sheet(ws, overrides.get(ws.title))
            if info is not None:
                results.append(info)
        return results

    def _scan_sheet(self, ws: Worksheet, override: HeaderOverride | None) -> SheetInfo | None:
        row_count = int(ws.max_row or 0)
        col_count = int(ws.max_column or 0)
        if row_count < 2:
            return None

        merged_ranges = [str(cell_range.coord) for cell_range in ws.merged_cells.ranges]
        scan_depth = self.max_header_rows + self.max_sample_rows + 10
        if override is not None and override.data_start_row is not None:
            scan_depth = max(scan_depth, override.data_start_row - 1 + self.max_sample_rows)
        all_rows = self._read_rows(ws, 1, min(row_count, scan_depth), col_count)

        if override is not None and override.header_row_count is not None and override.data_start_row is not None:
            header_row_count = override.header_row_count
            header_start_row = override.header_start_row or 1
            data_start_row = override.data_start_row
        else:
            detected_count, detected_start = detect_header_boundary(all_rows, self.max_header_rows)
            header_row_count = detected_count
            header_start_row = 1
            data_start_row = detected_start
            if override is not None:
                if override.header_row_count is not None:
                    header_row_count = override.header_row_count
                if override.header_start_row is not None:
                    header_start_row = override.header_start_row
                if override.data_start_row is not None:
                    data_start_row = override.data_start_row

        header_idx = header_start_row - 1
        header_rows = tuple(
            tuple(clean_header(value) for value in row)
            for row in all_rows[header_idx : header_idx + header_row_count]
        )
        sample_rows = tuple(
            tuple(
                "" if value is None else str(value).strip().replace("\n", " ")[:60]
                for value in row
            )
            for row in all_rows[data_start_row - 1 : data_start_row - 1 + self.max_sample_rows]
        )

        return SheetInfo(
            name=ws.title,
            row_count=row_count,
            col_count=col_count,
            merged_cell_count=len(merged_ranges),
            merged_ranges=tuple(merged_ranges[:10]),
            header_rows=header_rows,
            sample_rows=sample_rows,
            data_start_row=data_start_row,
            header_row_count=header_row_count,
            header_start_row=header_start_row,
        )

    def parse_sheet(
        self,
        path: str | Path,
        sheet_name: str,
        override: HeaderOverride | None = None,
    ) -> ParsedSheet:
        workbook = self._open(path)
        if sheet_name not in workbook.sheetnames:
            raise WorkbookReadError(f'시트 "{sheet_name}"를 찾을 수 없습니다.')
        ws = workbook[sheet_name]

        row_count = int(ws.max_row or 0)
        col_count = int(ws.max_column or 0)
        all_rows = self._read_rows(ws, 1, row_count, col_count)

        override = override or HeaderOverride()
        header_idx = (override.header_start_row or 1) - 1
        header_row_count = override.header_row_count
        if header_row_count is None:
            header_row_count = detect_header_boundary(all_rows, self.max_header_rows)[0]
        data_start_row = override.data_start_row or (header_idx + header_row_count + 1)

        headers = synthesize_headers(all_rows[header_idx : header_idx + header_row_count])

        rows: list[dict[str, Any]] = []
        row_numbers: list[int] = []
        for offset, row in enumerate(all_rows[data_start_row - 1 :]):
            if all(_is_blank(value) for value in row):
                continue
            record: dict[str, Any] = {}
            for col_idx, header in enumerate(headers):
                key = header or f"col_{col_idx + 1}"
                record[key] = row[col_idx] if col_idx < len(row) else None
            rows.append(record)
            row_numbers.append(data_start_row + offset)

        return ParsedSheet(name=sheet_name, headers=headers, rows=rows, row_numbers=row_numbers)

    def _read_rows(self, ws: Worksheet, start_row: int, end_row: int, col_count: int) -> list[list[Any]]:
        if end_row < start_row or col_count < 1:
            return []
        merged_values = self._merged_value_map(ws)
        result: list[list[Any]] = []
        for row_idx, cells in enumerate(
            ws.iter_rows(min_row=start_row, max_row=end_row, max_col=col_count),
            start=start_row,
        ):
            row: list[Any] = []
            for col_idx, cell in enumerate(cells, start=1):
                key = (row_idx, col_idx)
                if key in merged_values:
                    row.append(merged_values[key])
                else:
                    row.append(self._cell_value(cell))
            result.append(row)
        return result

    def _merged_value_map(self, ws: Worksheet) -> dict[tuple[int, int], Any]:
        values: dict[tuple[int, int], Any] = {}
        for cell_range in ws.merged_cells.ranges:
            top_left = self._cell_value(ws.cell(row=cell_range.min_row, column=cell_range.min_col))
            for row_idx in range(cell_range.min_row, cell_range.max_row + 1):
                for col_idx in range(cell_range.min_col, cell_range.max_col + 1):
                    if row_idx == cell_range.min_row and col_idx == cell_range.min_col:
                        continue
                    values[(row_idx, col_idx)] = top_left
        return values

    @staticmethod
    def _cell_value(cell: Any) -> Any:
        value = getattr(cell, "value", None)
        if value is None:
            return None
        if getattr(cell, "data_type", None) == "e":
            return None
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        return value
