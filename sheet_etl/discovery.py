"""Step 1: sheet discovery (workbook scan -> SheetManifest)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from sheet_etl.excel_reader import SheetInfo, WorkbookReadError
from sheet_etl.sheet_profiles import HeaderOverride, SheetProfile, SheetProfileRegistry

logger = logging.getLogger(__name__)


class SheetDiscoveryError(RuntimeError):
    """Raised when a workbook cannot be discovered."""


class WorkbookReader(Protocol):
    def discover_sheets(
        self,
        path: str | Path,
        overrides: dict[str, HeaderOverride] | None = None,
        sheet_names: list[str] | None = None,
    ) -> list[SheetInfo]: ...


@dataclass(frozen=True)
class ManifestEntry:
    info: SheetInfo
    profile: SheetProfile | None = None

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def is_skipped(self) -> bool:
        return self.profile is not None and self.profile.skip

    @property
    def is_mappable(self) -> bool:
        return self.profile is not None and not self.profile.skip

    @property
    def target_collection(self) -> str:
        return self.profile.target_collection if self.profile is not None else ""

    @property
    def hint(self) -> str | None:
        return self.profile.hint if self.profile is not None else None


@dataclass
class ManifestSummary:
    total_sheets: int = 0
    mappable_sheets: int = 0
    skipped_sheets: int = 0
    total_merged_cells: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_sheets": self.total_sheets,
            "mappable_sheets": self.mappable_sheets,
            "skipped_sheets": self.skipped_sheets,
            "total_merged_cells": self.total_merged_cells,
        }


@dataclass
class SheetManifest:
    file_name: str
    source_path: Path
    entries: list[ManifestEntry] = field(default_factory=list)
    summary: ManifestSummary = field(default_factory=ManifestSummary)

    def sheet_names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "summary": self.summary.to_dict(),
            "sheets": [
                {
                    "name": entry.name,
                    "rows": entry.info.row_count,
                    "cols": entry.info.col_count,
                    "merged_cells": entry.info.merged_cell_count,
                    "header_rows": entry.info.header_row_count,
                    "data_start_row": entry.info.data_start_row,
                    "target_collection": entry.target_collection or None,
                    "status": (
                        "skipped" if entry.is_skipped
                        else "mappable" if entry.is_mappable
                        else "unclassified"
                    ),
                }
                for entry in self.entries
            ],
        }


class SheetDiscovery:
    """
    Two-pass workbook scan.

    Pass 1 reads every sheet with automatic header detection. Sheets whose
    profile carries header/data row overrides are re-read in pass 2 with the
    override applied, since header detection cannot be corrected after rows
    have been classified.
    """

    def __init__(self, reader: WorkbookReader, registry: SheetProfileRegistry):
        self.reader = reader
        self.registry = registry

    def discover(self, path: str | Path) -> SheetManifest:
        source_path = Path(path)
        logger.info("[Discover] scanning %s", source_path.name)

        try:
            first_pass = self.reader.discover_sheets(source_path)
        except WorkbookReadError as exc:
            raise SheetDiscoveryError(f"시트 탐색 실패: {source_path} ({exc})") from exc

        overrides: dict[str, HeaderOverride] = {}
        for info in first_pass:
            override = self.registry.overrides_for(info.name)
            if override is not None:
                overrides[info.name] = override

        sheets = first_pass
        if overrides:
            try:
                rescanned = self.reader.discover_sheets(
                    source_path,
                    overrides=overrides,
                    sheet_names=list(overrides.keys()),
                )
            except WorkbookReadError as exc:
                raise SheetDiscoveryError(f"시트 재탐색 실패: {source_path} ({exc})") from exc
            by_name = {info.name: info for info in rescanned}
            sheets = [by_name.get(info.name, info) for info in first_pass]

        manifest = SheetManifest(file_name=source_path.name, source_path=source_path)
        for info in sheets:
            entry = ManifestEntry(info=info, profile=self.registry.find_profile(info.name))
            manifest.entries.append(entry)
            manifest.summary.total_sheets += 1
            manifest.summary.total_merged_cells += info.merged_cell_count

            if entry.is_skipped:
                manifest.summary.skipped_sheets += 1
                logger.info("  skip [%s] (%s)", info.name, entry.hint or "not needed")
            elif entry.is_mappable:
                manifest.summary.mappable_sheets += 1
                logger.info(
                    "  [%s] -> %s (%dr x %dc, %d merged, hdr:%d)",
                    info.name,
                    entry.target_collection,
                    info.row_count,
                    info.col_count,
                    info.merged_cell_count,
                    info.header_row_count,
                )
            else:
                logger.info("  [%s] no profile (%dr x %dc)", info.name, info.row_count, info.col_count)

        logger.info(
            "[Discover] %d sheets, %d mappable, %d skipped, %d merged cells",
            manifest.summary.total_sheets,
            manifest.summary.mappable_sheets,
            manifest.summary.skipped_sheets,
            manifest.summary.total_merged_cells,
        )
        return manifest
