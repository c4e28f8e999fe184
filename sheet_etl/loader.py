"""Step 5: load cleaned records into a document store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sheet_etl.document_store import DocumentStore
from sheet_etl.extractor import SOURCE_KEY
from sheet_etl.validator import ValidationReport

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    collection: str
    sheet_name: str
    documents_written: int = 0
    dry_run_path: str | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "sheet_name": self.sheet_name,
            "documents_written": self.documents_written,
            "dry_run_path": self.dry_run_path,
            "errors": list(self.errors),
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def shape_documents(
    report: ValidationReport,
    org_id: str,
    now: datetime,
) -> list[dict[str, Any]]:
    """Strip provenance and add import metadata to each cleaned record."""
    stamp = _iso(now)
    run_ms = int(now.timestamp() * 1000)

    documents: list[dict[str, Any]] = []
    for index, record in enumerate(report.cleaned_records):
        source = record.get(SOURCE_KEY) or {}
        fields = {key: value for key, value in record.items() if key != SOURCE_KEY}
        document = dict(fields)
        document["id"] = fields.get("id") or f"import-{report.collection}-{run_ms}-{index}"
        document["orgId"] = org_id
        document["importedAt"] = stamp
        document["importSource"] = f"excel:{report.sheet_name}:row{source.get('row') or 0}"
        document["createdAt"] = fields.get("createdAt") or stamp
        document["updatedAt"] = stamp
        documents.append(document)
    return documents


class Loader:
    """
    Writes validated sheets to the configured store.

    Against a live store, a sheet with any validation error is refused as a
    whole unless `allow_sheet_errors_on_commit` is set.
    """

    def __init__(
        self,
        store: DocumentStore,
        org_id: str,
        allow_sheet_errors_on_commit: bool = False,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.org_id = org_id
        self.allow_sheet_errors_on_commit = bool(allow_sheet_errors_on_commit)
        self.clock = clock or _utc_now

    def load(
        self,
        reports: list[ValidationReport],
        org_id: str | None = None,
        allow_sheet_errors_on_commit: bool | None = None,
    ) -> list[LoadResult]:
        org_id = org_id or self.org_id
        allow_errors = (
            self.allow_sheet_errors_on_commit
            if allow_sheet_errors_on_commit is None
            else bool(allow_sheet_errors_on_commit)
        )
        results: list[LoadResult] = []
        now = self.clock()

        for report in reports:
            if self.store.live and not allow_errors and report.stats.errors > 0:
                message = (
                    f'Strict mode: validation errors({report.stats.errors}) in "{report.sheet_name}" - skipped'
                )
                logger.warning("  [%s] %s", report.collection, message)
                results.append(LoadResult(collection=report.collection, sheet_name=report.sheet_name, errors=[message]))
                continue

            if not report.cleaned_records:
                logger.info("  [%s] No records to load from %s", report.collection, report.sheet_name)
                continue

            logger.info(
                "[Load] %s - %d records from %s",
                report.collection,
                len(report.cleaned_records),
                report.sheet_name,
            )
            documents = shape_documents(report, org_id, now)
            outcome = self.store.write_sheet(report.collection, report.sheet_name, documents)

            result = LoadResult(
                collection=report.collection,
                sheet_name=report.sheet_name,
                documents_written=outcome.written,
            )
            if self.store.live:
                if outcome.error:
                    result.errors.append(outcome.error)
            else:
                result.dry_run_path = outcome.location
            results.append(result)
        return results
