"""
Staging bundle: gather a reviewed dry run into one per-org file, then sync it.

A dry run writes one JSON array per (collection, sheet) and a
`pipeline-summary-*.json` whose `loads[].dry_run_path` points at them. The
staging step collects exactly those files into `firestore-staging-bundle.json`.
The sync step then writes the bundle to a live store, so what lands in the
store is what the operator reviewed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from sheet_etl.document_store import DocumentStore

logger = logging.getLogger(__name__)

STAGING_BUNDLE_FILE = "firestore-staging-bundle.json"
STAGING_META_KEY = "_staging"
SUMMARY_FILE_RE = re.compile(r"^pipeline-summary-(\d+)\.json$")


class StagingError(RuntimeError):
    """Raised when a staging bundle cannot be built, read or synced."""


@dataclass
class StagedSheet:
    collection: str
    sheet_name: str
    count: int
    source_file: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "sheetName": self.sheet_name,
            "count": self.count,
            "sourceFile": self.source_file,
        }


@dataclass
class StagingBundle:
    org_id: str
    generated_at: str
    source_summary: str
    collections: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    sheets: list[StagedSheet] = field(default_factory=list)

    @property
    def total_documents(self) -> int:
        return sum(len(docs) for docs in self.collections.values())

    def by_collection(self) -> dict[str, int]:
        return {collection: len(docs) for collection, docs in self.collections.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "sourceSummary": self.source_summary,
            "orgId": self.org_id,
            "stats": {
                "totalDocuments": self.total_documents,
                "byCollection": self.by_collection(),
                "bySheet": [sheet.to_dict() for sheet in self.sheets],
            },
            "collections": self.collections,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StagingBundle":
        org_id = str(data.get("orgId") or "").strip()
        if not org_id:
            raise StagingError("번들에 orgId가 없습니다.")

        collections = data.get("collections") or {}
        if not isinstance(collections, dict):
            raise StagingError("번들의 collections는 dict여야 합니다.")
        for collection, docs in collections.items():
            if not isinstance(docs, list) or not all(isinstance(doc, dict) for doc in docs):
                raise StagingError(f"번들 컬렉션 '{collection}'은 문서 목록이어야 합니다.")

        stats = data.get("stats") or {}
        sheets = [
            StagedSheet(
                collection=str(item.get("collection") or ""),
                sheet_name=str(item.get("sheetName") or ""),
                count=int(item.get("count") or 0),
                source_file=str(item.get("sourceFile") or ""),
            )
            for item in stats.get("bySheet") or []
            if isinstance(item, dict)
        ]
        return cls(
            org_id=org_id,
            generated_at=str(data.get("generatedAt") or ""),
            source_summary=str(data.get("sourceSummary") or ""),
            collections=collections,
            sheets=sheets,
        )


@dataclass
class SyncResult:
    collection: str
    sheet_name: str
    documents_written: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "sheet_name": self.sheet_name,
            "documents_written": self.documents_written,
            "errors": list(self.errors),
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _read_json(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StagingError(f"파일을 읽을 수 없습니다: {path}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise StagingError(f"JSON 파싱 실패 ({path}): {exc}") from exc


def find_latest_summary(output_dir: str | Path) -> Path:
    """Newest `pipeline-summary-{ts}.json` by the timestamp in its name."""
    out_dir = Path(output_dir)
    if not out_dir.is_dir():
        raise StagingError(f"출력 디렉터리가 없습니다: {out_dir}")

    candidates: list[tuple[int, Path]] = []
    for path in out_dir.iterdir():
        match = SUMMARY_FILE_RE.match(path.name)
        if match:
            candidates.append((int(match.group(1)), path))
    if not candidates:
        raise StagingError(f"pipeline-summary-*.json 파일이 없습니다: {out_dir}")
    return max(candidates)[1]


def _resolve_dry_run_path(raw: str, summary_dir: Path) -> Path | None:
    path = Path(raw)
    if path.exists():
        return path
    # 요약이 다른 작업 디렉터리에서 만들어졌으면 요약 옆의 같은 파일을 쓴다.
    sibling = summary_dir / path.name
    if sibling.exists():
        return sibling
    return None


def staged_document_id(collection: str, sheet_name: str, import_source: str, index: int) -> str:
    digest = hashlib.sha1(f"{sheet_name}|{import_source}|{index}".encode("utf-8")).hexdigest()
    return f"{collection}-{digest[:12]}"


def normalize_staging_document(
    document: dict[str, Any],
    collection: str,
    sheet_name: str,
    index: int,
) -> dict[str, Any]:
    normalized = dict(document)
    if not str(normalized.get("id") or "").strip():
        import_source = str(normalized.get("importSource") or "").strip()
        normalized["id"] = staged_document_id(collection, sheet_name, import_source, index)
    normalized[STAGING_META_KEY] = {"collection": collection, "sheetName": sheet_name, "index": index}
    return normalized


def build_staging_bundle(
    summary_path: str | Path,
    org_id: str | None = None,
    default_org_id: str = "",
    clock: Callable[[], datetime] | None = None,
) -> StagingBundle:
    """
    Collect the dry-run files listed in a run summary into one bundle.

    Loads without `dry_run_path` (live runs, strict-gate skips) are ignored,
    as are paths that no longer exist. The bundle org is `org_id`, then the
    summary's `flags.org`, then `default_org_id`.
    """
    summary_file = Path(summary_path)
    summary = _read_json(summary_file)
    if not isinstance(summary, dict):
        raise StagingError(f"요약 파일 최상위 구조는 dict여야 합니다: {summary_file}")

    flags = summary.get("flags") or {}
    target_org = str(org_id or flags.get("org") or default_org_id or "").strip()
    if not target_org:
        raise StagingError("orgId를 정할 수 없습니다. --org 를 지정하세요.")

    sources: dict[str, tuple[str, str, Path]] = {}
    for load in summary.get("loads") or []:
        raw_path = str(load.get("dry_run_path") or "")
        collection = str(load.get("collection") or "")
        sheet_name = str(load.get("sheet_name") or "")
        if not raw_path or not collection or not sheet_name:
            continue
        path = _resolve_dry_run_path(raw_path, summary_file.parent)
        if path is None:
            logger.warning("[Stage] dry-run file missing, skipped: %s", raw_path)
            continue
        sources[path.name] = (collection, sheet_name, path)

    if not sources:
        raise StagingError(f"요약에 사용할 수 있는 dry-run 파일이 없습니다: {summary_file}")

    bundle = StagingBundle(
        org_id=target_org,
        generated_at=_iso((clock or _utc_now)()),
        source_summary=summary_file.name,
    )
    for file_name in sorted(sources):
        collection, sheet_name, path = sources[file_name]
        documents = _read_json(path)
        if not isinstance(documents, list):
            logger.warning("[Stage] not a document array, skipped: %s", path)
            continue

        staged = bundle.collections.setdefault(collection, [])
        staged.extend(
            normalize_staging_document(doc, collection, sheet_name, index)
            for index, doc in enumerate(documents)
            if isinstance(doc, dict)
        )
        bundle.sheets.append(
            StagedSheet(collection=collection, sheet_name=sheet_name, count=len(documents), source_file=file_name)
        )
        logger.info("[Stage] %s [%s]: %d docs from %s", collection, sheet_name, len(documents), file_name)

    return bundle


def write_staging_bundle(bundle: StagingBundle, output_dir: str | Path) -> Path:
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / STAGING_BUNDLE_FILE
    with path.open("w", encoding="utf-8") as f:
        json.dump(bundle.to_dict(), f, ensure_ascii=False, indent=2, default=str)
    return path


def load_staging_bundle(path: str | Path) -> StagingBundle:
    bundle_file = Path(path)
    if not bundle_file.exists():
        raise StagingError(f"번들 파일이 없습니다: {bundle_file}")
    data = _read_json(bundle_file)
    if not isinstance(data, dict):
        raise StagingError(f"번들 최상위 구조는 dict여야 합니다: {bundle_file}")
    return StagingBundle.from_dict(data)


def group_by_sheet(bundle: StagingBundle) -> list[tuple[str, str, list[dict[str, Any]]]]:
    """(collection, sheet, documents) in bundle order; documents without staging meta group under the collection name."""
    groups: dict[tuple[str, str], list[dict[str, Any]]] = {}
    for collection, documents in bundle.collections.items():
        for document in documents:
            meta = document.get(STAGING_META_KEY) or {}
            sheet_name = str(meta.get("sheetName") or collection)
            groups.setdefault((collection, sheet_name), []).append(document)
    return [(collection, sheet_name, docs) for (collection, sheet_name), docs in groups.items()]


def prepare_sync_documents(
    documents: list[dict[str, Any]],
    org_id: str,
    synced_at: str,
) -> list[dict[str, Any]]:
    prepared: list[dict[str, Any]] = []
    for document in documents:
        payload = {key: value for key, value in document.items() if key != STAGING_META_KEY}
        payload["orgId"] = org_id
        payload["stagingSyncedAt"] = synced_at
        prepared.append(payload)
    return prepared


def sync_staging_bundle(
    bundle: StagingBundle,
    store: DocumentStore,
    clock: Callable[[], datetime] | None = None,
) -> list[SyncResult]:
    """Write every staged sheet to a live store. A failing sheet does not stop the others."""
    if not store.live:
        raise StagingError("스테이징 동기화에는 실제 문서 저장소가 필요합니다.")

    synced_at = _iso((clock or _utc_now)())
    results: list[SyncResult] = []
    for collection, sheet_name, documents in group_by_sheet(bundle):
        if not documents:
            continue
        logger.info("[Sync] %s [%s]: %d docs", collection, sheet_name, len(documents))
        outcome = store.write_sheet(
            collection,
            sheet_name,
            prepare_sync_documents(documents, bundle.org_id, synced_at),
        )
        result = SyncResult(collection=collection, sheet_name=sheet_name, documents_written=outcome.written)
        if outcome.error:
            result.errors.append(outcome.error)
        results.append(result)
    return results


def format_bundle_lines(bundle: StagingBundle) -> list[str]:
    lines = [
        "Staging bundle",
        f"- orgId: {bundle.org_id}",
        f"- source summary: {bundle.source_summary or '-'}",
        f"- total docs: {bundle.total_documents}",
        "- collections: " + ", ".join(f"{name}:{count}" for name, count in bundle.by_collection().items()),
    ]
    for sheet in bundle.sheets:
        lines.append(f"    {sheet.collection} [{sheet.sheet_name}]: {sheet.count} docs ({sheet.source_file})")
    return lines
