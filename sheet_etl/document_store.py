"""Document store adapters: dry-run JSON files and Firestore REST batched upserts."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

SAFE_FILE_CHARS_RE = re.compile(r"[^a-zA-Z0-9가-힣]")
SIMPLE_FIELD_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")


class DocumentStoreError(RuntimeError):
    """Raised when a document store cannot be configured or written."""


@dataclass
class SheetWrite:
    written: int
    location: str | None = None
    error: str | None = None


class DocumentStore(Protocol):
    live: bool

    def write_sheet(self, collection: str, sheet_name: str, documents: list[dict[str, Any]]) -> SheetWrite: ...


def dry_run_file_name(collection: str, sheet_name: str) -> str:
    return f"{collection}_{SAFE_FILE_CHARS_RE.sub('_', sheet_name)}.json"


class FileDocumentStore:
    """Dry-run store: one JSON array file per (collection, sheet)."""

    live = False

    def __init__(self, output_dir: str | Path):
        self.output_dir = Path(output_dir)

    def write_sheet(self, collection: str, sheet_name: str, documents: list[dict[str, Any]]) -> SheetWrite:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / dry_run_file_name(collection, sheet_name)
        with path.open("w", encoding="utf-8") as f:
            json.dump(documents, f, ensure_ascii=False, indent=2, default=str)
        logger.info("  Dry-run: %d documents -> %s", len(documents), path)
        return SheetWrite(written=len(documents), location=str(path))


def encode_value(value: Any) -> dict[str, Any]:
    """Python value -> Firestore REST `Value` JSON."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        if math.isnan(value):
            return {"doubleValue": "NaN"}
        if math.isinf(value):
            return {"doubleValue": "Infinity" if value > 0 else "-Infinity"}
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": value.isoformat()}
    if isinstance(value, date):
        return {"stringValue": value.isoformat()}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    return {"stringValue": str(value)}


def encode_fields(document: dict[str, Any]) -> dict[str, Any]:
    return {str(key): encode_value(value) for key, value in document.items()}


def quote_field_segment(segment: str) -> str:
    if SIMPLE_FIELD_PATH_RE.match(segment):
        return segment
    escaped = segment.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


def merge_field_paths(document: dict[str, Any], prefix: tuple[str, ...] = ()) -> list[str]:
    """
    Leaf field paths for a merge upsert.

    Nested maps are descended so sibling keys already stored under the same
    map are preserved; empty maps and arrays are written as whole values.
    """
    paths: list[str] = []
    for key, value in document.items():
        path = prefix + (str(key),)
        if isinstance(value, dict) and value:
            paths.extend(merge_field_paths(value, path))
        else:
            paths.append(".".join(quote_field_segment(segment) for segment in path))
    return paths


def document_id(document: dict[str, Any]) -> str:
    raw = str(document.get("id") or "").strip()
    if not raw:
        raise DocumentStoreError("문서 id가 비어 있습니다.")
    return raw.replace("/", "_")


class FirestoreDocumentStore:
    """
    Live store backed by the Firestore REST `documents:commit` endpoint.

    Each batch of up to `batch_size` documents is one atomic commit of
    `update` writes with a leaf-path `updateMask` (merge semantics). Upserts
    are idempotent per document `id`: a record that carries its own `id`
    lands on the same document on every run, while records imported without
    one get a fresh generated id each run.
    """

    live = True
    BASE_URL = "https://firestore.googleapis.com/v1"
    CONNECT_TIMEOUT_SECONDS = 10
    REQUEST_TIMEOUT_SECONDS = 60
    RETRY_TOTAL = 3
    RETRY_BACKOFF_FACTOR = 0.7
    RETRY_STATUS_FORCELIST = (429, 500, 502, 503, 504)

    def __init__(
        self,
        project_id: str,
        access_token: str,
        org_id: str | None = None,
        database: str = "(default)",
        batch_size: int = 500,
        session: requests.Session | None = None,
    ):
        self.project_id = str(project_id or "").strip()
        self.access_token = str(access_token or "").strip()
        if not self.project_id:
            raise DocumentStoreError("Firestore project_id가 필요합니다. (FIRESTORE_PROJECT_ID)")
        if not self.access_token:
            raise DocumentStoreError("Firestore access token이 필요합니다. (FIRESTORE_ACCESS_TOKEN)")
        if int(batch_size) < 1:
            raise DocumentStoreError("batch_size는 1 이상이어야 합니다.")

        self.org_id = str(org_id).strip() if org_id else None
        self.database = database or "(default)"
        self.batch_size = int(batch_size)
        if session is None:
            session = requests.Session()
            self._configure_session_retries(session)
        self.session = session

    def _configure_session_retries(self, session: requests.Session) -> None:
        # commit 은 동일 문서 id 에 대한 update 라서 재시도해도 중복이 생기지 않는다.
        retry_policy = Retry(
            total=self.RETRY_TOTAL,
            connect=self.RETRY_TOTAL,
            read=self.RETRY_TOTAL,
            status=self.RETRY_TOTAL,
            backoff_factor=self.RETRY_BACKOFF_FACTOR,
            status_forcelist=self.RETRY_STATUS_FORCELIST,
            allowed_methods=frozenset({"POST"}),
            raise_on_status=False,
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry_policy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

    @property
    def database_path(self) -> str:
        return f"projects/{self.project_id}/databases/{self.database}"

    def document_name(self, org_id: str, collection: str, doc_id: str) -> str:
        return f"{self.database_path}/documents/orgs/{org_id}/{collection}/{doc_id}"

    def resolve_org_id(self, document: dict[str, Any]) -> str:
        doc_org = str(document.get("orgId") or "").strip()
        if self.org_id and doc_org and doc_org != self.org_id:
            raise DocumentStoreError(
                f"orgId 불일치: 문서 orgId={doc_org}, 저장소 org_id={self.org_id} (id={document.get('id')})"
            )
        org_id = doc_org or self.org_id
        if not org_id:
            raise DocumentStoreError("orgId가 비어 있습니다.")
        return org_id

    def build_commit_payload(self, collection: str, documents: list[dict[str, Any]]) -> dict[str, Any]:
        writes: list[dict[str, Any]] = []
        for document in documents:
            org_id = self.resolve_org_id(document)
            writes.append(
                {
                    "update": {
                        "name": self.document_name(org_id, collection, document_id(document)),
                        "fields": encode_fields(document),
                    },
                    "updateMask": {"fieldPaths": merge_field_paths(document)},
                }
            )
        return {"writes": writes}

    def upsert_batch(self, collection: str, documents: list[dict[str, Any]]) -> int:
        payload = self.build_commit_payload(collection, documents)
        url = f"{self.BASE_URL}/{self.database_path}/documents:commit"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.post(
                url,
                json=payload,
                headers=headers,
                timeout=(self.CONNECT_TIMEOUT_SECONDS, self.REQUEST_TIMEOUT_SECONDS),
            )
        except requests.RequestException as exc:
            raise DocumentStoreError(f"Firestore commit 요청 실패: {exc}") from exc

        if response.status_code >= 400:
            raise DocumentStoreError(
                f"Firestore commit 실패 (HTTP {response.status_code}): {response.text[:300]}"
            )
        return len(documents)

    def write_sheet(self, collection: str, sheet_name: str, documents: list[dict[str, Any]]) -> SheetWrite:
        written = 0
        for start in range(0, len(documents), self.batch_size):
            chunk = documents[start : start + self.batch_size]
            batch_no = start // self.batch_size + 1
            try:
                written += self.upsert_batch(collection, chunk)
            except DocumentStoreError as exc:
                logger.error("    batch %d failed for %s: %s", batch_no, sheet_name, exc)
                return SheetWrite(written=written, error=str(exc))
            logger.info("    batch %d: %d docs committed", batch_no, len(chunk))
        return SheetWrite(written=written, location=f"orgs/{self.org_id or '*'}/{collection}")
