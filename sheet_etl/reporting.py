"""Run reports: pipeline summary JSON, validation issues JSON/XLSX, console summary lines."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd

from sheet_etl.pipeline import PipelineOutput

ISSUE_COLUMNS = ["sheet", "collection", "row", "severity", "source", "field", "message", "suggestion"]
STATS_COLUMNS = ["sheet", "collection", "input_records", "output_records", "errors", "warnings"]


@dataclass
class ReportPaths:
    summary_json: Path
    issues_json: Path
    issues_xlsx: Path


def build_run_summary(
    output: PipelineOutput,
    files: list[Path] | None = None,
    steps: tuple[int, ...] | None = None,
    flags: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "files": [Path(path).name for path in (files or [])],
        "steps": list(steps or ()),
        "flags": dict(flags or {}),
        "manifests": [
            {"file_name": manifest.file_name, **manifest.summary.to_dict()}
            for manifest in output.manifests
        ],
        "failures": [failure.to_dict() for failure in output.failures],
        "mappings": [
            {
                "sheet": mapping.sheet_name,
                "collection": mapping.target_collection,
                "columns": len(mapping.column_mappings),
                "skipped": mapping.skipped,
                "skip_reason": mapping.skip_reason,
            }
            for mapping in output.mappings
        ],
        "extractions": [
            {
                "sheet": extraction.sheet_name,
                "collection": extraction.target_collection,
                **extraction.stats.to_dict(),
                "errors": list(extraction.errors),
            }
            for extraction in output.extractions
        ],
        "validations": [
            {"sheet": report.sheet_name, "collection": report.collection, **report.stats.to_dict()}
            for report in output.validations
        ],
        "loads": [load.to_dict() for load in output.loads],
        "llm_usage": output.llm_usage,
        "duration_ms": output.duration_ms,
    }


def build_validation_issues(output: PipelineOutput) -> list[dict[str, Any]]:
    return [
        {
            "sheet": report.sheet_name,
            "collection": report.collection,
            "stats": report.stats.to_dict(),
            "issues": [issue.to_dict() for issue in report.issues],
        }
        for report in output.validations
    ]


def _issues_frame(output: PipelineOutput) -> pd.DataFrame:
    rows: list[dict[str, Any]] = []
    for report in output.validations:
        for issue in report.issues:
            row = issue.to_dict()
            row["collection"] = report.collection
            rows.append(row)
    return pd.DataFrame(rows, columns=ISSUE_COLUMNS)


def _stats_frame(output: PipelineOutput) -> pd.DataFrame:
    rows = [
        {"sheet": report.sheet_name, "collection": report.collection, **report.stats.to_dict()}
        for report in output.validations
    ]
    return pd.DataFrame(rows, columns=STATS_COLUMNS)


def write_issues_workbook(output: PipelineOutput, path: str | Path) -> Path:
    """Operator workbook: `Issues` (one row per issue) and `Summary` (per-sheet stats)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(target, engine="openpyxl") as writer:
        _issues_frame(output).to_excel(writer, sheet_name="Issues", index=False)
        _stats_frame(output).to_excel(writer, sheet_name="Summary", index=False)
        writer.sheets["Issues"].freeze_panes = "A2"
    return target


def write_run_reports(
    output: PipelineOutput,
    output_dir: str | Path,
    files: list[Path] | None = None,
    steps: tuple[int, ...] | None = None,
    flags: dict[str, Any] | None = None,
    run_ts: int | None = None,
) -> ReportPaths:
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    ts = run_ts if run_ts is not None else int(datetime.now(timezone.utc).timestamp() * 1000)

    paths = ReportPaths(
        summary_json=out_dir / f"pipeline-summary-{ts}.json",
        issues_json=out_dir / f"validation-issues-{ts}.json",
        issues_xlsx=out_dir / f"validation-issues-{ts}.xlsx",
    )
    paths.summary_json.write_text(
        json.dumps(build_run_summary(output, files, steps, flags), ensure_ascii=False, indent=2, default=str),
        encoding="utf-8",
    )
    paths.issues_json.write_text(
        json.dumps(build_validation_issues(output), ensure_ascii=False, indent=2, default=str),
        encoding="utf-8",
    )
    write_issues_workbook(output, paths.issues_xlsx)
    return paths


def format_summary_lines(output: PipelineOutput) -> list[str]:
    lines = ["=" * 60, "  PIPELINE SUMMARY", "=" * 60, f"Duration: {output.duration_ms / 1000:.1f}s"]

    if output.manifests:
        lines.append("")
        lines.append("Discovery:")
        for manifest in output.manifests:
            s = manifest.summary
            lines.append(
                f"  {manifest.file_name}: {s.total_sheets} sheets "
                f"({s.mappable_sheets} mappable, {s.skipped_sheets} skipped, {s.total_merged_cells} merged cells)"
            )

    if output.failures:
        lines.append("")
        lines.append("Failures:")
        for failure in output.failures:
            lines.append(f"  {failure.file} [{failure.stage}]: {failure.error}")

    active = [m for m in output.mappings if not m.skipped]
    if active:
        lines.append("")
        lines.append("Schema Mappings:")
        for mapping in active:
            high = sum(1 for c in mapping.column_mappings if c.confidence >= 0.8)
            lines.append(
                f"  {mapping.sheet_name} -> {mapping.target_collection} "
                f"({len(mapping.column_mappings)} cols, {high} high-conf)"
            )

    if output.extractions:
        lines.append("")
        lines.append("Extractions:")
        for extraction in output.extractions:
            lines.append(
                f"  {extraction.sheet_name} -> {extraction.target_collection}: "
                f"{len(extraction.records)} records ({len(extraction.errors)} errors)"
            )

    if output.validations:
        lines.append("")
        lines.append("Validations:")
        for report in output.validations:
            st = report.stats
            lines.append(
                f"  {report.sheet_name}: {st.output_records}/{st.input_records} clean "
                f"({st.errors} errors, {st.warnings} warnings)"
            )

    if output.loads:
        lines.append("")
        lines.append("Loads:")
        for load in output.loads:
            dest = load.dry_run_path or "document store"
            suffix = f" [errors: {'; '.join(load.errors)}]" if load.errors else ""
            lines.append(f"  {load.collection} [{load.sheet_name}]: {load.documents_written} docs -> {dest}{suffix}")

    if output.llm_usage:
        usage = output.llm_usage
        lines.append("")
        lines.append(
            f"LLM usage: used={usage.get('calls_used')} blocked={usage.get('calls_blocked')} "
            f"failed={usage.get('calls_failed')} (max={usage.get('max_calls')})"
        )

    lines.append("=" * 60)
    return lines
