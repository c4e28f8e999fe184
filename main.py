#!/usr/bin/env python3
"""
Workbook ETL pipeline CLI entrypoint.

    python main.py discover <file1> [file2...]
    python main.py run <file1> [file2...] [--commit] [--llm] [--org <orgId>] [--steps 1,2,3]
    python main.py stage [--summary <pipeline-summary.json>] [--org <orgId>]
    python main.py sync [--bundle <firestore-staging-bundle.json>] [--org <orgId>] [--commit]
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Callable

import yaml

from sheet_etl.discovery import SheetDiscovery
from sheet_etl.document_store import DocumentStoreError, FileDocumentStore, FirestoreDocumentStore
from sheet_etl.excel_reader import ExcelWorkbookReader
from sheet_etl.extractor import RecordExtractor
from sheet_etl.llm_client import BudgetedLLMClient, CompletionOptions, GatewayLLM, LLMClientError
from sheet_etl.loader import Loader
from sheet_etl.logging_utils import configure_logging
from sheet_etl.pipeline import ETLPipeline, PipelineError, PipelineInput, PipelineOutput
from sheet_etl.reporting import format_summary_lines, write_run_reports
from sheet_etl.schema_mapper import (
    MAPPING_SYSTEM_PROMPT,
    LLMSchemaMapper,
    SchemaMappingError,
    StaticSchemaMapper,
    load_mapping_rules,
)
from sheet_etl.sheet_profiles import SheetProfileError, SheetProfileRegistry
from sheet_etl.staging import (
    STAGING_BUNDLE_FILE,
    StagingError,
    build_staging_bundle,
    find_latest_summary,
    format_bundle_lines,
    load_staging_bundle,
    sync_staging_bundle,
    write_staging_bundle,
)
from sheet_etl.validator import VALIDATION_SYSTEM_PROMPT, Validator


class ConfigError(RuntimeError):
    pass


LLM_API_KEY_ENV = "LLM_API_KEY"
FIRESTORE_PROJECT_ENV = "FIRESTORE_PROJECT_ID"
FIRESTORE_TOKEN_ENV = "FIRESTORE_ACCESS_TOKEN"

REQUIRED_SETTINGS_SCHEMA: dict[str, tuple[str, ...]] = {
    "llm": ("gateway_url", "model", "max_calls"),
    "store": ("project_id", "database", "batch_size"),
    "pipeline": ("org_id", "confirm_seconds"),
    "paths": ("output_dir", "sheet_profiles", "mapping_rules"),
}


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("files", nargs="+", help="Excel workbook paths (.xlsx)")
    _add_config_options(parser)


def _add_config_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to settings yaml (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--output-dir",
        default="",
        help="Dry-run/report output directory (default: paths.output_dir)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Excel workbook -> document store ETL pipeline.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    discover = subparsers.add_parser(
        "discover",
        help="Scan workbooks and show sheet structure (Step 1 only).",
    )
    _add_common_options(discover)

    run = subparsers.add_parser(
        "run",
        help="Execute the pipeline (Steps 1-5).",
    )
    _add_common_options(run)
    run.add_argument(
        "--commit",
        action="store_true",
        help="Actually write to the document store (default: dry-run JSON files).",
    )
    run.add_argument(
        "--allow-errors",
        action="store_true",
        help="Load sheets even when validation errors exist (only with --commit).",
    )
    run.add_argument(
        "--llm",
        action="store_true",
        help="Use LLM schema mapping (Step 2) and LLM review (Step 4).",
    )
    run.add_argument(
        "--org",
        default="",
        help="Target orgId (default: pipeline.org_id)",
    )
    run.add_argument(
        "--steps",
        default="",
        help="Comma-separated step numbers to run (default: 1,2,3,4,5)",
    )
    run.add_argument(
        "--confirm-seconds",
        type=float,
        default=None,
        help="Abort window before a live commit (default: pipeline.confirm_seconds)",
    )

    stage = subparsers.add_parser(
        "stage",
        help="Bundle the dry-run files of a run summary into a staging bundle.",
    )
    _add_config_options(stage)
    stage.add_argument(
        "--summary",
        default="",
        help="pipeline-summary-*.json to stage (default: latest in output dir)",
    )
    stage.add_argument(
        "--org",
        default="",
        help="Target orgId (default: summary flags.org, then pipeline.org_id)",
    )

    sync = subparsers.add_parser(
        "sync",
        help="Write a reviewed staging bundle to the document store.",
    )
    _add_config_options(sync)
    sync.add_argument(
        "--bundle",
        default="",
        help=f"Staging bundle path (default: <output dir>/{STAGING_BUNDLE_FILE})",
    )
    sync.add_argument(
        "--org",
        default="",
        help="Override the bundle orgId",
    )
    sync.add_argument(
        "--commit",
        action="store_true",
        help="Actually write to the document store (default: print the plan only).",
    )
    sync.add_argument(
        "--confirm-seconds",
        type=float,
        default=None,
        help="Abort window before a live commit (default: pipeline.confirm_seconds)",
    )
    return parser.parse_args(argv)


def load_dotenv_file(path: Path) -> None:
    """Fill unset or empty environment variables from KEY=VALUE lines."""
    if not path.exists():
        return

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ConfigError(f".env 파일을 읽을 수 없습니다: {path}") from exc

    for raw_line in lines:
        line = raw_line.strip()
        if line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if not key:
            continue
        if len(value) >= 2 and value[0] in ('"', "'") and value[-1] == value[0]:
            value = value[1:-1]
        # 셸에서 빈 값으로 export 된 키도 .env 값으로 채운다.
        if not os.environ.get(key):
            os.environ[key] = value


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"설정 파일이 없습니다: {path}")

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"설정 파일을 읽을 수 없습니다: {path}") from exc

    try:
        loaded = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"YAML 파싱 실패 ({path}): {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigError(f"YAML 최상위 구조는 dict여야 합니다: {path}")

    return loaded


def validate_settings(settings: dict[str, Any], path: Path) -> None:
    for section, required_keys in REQUIRED_SETTINGS_SCHEMA.items():
        section_data = settings.get(section)
        if not isinstance(section_data, dict):
            raise ConfigError(
                f"{path}: '{section}' 섹션이 없거나 dict 형식이 아닙니다."
            )

        for key in required_keys:
            if key not in section_data:
                raise ConfigError(
                    f"{path}: '{section}.{key}' 키가 누락되었습니다."
                )

    max_calls = settings["llm"]["max_calls"]
    if not isinstance(max_calls, int) or isinstance(max_calls, bool) or max_calls < 0:
        raise ConfigError(f"{path}: 'llm.max_calls'는 0 이상의 정수여야 합니다.")

    batch_size = settings["store"]["batch_size"]
    if not isinstance(batch_size, int) or isinstance(batch_size, bool) or not 1 <= batch_size <= 500:
        raise ConfigError(f"{path}: 'store.batch_size'는 1~500 사이 정수여야 합니다.")

    org_id = str(settings["pipeline"]["org_id"] or "").strip()
    if not org_id:
        raise ConfigError(f"{path}: 'pipeline.org_id'가 비어 있습니다.")


def parse_steps_option(raw: str) -> tuple[int, ...]:
    if not str(raw or "").strip():
        return (1, 2, 3, 4, 5)

    steps: list[int] = []
    for part in str(raw).split(","):
        token = part.strip()
        if not token:
            continue
        if not token.isdigit() or not 1 <= int(token) <= 5:
            raise ConfigError(f"잘못된 steps 값: {token} (1~5)")
        if int(token) not in steps:
            steps.append(int(token))
    if not steps:
        raise ConfigError("--steps 값이 비어 있습니다.")
    return tuple(sorted(steps))


def resolve_input_files(files: list[str]) -> list[Path]:
    resolved = [Path(f).expanduser().resolve() for f in files]
    missing = [str(p) for p in resolved if not p.exists()]
    if missing:
        raise ConfigError(f"파일이 없습니다: {', '.join(missing)}")
    return resolved


def resolve_store_credentials(settings: dict[str, Any]) -> tuple[str, str]:
    store = settings["store"]
    project_id = str(store.get("project_id") or "").strip() or os.getenv(FIRESTORE_PROJECT_ENV, "").strip()
    access_token = str(store.get("access_token") or "").strip() or os.getenv(FIRESTORE_TOKEN_ENV, "").strip()
    if not project_id:
        raise ConfigError(
            "Firestore 프로젝트가 없습니다. "
            "`config/settings.yaml`의 `store.project_id`를 설정하거나 "
            f"`.env`에 `{FIRESTORE_PROJECT_ENV}=...`를 추가하세요."
        )
    if not access_token:
        raise ConfigError(
            "Firestore access token이 없습니다. "
            f"`.env`에 `{FIRESTORE_TOKEN_ENV}=...`를 추가하세요."
        )
    return project_id, access_token


def build_live_store(settings: dict[str, Any], org_id: str | None = None) -> FirestoreDocumentStore:
    project_id, access_token = resolve_store_credentials(settings)
    try:
        return FirestoreDocumentStore(
            project_id=project_id,
            access_token=access_token,
            org_id=org_id,
            database=str(settings["store"]["database"] or "(default)"),
            batch_size=int(settings["store"]["batch_size"]),
        )
    except DocumentStoreError as exc:
        raise ConfigError(str(exc)) from exc


def build_pipeline(
    settings: dict[str, Any],
    *,
    commit: bool,
    use_llm: bool,
    org_id: str,
    output_dir: Path,
    allow_errors: bool = False,
) -> tuple[ETLPipeline, ExcelWorkbookReader]:
    paths = settings["paths"]
    llm_settings = settings["llm"]

    try:
        registry = SheetProfileRegistry.from_yaml(Path(paths["sheet_profiles"]))
        rules = load_mapping_rules(Path(paths["mapping_rules"]))
    except (SheetProfileError, SchemaMappingError) as exc:
        raise ConfigError(str(exc)) from exc

    if commit:
        store: Any = build_live_store(settings)
    else:
        store = FileDocumentStore(output_dir)

    llm_client = None
    llm_mapper = None
    if use_llm:
        try:
            base = GatewayLLM(
                gateway_url=str(llm_settings["gateway_url"]),
                model=str(llm_settings["model"]),
                timeout_seconds=float(llm_settings.get("timeout_seconds", 60)),
                api_key=os.getenv(LLM_API_KEY_ENV, ""),
            )
        except LLMClientError as exc:
            raise ConfigError(str(exc)) from exc
        llm_client = BudgetedLLMClient(base, enabled=True, max_calls=int(llm_settings["max_calls"]))
        retries = int(llm_settings.get("retries", 2))
        llm_mapper = LLMSchemaMapper(
            llm_client,
            options=CompletionOptions(system=MAPPING_SYSTEM_PROMPT, max_tokens=2048, retries=retries),
        )
        validator = Validator(
            llm_client=llm_client,
            use_llm=True,
            options=CompletionOptions(system=VALIDATION_SYSTEM_PROMPT, max_tokens=2048, retries=retries),
        )
    else:
        validator = Validator()

    reader = ExcelWorkbookReader()
    pipeline = ETLPipeline(
        discovery=SheetDiscovery(reader, registry),
        static_mapper=StaticSchemaMapper(rules),
        extractor=RecordExtractor(reader, registry),
        validator=validator,
        loader=Loader(store, org_id=org_id, allow_sheet_errors_on_commit=allow_errors),
        llm_mapper=llm_mapper,
        llm_client=llm_client,
    )
    return pipeline, reader


def wait_for_commit_confirmation(
    seconds: float,
    allow_errors: bool,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    print("\n[WARN] LIVE MODE: 문서 저장소에 실제로 기록합니다.")
    if not allow_errors:
        print("       Strict mode: 검증 오류가 있는 시트는 적재하지 않습니다.")
    if seconds > 0:
        print(f"       {seconds:g}초 안에 Ctrl+C를 누르면 중단합니다...")
        sleep(seconds)


def print_summary(output: PipelineOutput) -> None:
    print()
    for line in format_summary_lines(output):
        print(line)


def run_command(settings: dict[str, Any], args: argparse.Namespace) -> int:
    files = resolve_input_files(args.files)
    output_dir = Path(args.output_dir or settings["paths"]["output_dir"])

    if args.command == "discover":
        commit = False
        use_llm = False
        allow_errors = False
        org_id = str(settings["pipeline"]["org_id"])
        steps: tuple[int, ...] = (1,)
    else:
        commit = bool(args.commit)
        use_llm = bool(args.llm)
        allow_errors = bool(args.allow_errors)
        org_id = str(args.org or settings["pipeline"]["org_id"]).strip()
        steps = parse_steps_option(args.steps or settings["pipeline"].get("steps", ""))

    print("ETL Pipeline")
    print(f"- command: {args.command}")
    print(f"- files: {len(files)}")
    for path in files:
        print(f"    {path.name}")
    print(f"- steps: {','.join(str(s) for s in steps)}")
    print(f"- mode: {'LIVE' if commit else 'DRY-RUN'}{' + LLM' if use_llm else ''}")

    pipeline, reader = build_pipeline(
        settings,
        commit=commit,
        use_llm=use_llm,
        org_id=org_id,
        output_dir=output_dir,
        allow_errors=allow_errors,
    )

    if commit and 5 in steps:
        wait_for_commit_confirmation(_resolve_confirm_seconds(settings, args), allow_errors)

    pipeline_input = PipelineInput(
        files=files,
        commit=commit,
        use_llm=use_llm,
        org_id=org_id,
        steps=steps,
        allow_sheet_errors_on_commit=allow_errors,
    )
    try:
        with reader:
            output = pipeline.run(pipeline_input)
    except PipelineError as exc:
        raise ConfigError(str(exc)) from exc

    print_summary(output)

    if args.command == "run" and not commit:
        report_paths = write_run_reports(
            output,
            output_dir,
            files=files,
            steps=steps,
            flags={
                "commit": commit,
                "llm": use_llm,
                "allow_errors": allow_errors,
                "org": org_id,
            },
        )
        print(f"\n요약 저장: {report_paths.summary_json}")
        print(f"검증 이슈 저장: {report_paths.issues_json}")
        print(f"검증 이슈 엑셀: {report_paths.issues_xlsx}")

    failed_loads = [load for load in output.loads if load.errors]
    if output.failures or failed_loads:
        print(
            f"\n[WARN] 파일 실패 {len(output.failures)}건, 적재 오류 시트 {len(failed_loads)}건",
            file=sys.stderr,
        )
    return 0


def _resolve_confirm_seconds(settings: dict[str, Any], args: argparse.Namespace) -> float:
    if args.confirm_seconds is not None:
        return float(args.confirm_seconds)
    return float(settings["pipeline"]["confirm_seconds"])


def stage_command(settings: dict[str, Any], args: argparse.Namespace) -> int:
    output_dir = Path(args.output_dir or settings["paths"]["output_dir"])
    try:
        summary_path = Path(args.summary) if args.summary else find_latest_summary(output_dir)
        bundle = build_staging_bundle(
            summary_path,
            org_id=str(args.org or "").strip() or None,
            default_org_id=str(settings["pipeline"]["org_id"]),
        )
        bundle_path = write_staging_bundle(bundle, output_dir)
    except StagingError as exc:
        raise ConfigError(str(exc)) from exc

    for line in format_bundle_lines(bundle):
        print(line)
    print(f"\n번들 저장: {bundle_path}")
    return 0


def sync_command(settings: dict[str, Any], args: argparse.Namespace) -> int:
    output_dir = Path(args.output_dir or settings["paths"]["output_dir"])
    bundle_path = Path(args.bundle) if args.bundle else output_dir / STAGING_BUNDLE_FILE
    try:
        bundle = load_staging_bundle(bundle_path)
    except StagingError as exc:
        raise ConfigError(str(exc)) from exc
    if str(args.org or "").strip():
        bundle.org_id = str(args.org).strip()

    print(f"- bundle: {bundle_path}")
    for line in format_bundle_lines(bundle):
        print(line)

    if not args.commit:
        print("\nDry-run only. --commit 을 추가하면 문서 저장소에 기록합니다.")
        return 0

    store = build_live_store(settings, org_id=bundle.org_id)
    wait_for_commit_confirmation(_resolve_confirm_seconds(settings, args), allow_errors=True)
    try:
        results = sync_staging_bundle(bundle, store)
    except StagingError as exc:
        raise ConfigError(str(exc)) from exc

    print()
    for result in results:
        suffix = f" [errors: {'; '.join(result.errors)}]" if result.errors else ""
        print(f"  {result.collection} [{result.sheet_name}]: {result.documents_written} docs{suffix}")
    written = sum(result.documents_written for result in results)
    print(f"\n동기화 완료: {written} docs")

    failed = [result for result in results if result.errors]
    if failed:
        print(f"\n[WARN] 적재 오류 시트 {len(failed)}건", file=sys.stderr)
    return 0


COMMANDS: dict[str, Callable[[dict[str, Any], argparse.Namespace], int]] = {
    "discover": run_command,
    "run": run_command,
    "stage": stage_command,
    "sync": sync_command,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config)
    dotenv_path = Path(".env")

    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        load_dotenv_file(dotenv_path)
        settings = load_yaml(config_path)
        validate_settings(settings, config_path)
    except ConfigError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1

    try:
        return COMMANDS[args.command](settings, args)
    except ConfigError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n[ERROR] 사용자에 의해 중단되었습니다.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
