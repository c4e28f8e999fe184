"""Five-step pipeline orchestrator: discover -> map -> extract -> validate -> load."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from sheet_etl.discovery import SheetDiscovery, SheetDiscoveryError, SheetManifest
from sheet_etl.extractor import ExtractionResult, RecordExtractor
from sheet_etl.loader import LoadResult, Loader
from sheet_etl.schema_mapper import SheetMapping
from sheet_etl.validator import ValidationReport, Validator

logger = logging.getLogger(__name__)

ALL_STEPS = (1, 2, 3, 4, 5)
STEP_TITLES = {
    1: "Sheet Discovery",
    2: "Schema Mapping",
    3: "Data Extraction",
    4: "Data Validation",
    5: "Document Load",
}


class PipelineError(RuntimeError):
    """Raised when a pipeline run cannot start."""


class SchemaMapper(Protocol):
    def map_manifests(self, manifests: list[SheetManifest]) -> list[SheetMapping]: ...


@dataclass
class PipelineInput:
    files: list[Path]
    commit: bool = False
    use_llm: bool = False
    org_id: str = "mysc"
    steps: tuple[int, ...] = ALL_STEPS
    allow_sheet_errors_on_commit: bool = False


@dataclass
class FileFailure:
    file: str
    stage: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"file": self.file, "stage": self.stage, "error": self.error}


@dataclass
class PipelineOutput:
    manifests: list[SheetManifest] = field(default_factory=list)
    mappings: list[SheetMapping] = field(default_factory=list)
    extractions: list[ExtractionResult] = field(default_factory=list)
    validations: list[ValidationReport] = field(default_factory=list)
    loads: list[LoadResult] = field(default_factory=list)
    failures: list[FileFailure] = field(default_factory=list)
    duration_ms: int = 0
    llm_usage: dict[str, Any] | None = None


def validate_steps(steps: Any) -> tuple[int, ...]:
    try:
        values = sorted({int(step) for step in steps})
    except (TypeError, ValueError) as exc:
        raise PipelineError(f"steps 값이 올바르지 않습니다: {steps}") from exc
    if not values:
        raise PipelineError("실행할 단계(steps)가 비어 있습니다.")
    invalid = [step for step in values if step not in ALL_STEPS]
    if invalid:
        raise PipelineError(f"steps는 1~5 범위여야 합니다: {invalid}")
    return tuple(values)


class ETLPipeline:
    """
    Runs the stages sequentially with injected collaborators.

    Stage N runs when N is in `steps`; the run returns right after a stage
    whose successor is not requested, so `--steps 1,2,3` never validates or
    loads. All intermediate artifacts stay on the output for reporting.
    """

    def __init__(
        self,
        discovery: SheetDiscovery,
        static_mapper: SchemaMapper,
        extractor: RecordExtractor,
        validator: Validator,
        loader: Loader,
        llm_mapper: SchemaMapper | None = None,
        llm_client: Any = None,
    ):
        self.discovery = discovery
        self.static_mapper = static_mapper
        self.llm_mapper = llm_mapper
        self.extractor = extractor
        self.validator = validator
        self.loader = loader
        self.llm_client = llm_client

    def run(self, pipeline_input: PipelineInput) -> PipelineOutput:
        steps = validate_steps(pipeline_input.steps)
        files = [Path(path) for path in pipeline_input.files]
        missing = [str(path) for path in files if not path.exists()]
        if missing:
            raise PipelineError(f"입력 파일이 없습니다: {', '.join(missing)}")
        if pipeline_input.commit != self.loader.store.live:
            raise PipelineError("commit 모드와 loader store 구성이 일치하지 않습니다.")
        if pipeline_input.use_llm and self.llm_mapper is None:
            raise PipelineError("LLM 모드에는 llm_mapper가 필요합니다.")

        started = time.monotonic()
        output = PipelineOutput()
        try:
            self._run_stages(pipeline_input, files, steps, output)
        finally:
            output.duration_ms = int((time.monotonic() - started) * 1000)
            usage = getattr(self.llm_client, "usage", None)
            if callable(usage):
                output.llm_usage = usage().to_dict()
        return output

    def _run_stages(
        self,
        pipeline_input: PipelineInput,
        files: list[Path],
        steps: tuple[int, ...],
        output: PipelineOutput,
    ) -> None:
        if 1 in steps:
            self._banner(1)
            for path in files:
                try:
                    output.manifests.append(self.discovery.discover(path))
                except SheetDiscoveryError as exc:
                    logger.error("[Discover] %s", exc)
                    output.failures.append(FileFailure(file=path.name, stage="discover", error=str(exc)))
            total = sum(m.summary.total_sheets for m in output.manifests)
            mappable = sum(m.summary.mappable_sheets for m in output.manifests)
            logger.info("Step 1 complete: %d sheets discovered, %d mappable", total, mappable)
        if 2 not in steps:
            return

        mode = "LLM" if pipeline_input.use_llm else "Static Rules"
        self._banner(2, mode)
        mapper = self.llm_mapper if pipeline_input.use_llm else self.static_mapper
        output.mappings = mapper.map_manifests(output.manifests)
        active = [m for m in output.mappings if not m.skipped]
        logger.info(
            "Step 2 complete: %d sheets mapped, %d skipped",
            len(active),
            len(output.mappings) - len(active),
        )
        if 3 not in steps:
            return

        self._banner(3)
        output.extractions = self.extractor.extract(output.mappings)
        total_records = sum(len(e.records) for e in output.extractions)
        logger.info(
            "Step 3 complete: %d records extracted from %d sheets",
            total_records,
            len(output.extractions),
        )
        if 4 not in steps:
            return

        self._banner(4)
        output.validations = self.validator.validate(output.extractions, use_llm=pipeline_input.use_llm)
        clean = sum(len(v.cleaned_records) for v in output.validations)
        issues = sum(len(v.issues) for v in output.validations)
        logger.info("Step 4 complete: %d clean records, %d issues found", clean, issues)
        if 5 not in steps:
            return

        self._banner(5, "LIVE" if pipeline_input.commit else "DRY-RUN")
        output.loads = self.loader.load(
            output.validations,
            org_id=pipeline_input.org_id,
            allow_sheet_errors_on_commit=pipeline_input.allow_sheet_errors_on_commit,
        )
        written = sum(load.documents_written for load in output.loads)
        logger.info(
            "Step 5 complete: %d documents %s",
            written,
            "written to store" if pipeline_input.commit else "saved as dry-run JSON",
        )

    @staticmethod
    def _banner(step: int, detail: str | None = None) -> None:
        title = STEP_TITLES[step]
        if detail:
            title = f"{title} ({detail})"
        logger.info("=" * 60)
        logger.info("  Step %d/5: %s", step, title)
        logger.info("=" * 60)
