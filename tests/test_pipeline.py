import json
import tempfile
import unittest
from pathlib import Path

from openpyxl import Workbook

from sheet_etl.discovery import SheetDiscovery
from sheet_etl.document_store import FileDocumentStore
from sheet_etl.excel_reader import ExcelWorkbookReader
from sheet_etl.extractor import RecordExtractor
from sheet_etl.llm_client import BudgetedLLMClient, LLMClientError
from sheet_etl.loader import Loader
from sheet_etl.pipeline import ETLPipeline, PipelineError, PipelineInput, validate_steps
from sheet_etl.schema_mapper import LLMSchemaMapper, StaticSchemaMapper, load_mapping_rules
from sheet_etl.sheet_profiles import SheetProfile, SheetProfileRegistry
from sheet_etl.validator import Validator

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


class _UnusedLLM:
    def chat(self, prompt, system=None, max_tokens=4096, temperature=0.1):
        raise LLMClientError("should not be called")


def _write_workbook(path: Path) -> None:
    wb = Workbook()
    guide = wb.active
    guide.title = "가이드"
    guide["A1"] = "작성 방법"
    guide["A2"] = "사업목록 시트에 입력하세요."

    projects = wb.create_sheet("사업목록")
    projects.append(["사업명", "비목", "계약금액"])
    projects.append(["A사업", "인건비", 1000])
    projects.append(["B사업", None, "2,000"])
    projects.append([None, "여비", None])
    wb.save(path)


class ETLPipelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_dir = Path(self._tmp.name)
        self.workbook_path = self.tmp_dir / "projects.xlsx"
        _write_workbook(self.workbook_path)
        self.output_dir = self.tmp_dir / "output"

        self.reader = ExcelWorkbookReader()
        registry = SheetProfileRegistry(
            [
                SheetProfile("가이드", skip=True, hint="작성 안내"),
                SheetProfile("사업목록", "projects", header_row_count=1, data_start_row=2),
            ]
        )
        self.llm_client = BudgetedLLMClient(_UnusedLLM(), enabled=False, max_calls=0)
        self.pipeline = ETLPipeline(
            discovery=SheetDiscovery(self.reader, registry),
            static_mapper=StaticSchemaMapper(load_mapping_rules(CONFIG_DIR / "mapping_rules.yaml")),
            extractor=RecordExtractor(self.reader, registry),
            validator=Validator(),
            loader=Loader(FileDocumentStore(self.output_dir), "mysc"),
            llm_client=self.llm_client,
        )

    def tearDown(self) -> None:
        self.reader.close()
        self._tmp.cleanup()

    def test_dry_run_end_to_end(self) -> None:
        output = self.pipeline.run(PipelineInput(files=[self.workbook_path]))

        self.assertEqual(len(output.manifests), 1)
        self.assertEqual(output.manifests[0].summary.skipped_sheets, 1)

        active = [m for m in output.mappings if not m.skipped]
        self.assertEqual(len(active), 1)
        self.assertEqual(
            [m.target_field for m in active[0].column_mappings],
            ["name", "budgetCategory", "contractAmount"],
        )

        self.assertEqual(len(output.extractions), 1)
        extraction = output.extractions[0]
        self.assertEqual(len(extraction.records), 3)
        self.assertEqual(extraction.errors, [])
        self.assertEqual(extraction.records[1]["contractAmount"], 2000.0)
        self.assertEqual(extraction.records[2]["_source"], {"sheet": "사업목록", "row": 3, "sheetRow": 4})

        report = output.validations[0]
        self.assertEqual(report.stats.errors, 0)
        self.assertEqual(len(report.cleaned_records), 3)

        self.assertEqual(len(output.loads), 1)
        load = output.loads[0]
        self.assertEqual(load.documents_written, 3)
        self.assertEqual(Path(load.dry_run_path), self.output_dir / "projects_사업목록.json")
        with open(load.dry_run_path, "r", encoding="utf-8") as f:
            saved = json.load(f)
        self.assertEqual([doc.get("name") for doc in saved], ["A사업", "B사업", None])
        self.assertTrue(all(doc["orgId"] == "mysc" for doc in saved))

        self.assertEqual(output.failures, [])
        self.assertEqual(output.llm_usage["calls_used"], 0)
        self.assertGreaterEqual(output.duration_ms, 0)

    def test_broken_file_is_recorded_and_others_continue(self) -> None:
        broken = self.tmp_dir / "broken.xlsx"
        broken.write_text("not a workbook", encoding="utf-8")

        output = self.pipeline.run(PipelineInput(files=[broken, self.workbook_path]))

        self.assertEqual(len(output.failures), 1)
        self.assertEqual(output.failures[0].file, "broken.xlsx")
        self.assertEqual(output.failures[0].stage, "discover")
        self.assertEqual(len(output.manifests), 1)
        self.assertEqual(sum(load.documents_written for load in output.loads), 3)

    def test_stops_after_last_requested_step(self) -> None:
        output = self.pipeline.run(PipelineInput(files=[self.workbook_path], steps=(1, 2)))

        self.assertEqual(len(output.mappings), 2)
        self.assertEqual(output.extractions, [])
        self.assertEqual(output.validations, [])
        self.assertEqual(output.loads, [])
        self.assertFalse(self.output_dir.exists())

    def test_run_preconditions(self) -> None:
        with self.assertRaises(PipelineError):
            self.pipeline.run(PipelineInput(files=[self.tmp_dir / "missing.xlsx"]))
        with self.assertRaises(PipelineError):
            self.pipeline.run(PipelineInput(files=[self.workbook_path], commit=True))
        with self.assertRaises(PipelineError):
            self.pipeline.run(PipelineInput(files=[self.workbook_path], use_llm=True))
        with self.assertRaises(PipelineError):
            self.pipeline.run(PipelineInput(files=[self.workbook_path], steps=(0, 1)))

    def test_llm_mode_uses_llm_mapper(self) -> None:
        self.pipeline.llm_mapper = LLMSchemaMapper(self.llm_client, sleep=lambda _: None)

        output = self.pipeline.run(PipelineInput(files=[self.workbook_path], use_llm=True))

        # 예산 소진(비활성) 상태라 매핑이 비고 시트 단위 오류로 남는다.
        active = [m for m in output.mappings if not m.skipped]
        self.assertEqual(active[0].column_mappings, [])
        self.assertIn("No column mappings", output.extractions[0].errors[0])
        self.assertEqual(output.validations, [])
        self.assertEqual(output.llm_usage["calls_blocked"], 1)


class ValidateStepsTests(unittest.TestCase):
    def test_normalizes_and_rejects(self) -> None:
        self.assertEqual(validate_steps([3, 1, 1]), (1, 3))
        with self.assertRaises(PipelineError):
            validate_steps([])
        with self.assertRaises(PipelineError):
            validate_steps([6])
        with self.assertRaises(PipelineError):
            validate_steps(["x"])


if __name__ == "__main__":
    unittest.main()
