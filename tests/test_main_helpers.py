import contextlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml
from openpyxl import Workbook

from main import (
    STAGING_BUNDLE_FILE,
    ConfigError,
    build_pipeline,
    load_dotenv_file,
    load_yaml,
    main,
    parse_args,
    parse_steps_option,
    resolve_input_files,
    validate_settings,
    wait_for_commit_confirmation,
)
from sheet_etl.document_store import FirestoreDocumentStore

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


class _FakeResponse:
    status_code = 200
    text = "{}"


class _RecordingSession:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(json)
        return _FakeResponse()


def _settings(output_dir: str = "output") -> dict:
    return {
        "llm": {"gateway_url": "http://localhost:4141", "model": "test-model", "max_calls": 3},
        "store": {"project_id": "", "database": "(default)", "batch_size": 500},
        "pipeline": {"org_id": "mysc", "steps": "1,2,3,4,5", "confirm_seconds": 0},
        "paths": {
            "output_dir": output_dir,
            "sheet_profiles": str(CONFIG_DIR / "sheet_profiles.yaml"),
            "mapping_rules": str(CONFIG_DIR / "mapping_rules.yaml"),
        },
    }


class MainHelperTests(unittest.TestCase):
    def test_parse_steps_option(self) -> None:
        self.assertEqual(parse_steps_option(""), (1, 2, 3, 4, 5))
        self.assertEqual(parse_steps_option("3, 1,3"), (1, 3))
        with self.assertRaises(ConfigError):
            parse_steps_option("1,6")
        with self.assertRaises(ConfigError):
            parse_steps_option("a")
        with self.assertRaises(ConfigError):
            parse_steps_option(",")

    def test_parse_args_run_options(self) -> None:
        args = parse_args(["run", "a.xlsx", "b.xlsx", "--commit", "--llm", "--org", "acme", "--steps", "1,2"])
        self.assertEqual(args.command, "run")
        self.assertEqual(args.files, ["a.xlsx", "b.xlsx"])
        self.assertTrue(args.commit)
        self.assertTrue(args.llm)
        self.assertFalse(args.allow_errors)
        self.assertEqual(args.org, "acme")
        self.assertEqual(args.steps, "1,2")

        discover = parse_args(["discover", "a.xlsx"])
        self.assertEqual(discover.command, "discover")
        self.assertFalse(hasattr(discover, "commit"))

    def test_parse_args_stage_and_sync(self) -> None:
        stage = parse_args(["stage", "--summary", "out/pipeline-summary-1.json", "--org", "acme"])
        self.assertEqual(stage.command, "stage")
        self.assertEqual(stage.summary, "out/pipeline-summary-1.json")
        self.assertEqual(stage.org, "acme")
        self.assertFalse(hasattr(stage, "files"))

        sync = parse_args(["sync", "--commit", "--confirm-seconds", "0"])
        self.assertEqual(sync.command, "sync")
        self.assertEqual(sync.bundle, "")
        self.assertTrue(sync.commit)
        self.assertEqual(sync.confirm_seconds, 0.0)

    def test_validate_settings(self) -> None:
        validate_settings(_settings(), Path("settings.yaml"))

        broken = _settings()
        del broken["paths"]["mapping_rules"]
        with self.assertRaises(ConfigError):
            validate_settings(broken, Path("settings.yaml"))

        broken = _settings()
        broken["store"]["batch_size"] = 501
        with self.assertRaises(ConfigError):
            validate_settings(broken, Path("settings.yaml"))

        broken = _settings()
        broken["llm"]["max_calls"] = -1
        with self.assertRaises(ConfigError):
            validate_settings(broken, Path("settings.yaml"))

        broken = _settings()
        broken["pipeline"]["org_id"] = " "
        with self.assertRaises(ConfigError):
            validate_settings(broken, Path("settings.yaml"))

    def test_bundled_settings_are_valid(self) -> None:
        path = CONFIG_DIR / "settings.yaml"
        validate_settings(load_yaml(path), path)

    def test_load_yaml_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            with self.assertRaises(ConfigError):
                load_yaml(Path(tmp_dir) / "missing.yaml")
            path = Path(tmp_dir) / "list.yaml"
            path.write_text("- a\n- b\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_yaml(path)

    def test_load_dotenv_file_keeps_existing_values(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / ".env"
            path.write_text(
                "# comment\nSHEET_ETL_A='quoted'\nSHEET_ETL_B=new\nSHEET_ETL_C=filled\nnot a pair\n",
                encoding="utf-8",
            )
            with mock.patch.dict(os.environ, {"SHEET_ETL_B": "kept", "SHEET_ETL_C": ""}):
                load_dotenv_file(path)
                self.assertEqual(os.environ["SHEET_ETL_A"], "quoted")
                self.assertEqual(os.environ["SHEET_ETL_B"], "kept")
                self.assertEqual(os.environ["SHEET_ETL_C"], "filled")

    def test_resolve_input_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            existing = Path(tmp_dir) / "a.xlsx"
            existing.write_bytes(b"")
            self.assertEqual(resolve_input_files([str(existing)]), [existing.resolve()])
            with self.assertRaises(ConfigError):
                resolve_input_files([str(existing), str(Path(tmp_dir) / "b.xlsx")])

    def test_build_pipeline_requires_store_credentials_for_commit(self) -> None:
        with mock.patch.dict(os.environ, {"FIRESTORE_PROJECT_ID": "", "FIRESTORE_ACCESS_TOKEN": ""}):
            with self.assertRaises(ConfigError):
                build_pipeline(_settings(), commit=True, use_llm=False, org_id="mysc", output_dir=Path("out"))

    def test_build_pipeline_live_and_llm(self) -> None:
        env = {"FIRESTORE_PROJECT_ID": "proj", "FIRESTORE_ACCESS_TOKEN": "token", "LLM_API_KEY": ""}
        with mock.patch.dict(os.environ, env):
            pipeline, reader = build_pipeline(
                _settings(), commit=True, use_llm=True, org_id="acme", output_dir=Path("out"), allow_errors=True
            )
        self.assertTrue(pipeline.loader.store.live)
        self.assertEqual(pipeline.loader.org_id, "acme")
        self.assertTrue(pipeline.loader.allow_sheet_errors_on_commit)
        self.assertIsNotNone(pipeline.llm_mapper)
        self.assertEqual(pipeline.llm_client.usage().max_calls, 3)
        self.assertTrue(pipeline.validator.use_llm)
        reader.close()

    def test_build_pipeline_wraps_bad_rules(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            rules = Path(tmp_dir) / "rules.yaml"
            rules.write_text("projects: not-a-list\n", encoding="utf-8")
            settings = _settings()
            settings["paths"]["mapping_rules"] = str(rules)
            with self.assertRaises(ConfigError):
                build_pipeline(settings, commit=False, use_llm=False, org_id="mysc", output_dir=Path(tmp_dir))

    def test_wait_for_commit_confirmation(self) -> None:
        sleeps: list[float] = []
        with contextlib.redirect_stdout(io.StringIO()) as out:
            wait_for_commit_confirmation(5, allow_errors=False, sleep=sleeps.append)
            wait_for_commit_confirmation(0, allow_errors=True, sleep=sleeps.append)
        self.assertEqual(sleeps, [5])
        self.assertEqual(out.getvalue().count("Strict mode"), 1)


class MainEntrypointTests(unittest.TestCase):
    def _prepare(self, tmp: Path) -> tuple[Path, Path, Path]:
        workbook = tmp / "members.xlsx"
        wb = Workbook()
        ws = wb.active
        ws.title = "전체 재직자명단"
        ws.append(["성명", "직급", "이메일"])
        ws.append(["홍길동", "매니저", "hong@example.com"])
        ws.append([None, "인턴", "intern@example.com"])
        wb.save(workbook)

        output_dir = tmp / "output"
        config_path = tmp / "settings.yaml"
        config_path.write_text(yaml.safe_dump(_settings(str(output_dir)), allow_unicode=True), encoding="utf-8")
        return workbook, config_path, output_dir

    def test_missing_config_returns_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            err = io.StringIO()
            with contextlib.redirect_stderr(err):
                code = main(["discover", "a.xlsx", "--config", str(Path(tmp_dir) / "none.yaml")])
        self.assertEqual(code, 1)
        self.assertIn("[ERROR]", err.getvalue())

    def test_dry_run_writes_reports(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            workbook, config_path, output_dir = self._prepare(Path(tmp_dir))

            with contextlib.redirect_stdout(io.StringIO()) as out, contextlib.redirect_stderr(io.StringIO()):
                code = main(["run", str(workbook), "--config", str(config_path)])

            self.assertEqual(code, 0)
            self.assertIn("PIPELINE SUMMARY", out.getvalue())
            self.assertEqual(len(list(output_dir.glob("pipeline-summary-*.json"))), 1)
            self.assertEqual(len(list(output_dir.glob("validation-issues-*.xlsx"))), 1)
            dry_run_files = list(output_dir.glob("members_*.json"))
            self.assertEqual(len(dry_run_files), 1)

    def test_stage_then_sync_dry_run_and_commit(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            workbook, config_path, output_dir = self._prepare(Path(tmp_dir))
            with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
                self.assertEqual(main(["run", str(workbook), "--config", str(config_path), "--org", "acme"]), 0)

            with contextlib.redirect_stdout(io.StringIO()) as out, contextlib.redirect_stderr(io.StringIO()):
                code = main(["stage", "--config", str(config_path)])
            self.assertEqual(code, 0)
            self.assertIn("- orgId: acme", out.getvalue())
            bundle = json.loads((output_dir / STAGING_BUNDLE_FILE).read_text(encoding="utf-8"))
            self.assertEqual(bundle["orgId"], "acme")
            self.assertEqual(bundle["stats"]["totalDocuments"], 1)
            self.assertEqual(list(bundle["collections"]), ["members"])

            # --commit 없이: 계획만 출력하고 저장소를 만들지 않는다.
            with mock.patch("main.build_live_store") as build_store:
                with contextlib.redirect_stdout(io.StringIO()) as out, contextlib.redirect_stderr(io.StringIO()):
                    code = main(["sync", "--config", str(config_path)])
            self.assertEqual(code, 0)
            self.assertIn("Dry-run only", out.getvalue())
            build_store.assert_not_called()

            session = _RecordingSession()
            store = FirestoreDocumentStore("proj", "token", org_id="acme", session=session)
            with mock.patch("main.build_live_store", return_value=store) as build_store:
                with contextlib.redirect_stdout(io.StringIO()) as out, contextlib.redirect_stderr(io.StringIO()):
                    code = main(["sync", "--config", str(config_path), "--commit", "--confirm-seconds", "0"])
            self.assertEqual(code, 0)
            build_store.assert_called_once()
            self.assertEqual(build_store.call_args.kwargs["org_id"], "acme")
            self.assertIn("동기화 완료: 1 docs", out.getvalue())
            names = [write["update"]["name"] for write in session.calls[0]["writes"]]
            self.assertTrue(all("/documents/orgs/acme/members/" in name for name in names))

    def test_stage_without_summary_returns_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            _, config_path, output_dir = self._prepare(Path(tmp_dir))
            output_dir.mkdir()
            err = io.StringIO()
            with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(err):
                code = main(["stage", "--config", str(config_path)])
        self.assertEqual(code, 1)
        self.assertIn("pipeline-summary", err.getvalue())


if __name__ == "__main__":
    unittest.main()
