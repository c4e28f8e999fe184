import tempfile
import unittest
from pathlib import Path

from sheet_etl.sheet_profiles import HeaderOverride, SheetProfile, SheetProfileError, SheetProfileRegistry

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


class SheetProfileRegistryTests(unittest.TestCase):
    def test_longest_pattern_wins(self) -> None:
        registry = SheetProfileRegistry(
            [
                SheetProfile("사용내역", "transactions"),
                SheetProfile("사용내역(통장내역기준취소내역,불인정포함)", "", skip=True),
            ]
        )
        profile = registry.find_profile("4.사용내역(통장내역기준취소내역,불인정포함)")
        self.assertIsNotNone(profile)
        self.assertEqual(profile.name_pattern, "사용내역(통장내역기준취소내역,불인정포함)")
        self.assertTrue(profile.skip)

        short = registry.find_profile("4.사용내역")
        self.assertEqual(short.target_collection, "transactions")

    def test_equal_length_tie_uses_declaration_order(self) -> None:
        registry = SheetProfileRegistry(
            [
                SheetProfile("예산A", "projects"),
                SheetProfile("A총괄", "transactions"),
            ]
        )
        self.assertEqual(registry.find_profile("예산A총괄").target_collection, "projects")

    def test_no_match_returns_none(self) -> None:
        registry = SheetProfileRegistry([SheetProfile("사용내역", "transactions")])
        self.assertIsNone(registry.find_profile("Sheet1"))
        self.assertIsNone(registry.overrides_for("Sheet1"))

    def test_overrides_for(self) -> None:
        registry = SheetProfileRegistry(
            [
                SheetProfile("사용내역", "transactions", header_row_count=3, data_start_row=4),
                SheetProfile("가이드", skip=True),
            ]
        )
        self.assertEqual(
            registry.overrides_for("1.사용내역"),
            HeaderOverride(header_row_count=3, header_start_row=None, data_start_row=4),
        )
        self.assertIsNone(registry.overrides_for("작성 가이드"))

    def test_bundled_yaml_loads(self) -> None:
        registry = SheetProfileRegistry.from_yaml(CONFIG_DIR / "sheet_profiles.yaml")
        profile = registry.find_profile("통장내역")
        self.assertEqual(profile.target_collection, "transactions")
        self.assertEqual(profile.header_start_row, 8)
        self.assertTrue(registry.find_profile("대시보드 작성 가이드").skip)

    def test_from_yaml_rejects_missing_target(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "profiles.yaml"
            path.write_text("profiles:\n  - name_pattern: 시트\n", encoding="utf-8")
            with self.assertRaises(SheetProfileError):
                SheetProfileRegistry.from_yaml(path)

    def test_from_yaml_rejects_invalid_row_number(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "profiles.yaml"
            path.write_text(
                "profiles:\n  - name_pattern: 시트\n    target_collection: projects\n    data_start_row: 0\n",
                encoding="utf-8",
            )
            with self.assertRaises(SheetProfileError):
                SheetProfileRegistry.from_yaml(path)

    def test_from_yaml_requires_profiles_list(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "profiles.yaml"
            path.write_text("other: 1\n", encoding="utf-8")
            with self.assertRaises(SheetProfileError):
                SheetProfileRegistry.from_yaml(path)
            with self.assertRaises(SheetProfileError):
                SheetProfileRegistry.from_yaml(Path(tmp_dir) / "missing.yaml")


if __name__ == "__main__":
    unittest.main()
