import unittest
from pathlib import Path

from sheet_etl.discovery import SheetDiscovery, SheetDiscoveryError
from sheet_etl.excel_reader import SheetInfo, WorkbookReadError
from sheet_etl.sheet_profiles import SheetProfile, SheetProfileRegistry


def _info(name: str, header_row_count: int = 1, data_start_row: int = 2, merged: int = 0) -> SheetInfo:
    return SheetInfo(
        name=name,
        row_count=10,
        col_count=4,
        merged_cell_count=merged,
        merged_ranges=(),
        header_rows=(("a", "b", "c", "d"),),
        sample_rows=(),
        data_start_row=data_start_row,
        header_row_count=header_row_count,
    )


class _FakeReader:
    def __init__(self, infos: list[SheetInfo], fail: bool = False) -> None:
        self.infos = infos
        self.fail = fail
        self.calls: list[dict] = []

    def discover_sheets(self, path, overrides=None, sheet_names=None):
        self.calls.append({"path": path, "overrides": overrides, "sheet_names": sheet_names})
        if self.fail:
            raise WorkbookReadError("broken")
        if not overrides:
            return list(self.infos)
        return [
            _info(
                name,
                header_row_count=override.header_row_count,
                data_start_row=override.data_start_row,
            )
            for name, override in overrides.items()
        ]


def _registry() -> SheetProfileRegistry:
    return SheetProfileRegistry(
        [
            SheetProfile("가이드", skip=True, hint="안내용"),
            SheetProfile("사용내역", "transactions", header_row_count=3, data_start_row=4),
            SheetProfile("사업현황", "projects"),
        ]
    )


class SheetDiscoveryTests(unittest.TestCase):
    def test_single_pass_when_no_overrides(self) -> None:
        reader = _FakeReader([_info("사업현황", merged=3), _info("Sheet9")])
        manifest = SheetDiscovery(reader, _registry()).discover(Path("/tmp/book.xlsx"))

        self.assertEqual(len(reader.calls), 1)
        self.assertEqual(manifest.file_name, "book.xlsx")
        self.assertEqual(manifest.sheet_names(), ["사업현황", "Sheet9"])
        self.assertEqual(manifest.summary.total_sheets, 2)
        self.assertEqual(manifest.summary.mappable_sheets, 1)
        self.assertEqual(manifest.summary.skipped_sheets, 0)
        self.assertEqual(manifest.summary.total_merged_cells, 3)

        unclassified = manifest.entries[1]
        self.assertFalse(unclassified.is_mappable)
        self.assertFalse(unclassified.is_skipped)
        self.assertEqual(manifest.to_dict()["sheets"][1]["status"], "unclassified")

    def test_override_sheets_are_rescanned(self) -> None:
        reader = _FakeReader([_info("가이드"), _info("1.사용내역"), _info("사업현황")])
        manifest = SheetDiscovery(reader, _registry()).discover("book.xlsx")

        self.assertEqual(len(reader.calls), 2)
        self.assertEqual(reader.calls[1]["sheet_names"], ["1.사용내역"])
        self.assertEqual(manifest.sheet_names(), ["가이드", "1.사용내역", "사업현황"])

        rescanned = manifest.entries[1]
        self.assertEqual(rescanned.info.header_row_count, 3)
        self.assertEqual(rescanned.info.data_start_row, 4)
        self.assertEqual(rescanned.target_collection, "transactions")

        self.assertTrue(manifest.entries[0].is_skipped)
        self.assertEqual(manifest.entries[0].hint, "안내용")
        self.assertEqual(manifest.summary.skipped_sheets, 1)
        self.assertEqual(manifest.summary.mappable_sheets, 2)

    def test_reader_failure_raises_discovery_error(self) -> None:
        reader = _FakeReader([], fail=True)
        with self.assertRaises(SheetDiscoveryError):
            SheetDiscovery(reader, _registry()).discover("book.xlsx")


if __name__ == "__main__":
    unittest.main()
