import unittest
from pathlib import Path

from sheet_etl.excel_reader import ParsedSheet, WorkbookReadError
from sheet_etl.extractor import RecordExtractor, assign_field, build_column_resolver, extract_records
from sheet_etl.schema_mapper import ColumnMapping, SheetMapping
from sheet_etl.sheet_profiles import HeaderOverride, SheetProfile, SheetProfileRegistry


class _FakeParser:
    def __init__(self, parsed: ParsedSheet | None = None, fail: bool = False) -> None:
        self.parsed = parsed
        self.fail = fail
        self.calls: list[dict] = []

    def parse_sheet(self, path, sheet_name, override=None):
        self.calls.append({"path": path, "sheet_name": sheet_name, "override": override})
        if self.fail:
            raise WorkbookReadError(f"시트를 찾을 수 없습니다: {sheet_name}")
        return self.parsed


class _ExplodingRow(dict):
    def get(self, key, default=None):
        raise ValueError("broken cell")


def _tx_sheet() -> ParsedSheet:
    headers = ["거래일시", "입금합계 (원) > 금액", "출금합계 (원) > 금액", "상세 적요"]
    return ParsedSheet(
        name="1.사용내역",
        headers=headers,
        rows=[
            {"거래일시": "26.01.05", "입금합계 (원) > 금액": "1,000", "출금합계 (원) > 금액": None, "상세 적요": " 회의비 "},
            {"거래일시": None, "입금합계 (원) > 금액": None, "출금합계 (원) > 금액": "2,500원", "상세 적요": None},
        ],
        row_numbers=[4, 7],
    )


def _tx_mappings() -> list[ColumnMapping]:
    return [
        ColumnMapping("거래일시", "dateTime", "normalizeDate"),
        ColumnMapping("입금합계 > 금액", "amounts.depositAmount", "normalizeAmount"),
        ColumnMapping("출금합계 > 금액", "amounts.expenseAmount", "normalizeAmount"),
        ColumnMapping("상세적요", "memo"),
        ColumnMapping("No", "unmapped", note="순번"),
    ]


class ColumnResolverTests(unittest.TestCase):
    def test_resolution_order(self) -> None:
        resolver = build_column_resolver(_tx_sheet().headers, _tx_mappings())
        self.assertEqual(resolver["거래일시"], "거래일시")
        self.assertEqual(resolver["입금합계 > 금액"], "입금합계 (원) > 금액")
        self.assertEqual(resolver["출금합계 > 금액"], "출금합계 (원) > 금액")
        self.assertEqual(resolver["상세적요"], "상세 적요")
        self.assertNotIn("No", resolver)

    def test_unique_last_segment(self) -> None:
        resolver = build_column_resolver(["기본정보 > 사업명", "금액"], [ColumnMapping("사업명", "name")])
        self.assertEqual(resolver["사업명"], "기본정보 > 사업명")

    def test_assign_field_nested(self) -> None:
        record: dict = {"amounts": "x"}
        assign_field(record, "amounts.bankAmount", 10)
        assign_field(record, "amounts.vatIn", 1)
        assign_field(record, "memo", "m")
        self.assertEqual(record, {"amounts": {"bankAmount": 10, "vatIn": 1}, "memo": "m"})


class ExtractRecordsTests(unittest.TestCase):
    def test_records_carry_source_and_nested_fields(self) -> None:
        records, errors = extract_records(_tx_sheet(), _tx_mappings(), "1.사용내역")

        self.assertEqual(errors, [])
        self.assertEqual(len(records), 2)
        first = records[0]
        self.assertEqual(first["dateTime"], "2026-01-05")
        self.assertEqual(first["amounts"], {"depositAmount": 1000.0, "expenseAmount": None})
        self.assertEqual(first["memo"], "회의비")
        self.assertNotIn("unmapped", first)
        self.assertEqual(first["_source"], {"sheet": "1.사용내역", "row": 1, "sheetRow": 4})

        # 모든 값이 비어도 레코드는 유지된다.
        second = records[1]
        self.assertIsNone(second["dateTime"])
        self.assertIsNone(second["memo"])
        self.assertEqual(second["amounts"]["expenseAmount"], 2500.0)
        self.assertEqual(second["_source"]["sheetRow"], 7)

    def test_blank_header_column_is_not_matched_by_containment(self) -> None:
        # 빈 첫 열이 있는 통장내역: 빈 헤더는 col_1 키로 저장된다.
        parsed = ParsedSheet(
            name="통장내역",
            headers=["", "거래처명", "메모"],
            rows=[{"col_1": None, "거래처명": "A상사", "메모": "x"}],
            row_numbers=[2],
        )
        mappings = [ColumnMapping("거래처", "counterparty")]

        self.assertEqual(build_column_resolver(parsed.headers, mappings), {"거래처": "거래처명"})
        records, errors = extract_records(parsed, mappings, "통장내역")
        self.assertEqual(errors, [])
        self.assertEqual(records[0]["counterparty"], "A상사")

    def test_row_failure_is_recorded_and_others_continue(self) -> None:
        parsed = ParsedSheet(
            name="사업목록",
            headers=["사업명"],
            rows=[{"사업명": "A사업"}, _ExplodingRow(), {"사업명": "C사업"}],
            row_numbers=[2, 3, 4],
        )
        records, errors = extract_records(parsed, [ColumnMapping("사업명", "name")], "사업목록")

        self.assertEqual([r["name"] for r in records], ["A사업", "C사업"])
        self.assertEqual(errors, ["Row 2: broken cell"])
        self.assertEqual(records[1]["_source"]["row"], 3)


class RecordExtractorTests(unittest.TestCase):
    def _registry(self) -> SheetProfileRegistry:
        return SheetProfileRegistry([SheetProfile("사용내역", "transactions", header_row_count=3, data_start_row=4)])

    def _mapping(self, column_mappings=None, skipped=False) -> SheetMapping:
        return SheetMapping(
            source_path=Path("/data/book.xlsx"),
            sheet_name="1.사용내역",
            target_collection="transactions",
            column_mappings=_tx_mappings() if column_mappings is None else column_mappings,
            skipped=skipped,
        )

    def test_extract_sheet_uses_profile_override(self) -> None:
        parser = _FakeParser(_tx_sheet())
        result = RecordExtractor(parser, self._registry()).extract_sheet(self._mapping())

        self.assertEqual(
            parser.calls[0]["override"],
            HeaderOverride(header_row_count=3, header_start_row=None, data_start_row=4),
        )
        self.assertEqual(result.target_collection, "transactions")
        self.assertEqual(result.source_path, Path("/data/book.xlsx"))
        self.assertEqual(result.stats.to_dict(), {"total": 2, "extracted": 2, "errored": 0})

    def test_extract_filters_skipped_mappings(self) -> None:
        parser = _FakeParser(_tx_sheet())
        results = RecordExtractor(parser, self._registry()).extract(
            [self._mapping(), self._mapping(skipped=True)]
        )
        self.assertEqual(len(results), 1)
        self.assertEqual(len(parser.calls), 1)

    def test_skipped_mapping_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RecordExtractor(_FakeParser(), self._registry()).extract_sheet(self._mapping(skipped=True))

    def test_empty_mappings_report_error_without_reading(self) -> None:
        parser = _FakeParser(_tx_sheet())
        result = RecordExtractor(parser, self._registry()).extract_sheet(self._mapping(column_mappings=[]))

        self.assertEqual(parser.calls, [])
        self.assertEqual(result.records, [])
        self.assertEqual(len(result.errors), 1)
        self.assertIn("No column mappings", result.errors[0])

    def test_parse_failure_becomes_sheet_error(self) -> None:
        result = RecordExtractor(_FakeParser(fail=True), self._registry()).extract_sheet(self._mapping())

        self.assertEqual(result.records, [])
        self.assertEqual(result.errors, ["시트를 찾을 수 없습니다: 1.사용내역"])
        self.assertEqual(result.stats.errored, 1)


if __name__ == "__main__":
    unittest.main()
