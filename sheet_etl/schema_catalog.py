"""Target collection schema metadata (injected into LLM prompts)."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class FieldMeta:
    name: str
    type: str
    required: bool
    description: str
    enum_values: tuple[str, ...] = ()


@dataclass(frozen=True)
class CollectionSchema:
    collection: str
    doc_id_pattern: str
    description: str
    fields: tuple[FieldMeta, ...] = field(default_factory=tuple)

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]


COLLECTION_SCHEMAS: tuple[CollectionSchema, ...] = (
    CollectionSchema(
        collection="projects",
        doc_id_pattern="{projectId}",
        description="사업(프로젝트) 정보. 사업확보 현황판, 확정사업 관리 시트에서 추출.",
        fields=(
            FieldMeta("id", "string", True, "프로젝트 고유 ID"),
            FieldMeta("slug", "string", True, "URL-safe key"),
            FieldMeta("name", "string", True, "사업명"),
            FieldMeta(
                "status",
                "enum",
                True,
                "사업진행상태",
                ("CONTRACT_PENDING", "IN_PROGRESS", "COMPLETED", "COMPLETED_PENDING_PAYMENT"),
            ),
            FieldMeta(
                "type",
                "enum",
                True,
                "사업유형",
                ("DEV_COOPERATION", "CONSULTING", "SPACE_BIZ", "IMPACT_INVEST", "OTHER"),
            ),
            FieldMeta("phase", "enum", True, "사업단계", ("PROSPECT", "CONFIRMED")),
            FieldMeta("contractAmount", "number", False, "총 사업비(매출부가세 포함)"),
            FieldMeta("contractStart", "date", False, "계약 시작일"),
            FieldMeta("contractEnd", "date", False, "계약 종료일"),
            FieldMeta("settlementType", "enum", False, "정산유형", ("TYPE1", "TYPE2", "TYPE4")),
            FieldMeta("basis", "enum", False, "정산기준", ("SUPPLY_AMOUNT", "SUPPLY_PRICE")),
            FieldMeta("accountType", "enum", False, "통장유형", ("DEDICATED", "OPERATING", "NONE")),
            FieldMeta("clientOrg", "string", False, "발주기관(계약기관)"),
            FieldMeta("department", "string", False, "담당조직(센터)"),
            FieldMeta("teamName", "string", False, "사내기업팀"),
            FieldMeta("managerId", "string", False, "PM uid"),
            FieldMeta("managerName", "string", False, "메인 담당자"),
            FieldMeta("budgetCurrentYear", "number", False, "당해년도 총사업비"),
            FieldMeta("profitRate", "number", False, "수익률 (0~1)"),
            FieldMeta("profitAmount", "number", False, "수익금액"),
            FieldMeta("isSettled", "boolean", False, "정산완료 여부"),
            FieldMeta("budgetCategory", "string", False, "예산 비목"),
            FieldMeta("budgetSubCategory", "string", False, "예산 세목"),
            FieldMeta("budgetDetail", "string", False, "세세목/산정 내역"),
        ),
    ),
    CollectionSchema(
        collection="transactions",
        doc_id_pattern="{transactionId}",
        description="사용내역/지출대장 거래 레코드. 사용내역 시트, 그룹지출대장에서 추출.",
        fields=(
            FieldMeta("id", "string", True, "거래 ID"),
            FieldMeta("projectId", "string", True, "소속 프로젝트 ID"),
            FieldMeta("dateTime", "date", True, "거래일시 (ISO)"),
            FieldMeta("weekCode", "string", False, "해당 주차 코드 (2026-01-W1)"),
            FieldMeta("direction", "enum", True, "입출금 방향", ("IN", "OUT")),
            FieldMeta(
                "method",
                "enum",
                False,
                "결제수단",
                ("BANK_TRANSFER", "CARD", "CASH", "CHECK", "OTHER"),
            ),
            FieldMeta("cashflowCategory", "string", False, "cashflow 항목"),
            FieldMeta("budgetCategory", "string", False, "비목/세목"),
            FieldMeta("counterparty", "string", False, "거래처/지급처"),
            FieldMeta("memo", "string", False, "상세 적요"),
            FieldMeta("amounts.bankAmount", "number", False, "통장 금액"),
            FieldMeta("amounts.depositAmount", "number", False, "입금액"),
            FieldMeta("amounts.expenseAmount", "number", False, "출금액"),
            FieldMeta("amounts.vatIn", "number", False, "매입부가세"),
            FieldMeta("amounts.balanceAfter", "number", False, "거래후 잔액"),
        ),
    ),
    CollectionSchema(
        collection="cashflowWeekSheets",
        doc_id_pattern="{projectId}-{yearMonth}-w{weekNo}",
        description="주간 캐시플로 시트. cashflow 탭에서 추출. 행=항목, 열=주차.",
        fields=(
            FieldMeta("id", "string", True, "문서 ID"),
            FieldMeta("projectId", "string", True, "프로젝트 ID"),
            FieldMeta("yearMonth", "string", True, "년월 (2026-01)"),
            FieldMeta("weekNo", "number", True, "주차 번호 (1~5)"),
            FieldMeta("weekStart", "date", True, "주 시작일 (월요일)"),
            FieldMeta("weekEnd", "date", True, "주 종료일 (일요일)"),
            FieldMeta("projection", "object", False, "예상 금액 맵 (lineId -> number)"),
            FieldMeta("actual", "object", False, "실제 금액 맵 (lineId -> number)"),
        ),
    ),
    CollectionSchema(
        collection="members",
        doc_id_pattern="{uid}",
        description="조직 구성원. 전체 재직자명단 시트에서 추출.",
        fields=(
            FieldMeta("uid", "string", True, "사용자 ID"),
            FieldMeta("name", "string", True, "성명"),
            FieldMeta("email", "string", False, "이메일"),
            FieldMeta("role", "enum", True, "역할", ("admin", "pm", "finance", "viewer", "auditor")),
            FieldMeta("department", "string", False, "부서 (중분류)"),
            FieldMeta("title", "string", False, "직급"),
        ),
    ),
    CollectionSchema(
        collection="participationEntries",
        doc_id_pattern="{entryId}",
        description="참여율 배정 항목. 참여율/인력투입률 시트에서 추출.",
        fields=(
            FieldMeta("id", "string", True, "항목 ID"),
            FieldMeta("memberId", "string", False, "구성원 ID"),
            FieldMeta("memberName", "string", True, "구성원 이름"),
            FieldMeta("projectId", "string", False, "프로젝트 ID"),
            FieldMeta("projectName", "string", True, "사업명"),
            FieldMeta("rate", "number", True, "참여율 (0~100)"),
            FieldMeta("periodStart", "string", False, "참여 시작월 (YYYY-MM)"),
            FieldMeta("periodEnd", "string", False, "참여 종료월 (YYYY-MM)"),
        ),
    ),
)


def get_collection_schema(collection: str) -> CollectionSchema | None:
    for schema in COLLECTION_SCHEMAS:
        if schema.collection == collection:
            return schema
    return None


def _render_schema(schema: CollectionSchema) -> str:
    lines = [f"### {schema.collection}", schema.description, f"Doc ID: {schema.doc_id_pattern}"]
    for meta in schema.fields:
        line = f"  - {meta.name}: {meta.type}{' (필수)' if meta.required else ''} - {meta.description}"
        if meta.enum_values:
            line += f" [{', '.join(meta.enum_values)}]"
        lines.append(line)
    return "\n".join(lines)


def schema_to_prompt_text(collection: str | None = None) -> str:
    """
    Render schema text for prompts.

    When `collection` is given only that collection is rendered; unknown
    collections render as an empty string.
    """
    if collection is not None:
        schema = get_collection_schema(collection)
        return _render_schema(schema) if schema is not None else ""
    return "\n\n".join(_render_schema(schema) for schema in COLLECTION_SCHEMAS)
