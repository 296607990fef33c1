from __future__ import annotations

import csv
import math
from dataclasses import dataclass, field
from io import StringIO
from typing import Any, Callable, Iterable, Literal

from propai.core.errors import ValidationFailed


@dataclass(frozen=True)
class FieldRule:
    field: str
    required: bool
    type: Literal["string", "number"]
    max_length: int | None = None
    min_value: float | None = None
    max_value: float | None = None


VALIDATION_RULES: tuple[FieldRule, ...] = (
    FieldRule("name", required=True, type="string", max_length=100),
    FieldRule("address", required=True, type="string", max_length=200),
    FieldRule("property_type", required=True, type="string", max_length=50),
    FieldRule("price", required=False, type="number", min_value=0, max_value=999_999_999),
    FieldRule("size", required=False, type="number", min_value=0, max_value=10_000),
    FieldRule("rooms", required=False, type="number", min_value=0, max_value=100),
    FieldRule("description", required=False, type="string", max_length=1000),
)
RULES_BY_FIELD = {r.field: r for r in VALIDATION_RULES}
EXPECTED_HEADERS: tuple[str, ...] = tuple(r.field for r in VALIDATION_RULES)

TEMPLATE_SAMPLE_ROWS = (
    ("サンプル物件1", "東京都渋谷区1-1-1", "マンション", "150000", "25.5", "1", "駅徒歩5分の好立地物件"),
    ("サンプル物件2", "東京都新宿区2-2-2", "アパート", "80000", "18.0", "1", "学生向け物件"),
    ("サンプル物件3", "東京都品川区3-3-3", "戸建て", "300000", "85.0", "3", "ファミリー向け一戸建て"),
)


@dataclass(frozen=True)
class RowError:
    # 0 = header / file level, otherwise 1-based data row number
    row: int
    field: str
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"row": self.row, "field": self.field, "message": self.message}


@dataclass
class CSVParseResult:
    data: list[dict[str, Any]] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    total_rows: int = 0
    valid_rows: int = 0


@dataclass(frozen=True)
class FieldCheck:
    ok: bool
    value: Any = None
    error: str | None = None


def _fmt_bound(v: float) -> str:
    return str(int(v)) if float(v).is_integer() else str(v)


def validate_field(raw: str, rule: FieldRule) -> FieldCheck:
    value = (raw or "").strip()

    if not value:
        if rule.required:
            return FieldCheck(ok=False, error=f"{rule.field} is required")
        # optional + empty -> omitted, never zero
        return FieldCheck(ok=True, value=None)

    if rule.type == "number":
        try:
            num = float(value)
        except ValueError:
            return FieldCheck(ok=False, error=f"{rule.field} must be a number")
        if not math.isfinite(num):
            return FieldCheck(ok=False, error=f"{rule.field} must be a number")
        if rule.min_value is not None and num < rule.min_value:
            return FieldCheck(ok=False, error=f"{rule.field} must be at least {_fmt_bound(rule.min_value)}")
        if rule.max_value is not None and num > rule.max_value:
            return FieldCheck(ok=False, error=f"{rule.field} must be at most {_fmt_bound(rule.max_value)}")
        return FieldCheck(ok=True, value=num)

    if rule.max_length is not None and len(value) > rule.max_length:
        return FieldCheck(ok=False, error=f"{rule.field} must be at most {rule.max_length} characters")
    return FieldCheck(ok=True, value=value)


class StreamingCSVParser:
    """
    Row-at-a-time CSV validator.

    Reads from any iterable of text lines (an open file, a TextIOWrapper over an upload),
    so the whole file is never held in memory. Row failures are collected, never raised;
    only a malformed stream aborts the parse (ValidationFailed).
    """

    def __init__(
        self,
        *,
        on_progress: Callable[[int], None] | None = None,
        on_valid_row: Callable[[dict[str, Any]], None] | None = None,
        collect_rows: bool = True,
    ):
        self.on_progress = on_progress
        self.on_valid_row = on_valid_row
        # False when on_valid_row consumes rows itself (keeps memory flat)
        self.collect_rows = collect_rows

    def parse(self, lines: Iterable[str]) -> CSVParseResult:
        result = CSVParseResult()
        reader = csv.reader(lines, strict=True)
        headers: list[str] | None = None

        try:
            for values in reader:
                if not values or not any(v.strip() for v in values):
                    continue

                if headers is None:
                    headers = [h.strip().lstrip("\ufeff") for h in values]
                    missing = [h for h in EXPECTED_HEADERS if h not in headers]
                    if missing:
                        result.errors.append(
                            RowError(row=0, field="headers", message=f"Missing required columns: {', '.join(missing)}")
                        )
                        return result
                    continue

                result.total_rows += 1
                self._process_row(result, headers, values, result.total_rows)
                if self.on_progress:
                    self.on_progress(result.total_rows)
        except (csv.Error, UnicodeDecodeError) as e:
            raise ValidationFailed(
                "CSV parsing error",
                errors=[{"row": result.total_rows + 1, "field": "general", "message": f"Malformed CSV: {e}"}],
            ) from e

        if headers is None:
            result.errors.append(RowError(row=0, field="headers", message="CSV file has no header row"))
        return result

    def parse_text(self, text: str) -> CSVParseResult:
        return self.parse(StringIO(text, newline=""))

    def _process_row(self, result: CSVParseResult, headers: list[str], values: list[str], row_no: int) -> None:
        if len(values) != len(headers):
            result.errors.append(
                RowError(
                    row=row_no,
                    field="general",
                    message=f"Column count mismatch: expected {len(headers)}, got {len(values)}",
                )
            )
            return

        row: dict[str, Any] = {}
        failed = False
        for header, raw in zip(headers, values):
            rule = RULES_BY_FIELD.get(header)
            if rule is None:
                # unknown columns are dropped
                continue
            check = validate_field(raw, rule)
            if not check.ok:
                result.errors.append(RowError(row=row_no, field=header, message=check.error or "Invalid value"))
                failed = True
            elif check.value is not None:
                row[header] = check.value

        if failed:
            return

        result.valid_rows += 1
        if self.collect_rows:
            result.data.append(row)
        if self.on_valid_row:
            self.on_valid_row(row)


def parse_csv_text(text: str) -> CSVParseResult:
    return StreamingCSVParser().parse_text(text)


def generate_csv_template() -> str:
    buf = StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(EXPECTED_HEADERS)
    w.writerows(TEMPLATE_SAMPLE_ROWS)
    return buf.getvalue()
