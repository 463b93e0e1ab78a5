"""
Statement parser: CSV / TSV / JSON files into normalized StatementRows.

Columns are mapped either explicitly (column_mappings: source column ->
StatementRow field) or through a header alias table. Layout detection for
arbitrary free-text statements is out of scope.
"""

import csv
import io
import json
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Optional, Union

from dateutil import parser as dateutil_parser

from royalties.matching.normalize import normalize_identifier
from royalties.models.enums import RightType, StatementFormat, UsageType
from royalties.pipeline.amount_parser import parse_amount
from royalties.schemas.statements import ParseResult, StatementRow

# Header alias -> StatementRow field
COLUMN_ALIASES: dict[str, str] = {
    # Title
    "title": "work_title",
    "work_title": "work_title",
    "song_title": "work_title",
    "song": "work_title",
    "work": "work_title",
    "track": "work_title",
    "track_title": "work_title",
    "composition": "work_title",
    # Writer
    "writer": "writer_name",
    "writer_name": "writer_name",
    "writers": "writer_name",
    "composer": "writer_name",
    "author": "writer_name",
    "songwriter": "writer_name",
    "writer_first_name": "writer_first_name",
    "writer_last_name": "writer_last_name",
    # Identifiers
    "iswc": "iswc",
    "iswc_code": "iswc",
    "isrc": "isrc",
    "isrc_code": "isrc",
    "recording_id": "isrc",
    "work_code": "work_code",
    "publisher_work_id": "work_code",
    "society_work_id": "work_code",
    "internal_id": "work_code",
    "publisher_code": "publisher_code",
    # Performer
    "performer": "performer_name",
    "artist": "performer_name",
    "performing_artist": "performer_name",
    # Money
    "amount": "amount",
    "royalty": "amount",
    "royalty_amount": "amount",
    "earnings": "amount",
    "payment": "amount",
    "net_amount": "amount",
    "gross_amount": "amount",
    "currency": "currency",
    "currency_code": "currency",
    # Usage
    "plays": "usage_count",
    "streams": "usage_count",
    "usage_count": "usage_count",
    "units": "usage_count",
    "right_type": "right_type",
    "rights_type": "right_type",
    "right": "right_type",
    "usage_type": "usage_type",
    "usage": "usage_type",
    "territory": "territory",
    "country": "territory",
    "region": "territory",
    "period_start": "period_start",
    "start_date": "period_start",
    "period_end": "period_end",
    "end_date": "period_end",
}

STATEMENT_FIELDS = set(COLUMN_ALIASES.values())

RIGHT_TYPE_ALIASES = {
    "performance": RightType.PERFORMANCE, "perf": RightType.PERFORMANCE, "pr": RightType.PERFORMANCE,
    "mechanical": RightType.MECHANICAL, "mech": RightType.MECHANICAL, "mr": RightType.MECHANICAL,
    "sync": RightType.SYNC, "synchronization": RightType.SYNC, "sr": RightType.SYNC,
    "print": RightType.PRINT,
}

USAGE_TYPE_ALIASES = {
    "streaming": UsageType.STREAMING, "stream": UsageType.STREAMING,
    "download": UsageType.DOWNLOAD, "downloads": UsageType.DOWNLOAD,
    "broadcast": UsageType.BROADCAST, "radio": UsageType.BROADCAST, "tv": UsageType.BROADCAST,
    "live": UsageType.LIVE, "concert": UsageType.LIVE,
    "background": UsageType.BACKGROUND,
}

_HEADER_KEY = re.compile(r"[^a-z0-9]+")


def header_key(header: str) -> str:
    return _HEADER_KEY.sub("_", header.strip().lower()).strip("_")


def parse_period_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if re.fullmatch(r"\d{8}", text):
        text = f"{text[:4]}-{text[4:6]}-{text[6:]}"
    try:
        return dateutil_parser.parse(text, yearfirst=True).date()
    except (ValueError, OverflowError):
        return None


class StatementParser(ABC):
    """Turns raw statement file content into normalized rows."""

    @abstractmethod
    def parse(
        self,
        content: Union[bytes, str],
        filename: str,
        column_mappings: Optional[dict[str, str]] = None,
    ) -> ParseResult:
        ...


class CsvStatementParser(StatementParser):
    """Delimited text (comma, tab, semicolon, pipe) and JSON arrays of objects."""

    def parse(
        self,
        content: Union[bytes, str],
        filename: str,
        column_mappings: Optional[dict[str, str]] = None,
    ) -> ParseResult:
        text = content.decode("utf-8-sig") if isinstance(content, bytes) else content
        fmt = self.detect_format(filename, text)
        errors: list[str] = []
        warnings: list[str] = []

        if fmt == StatementFormat.JSON:
            try:
                records = self._read_json(text)
            except (json.JSONDecodeError, ValueError) as e:
                return ParseResult(format=fmt.value, errors=[f"Invalid JSON: {e}"])
        else:
            records = self._read_delimited(text, fmt)

        headers = list(records[0].keys()) if records else []
        mapping = self._build_mapping(headers, column_mappings, warnings)
        if headers and "work_title" not in mapping.values() and not (
            {"iswc", "isrc", "work_code"} & set(mapping.values())
        ):
            warnings.append("No title or identifier column detected")
        if headers and "amount" not in mapping.values():
            errors.append("No amount column detected")
            return ParseResult(headers=headers, format=fmt.value, errors=errors, warnings=warnings)

        rows: list[StatementRow] = []
        for index, record in enumerate(records, start=1):
            if not any(str(v).strip() for v in record.values() if v is not None):
                continue
            row = self._build_row(index, record, mapping, errors)
            if row is not None:
                rows.append(row)

        return ParseResult(
            rows=rows, headers=headers, format=fmt.value, errors=errors, warnings=warnings
        )

    @staticmethod
    def detect_format(filename: str, text: str) -> StatementFormat:
        lower = (filename or "").lower()
        if lower.endswith(".json"):
            return StatementFormat.JSON
        if lower.endswith(".tsv"):
            return StatementFormat.TSV
        if lower.endswith((".csv", ".txt")):
            return StatementFormat.CSV
        if text.lstrip().startswith(("[", "{")):
            return StatementFormat.JSON
        return StatementFormat.CSV

    @staticmethod
    def _read_json(text: str) -> list[dict]:
        data = json.loads(text)
        if isinstance(data, dict):
            data = data.get("rows") or data.get("data") or [data]
        if not isinstance(data, list):
            raise ValueError("expected an array of objects")
        return [r for r in data if isinstance(r, dict)]

    @staticmethod
    def _read_delimited(text: str, fmt: StatementFormat) -> list[dict]:
        if fmt == StatementFormat.TSV:
            delimiter = "\t"
        else:
            first_line = text.split("\n", 1)[0]
            delimiter = max((",", "\t", ";", "|"), key=first_line.count)
        reader = csv.DictReader(io.StringIO(text), delimiter=delimiter, skipinitialspace=True)
        return [
            {(k or "").strip(): (v.strip() if isinstance(v, str) else v) for k, v in rec.items() if k}
            for rec in reader
        ]

    @staticmethod
    def _build_mapping(
        headers: list[str],
        column_mappings: Optional[dict[str, str]],
        warnings: list[str],
    ) -> dict[str, str]:
        """Source header -> StatementRow field."""
        if column_mappings:
            mapping = {}
            for source, target in column_mappings.items():
                if target not in STATEMENT_FIELDS:
                    warnings.append(f"Unknown target field '{target}' for column '{source}'")
                elif source not in headers:
                    warnings.append(f"Mapped column '{source}' not present in file")
                else:
                    mapping[source] = target
            return mapping

        mapping: dict[str, str] = {}
        taken: set[str] = set()
        for header in headers:
            target = COLUMN_ALIASES.get(header_key(header))
            if target and target not in taken:
                mapping[header] = target
                taken.add(target)
        # Partial matches ("Song Title (Original)") for fields still unmapped
        for header in headers:
            if header in mapping:
                continue
            key = header_key(header)
            for alias, target in COLUMN_ALIASES.items():
                if target not in taken and len(alias) > 3 and alias in key:
                    mapping[header] = target
                    taken.add(target)
                    break
        return mapping

    def _build_row(
        self, row_number: int, record: dict, mapping: dict[str, str], errors: list[str]
    ) -> Optional[StatementRow]:
        fields: dict[str, Any] = {}
        for source, target in mapping.items():
            value = record.get(source)
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            fields[target] = value

        amount_result = parse_amount(fields.pop("amount", None))
        if amount_result.amount is None:
            errors.append(f"Row {row_number}: unparseable amount '{amount_result.raw_text}'")
            return None

        first = _text(fields.get("writer_first_name"))
        last = _text(fields.get("writer_last_name"))
        writer = _text(fields.get("writer_name"))
        if writer and not (first or last) and writer.count(",") == 1:
            last, first = (p.strip() for p in writer.split(","))
            writer = f"{first} {last}".strip()

        usage_count = None
        if "usage_count" in fields:
            count = parse_amount(fields["usage_count"]).amount
            usage_count = int(count) if count is not None else None

        return StatementRow(
            row_number=row_number,
            raw_data={k: _jsonable(v) for k, v in record.items()},
            work_title=_text(fields.get("work_title")),
            writer_name=writer,
            writer_first_name=first,
            writer_last_name=last,
            performer_name=_text(fields.get("performer_name")),
            iswc=normalize_identifier(_text(fields.get("iswc"))) or None,
            isrc=normalize_identifier(_text(fields.get("isrc"))) or None,
            work_code=_text(fields.get("work_code")),
            publisher_code=_text(fields.get("publisher_code")),
            amount=amount_result.amount,
            currency=(_text(fields.get("currency")) or amount_result.currency or "").upper() or None,
            right_type=_alias(fields.get("right_type"), RIGHT_TYPE_ALIASES, RightType.OTHER),
            usage_type=_alias(fields.get("usage_type"), USAGE_TYPE_ALIASES, UsageType.OTHER),
            usage_count=usage_count,
            territory=(_text(fields.get("territory")) or "").upper() or None,
            period_start=parse_period_date(fields.get("period_start")),
            period_end=parse_period_date(fields.get("period_end")),
        )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _alias(value: Any, aliases: dict, default) -> Optional[str]:
    text = _text(value)
    if text is None:
        return None
    return aliases.get(header_key(text), default).value


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
