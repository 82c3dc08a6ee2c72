"""
Document Assembly Engine - Core pipeline logic
Regroups manifest rows into output bundles, merges the referenced source
pages and stamps every output page with a run-wide sequential identifier.
"""

import io
import os
import json
import re
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from enum import Enum
from functools import cmp_to_key
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from pypdf import PageObject, PdfReader, PdfWriter
from pypdf.generic import NameObject
from reportlab.pdfgen import canvas

# Image handling (for sources that are images rather than PDFs)
try:
    from PIL import Image
    HAS_PIL = True
except ImportError:
    HAS_PIL = False


SETTINGS_VERSION = "2.0.0"
PENDING_SOURCE = "__PENDING__"

# Fallbacks applied to blank or malformed manifest cells.
DEFAULT_PAGE_NUMBER = 1
DEFAULT_VALUE = 0.0
UNKNOWN_DATE = "Unknown Date"
DEFAULT_TYPE = "General"
DEFAULT_ASSET_CLASS = "Other"
DEFAULT_COUNTERPARTY = "Unknown"

LARGE_SOURCE_PAGES = 1000
HEAVY_SOURCE_USAGE = 100
PROGRESS_LOG_INTERVAL = 500


def _record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def _safe_progress(callback, *args) -> None:
    """Call a progress/log callback, swallowing exceptions to avoid crashing the run."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


# ============================================
# ERRORS
# ============================================

class AssemblyError(RuntimeError):
    """Base class for every error raised by the assembly pipeline."""


class ConfigurationError(AssemblyError):
    """Run configuration is invalid; raised before any group is scheduled."""


class NoGroupsError(AssemblyError):
    """Grouping produced nothing to assemble."""


class MappingRequiredError(AssemblyError):
    """Required fields could not be mapped onto the manifest columns."""

    def __init__(self, missing_fields: List[str], columns: List[str]):
        self.missing_fields = list(missing_fields)
        self.columns = list(columns)
        super().__init__(
            f"Required field(s) could not be mapped: {', '.join(self.missing_fields)} "
            f"(available columns: {', '.join(str(c) for c in self.columns) or 'none'})"
        )


class RowValidationError(AssemblyError):
    """A raw manifest row is missing required values."""

    def __init__(self, missing_fields: List[str]):
        self.missing_fields = list(missing_fields)
        super().__init__(f"Row is missing required field(s): {', '.join(self.missing_fields)}")


class SourceDecodeError(AssemblyError):
    def __init__(self, source_id: str, detail: str = ""):
        self.source_id = source_id
        self.detail = detail
        message = f"Could not decode source document '{source_id}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class PageOutOfRangeError(AssemblyError):
    def __init__(self, source_id: str, page_number: int, page_count: int):
        self.source_id = source_id
        self.page_number = page_number
        self.page_count = page_count
        super().__init__(
            f"Invalid page number {page_number} in {source_id} (PDF has {page_count} pages)"
        )


# ============================================
# ENUMERATIONS
# ============================================

class Priority(Enum):
    CRITICAL = "critical"
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        """Map a manifest cell onto a priority; unknown or blank values are normal."""
        if isinstance(value, cls):
            return value
        text = _cell_text(value).lower()
        try:
            return cls(text)
        except ValueError:
            return cls.NORMAL


# Lower rank sorts first.
PRIORITY_RANK: Dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.NORMAL: 3,
    Priority.LOW: 4,
}


class GroupingStrategy(Enum):
    DATE_AND_TYPE = "date_type"
    DATE = "date"
    TYPE = "type"
    SETTLEMENT_DATE = "settlement_date"
    DAY_BUCKET = "daily_batch"
    ASSET_CLASS = "asset_class"
    COUNTERPARTY = "counterparty"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> "GroupingStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(member.value for member in cls)
            raise ConfigurationError(f"Unknown grouping strategy '{value}' (expected one of: {choices})")


class StampPosition(Enum):
    BOTTOM_RIGHT = "bottom-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_CENTER = "bottom-center"
    TOP_RIGHT = "top-right"
    TOP_LEFT = "top-left"
    TOP_CENTER = "top-center"

    @classmethod
    def parse(cls, value: Any) -> "StampPosition":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(member.value for member in cls)
            raise ConfigurationError(f"Unknown stamp position '{value}' (expected one of: {choices})")

    @property
    def is_top(self) -> bool:
        return self.value.startswith("top")

    @property
    def is_right(self) -> bool:
        return self.value.endswith("right")

    @property
    def is_center(self) -> bool:
        return self.value.endswith("center")


class RunState(Enum):
    IDLE = "idle"
    GROUPING = "grouping"
    SCHEDULING = "scheduling"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================
# CONFIGURATION
# ============================================

class AssemblyConfig:
    """Run configuration with the application defaults."""

    def __init__(
        self,
        prefix="DOC-",
        start_number=1,
        digits=6,
        position="bottom-right",
        group_by="date_type",
        priority_ordering=True,
        stamp_enabled=True,
        metadata_enabled=True,
        max_concurrent_groups=4,
        rows_per_chunk=50,
        font_size=10,
        font_color=(0.0, 0.0, 0.0),
        metadata_font_size=7,
        metadata_color=(0.4, 0.4, 0.4),
        margin_x=20,
        margin_y=20,
        character_width=6,
        logs_dir=None,
        log_privacy_mode="redacted",
    ):
        self.prefix = prefix
        self.start_number = start_number
        self.digits = digits
        self.position = position
        self.group_by = group_by
        self.priority_ordering = priority_ordering
        self.stamp_enabled = stamp_enabled
        self.metadata_enabled = metadata_enabled
        self.max_concurrent_groups = max_concurrent_groups
        self.rows_per_chunk = rows_per_chunk
        self.font_size = font_size
        self.font_color = tuple(font_color)
        self.metadata_font_size = metadata_font_size
        self.metadata_color = tuple(metadata_color)
        self.margin_x = margin_x
        self.margin_y = margin_y
        self.character_width = character_width
        self.logs_dir = logs_dir
        self.log_privacy_mode = log_privacy_mode

    # Keys persisted by save_settings; logging destinations are per-run.
    PERSISTED_KEYS = (
        "prefix",
        "start_number",
        "digits",
        "position",
        "group_by",
        "priority_ordering",
        "stamp_enabled",
        "metadata_enabled",
        "max_concurrent_groups",
        "rows_per_chunk",
        "font_size",
        "font_color",
        "metadata_font_size",
        "metadata_color",
        "margin_x",
        "margin_y",
        "character_width",
    )

    @property
    def grouping_strategy(self) -> GroupingStrategy:
        return GroupingStrategy.parse(self.group_by)

    @property
    def stamp_position(self) -> StampPosition:
        return StampPosition.parse(self.position)

    def validate(self) -> None:
        """Raise ConfigurationError for any value the pipeline cannot run with."""
        GroupingStrategy.parse(self.group_by)
        StampPosition.parse(self.position)
        if not isinstance(self.prefix, str):
            raise ConfigurationError("prefix must be a string")
        checks = (
            ("start_number", 0),
            ("digits", 1),
            ("max_concurrent_groups", 1),
            ("rows_per_chunk", 1),
        )
        for name, minimum in checks:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
                raise ConfigurationError(f"{name} must be an integer >= {minimum} (got {value!r})")
        for name in ("font_size", "metadata_font_size", "character_width"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        for name in ("font_color", "metadata_color"):
            color = getattr(self, name)
            if len(color) != 3 or any(not 0 <= float(channel) <= 1 for channel in color):
                raise ConfigurationError(f"{name} must be three channels between 0 and 1")

    def to_dict(self) -> Dict[str, Any]:
        data = {key: getattr(self, key) for key in self.PERSISTED_KEYS}
        data["font_color"] = list(self.font_color)
        data["metadata_color"] = list(self.metadata_color)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], **overrides) -> "AssemblyConfig":
        values = {key: data[key] for key in cls.PERSISTED_KEYS if key in data}
        values.update(overrides)
        return cls(**values)


def save_settings(path: str, config: AssemblyConfig) -> None:
    """Persist run settings as versioned JSON."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    payload = {
        "version": SETTINGS_VERSION,
        "timestamp": datetime.now().isoformat(),
        "settings": config.to_dict(),
    }
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def load_settings(path: str, warnings: Optional[List[Dict]] = None) -> AssemblyConfig:
    """
    Load persisted settings merged over the defaults.

    Missing, unreadable or version-mismatched files fall back to the defaults.
    """
    if not path or not os.path.exists(path):
        return AssemblyConfig()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as exc:
        _record_warning(warnings, 'settings_unreadable', 'Could not read settings; using defaults', path=path, error=str(exc))
        return AssemblyConfig()

    if not isinstance(payload, dict) or payload.get("version") != SETTINGS_VERSION:
        _record_warning(warnings, 'settings_version_mismatch', 'Settings version mismatch; using defaults', path=path)
        return AssemblyConfig()
    return AssemblyConfig.from_dict(payload.get("settings") or {})


# ============================================
# RUN LOGGING
# ============================================

class RunLogger:
    """Persist run events to text and JSONL logs."""

    def __init__(
        self,
        logs_dir: Optional[str],
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled and bool(logs_dir)
        self.privacy_mode = privacy_mode
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log") if logs_dir else None
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl") if logs_dir else None
        self._text_handle = None
        self._jsonl_handle = None
        self._lock = threading.Lock()

        if self.enabled:
            os.makedirs(self.logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            for handle in (self._text_handle, self._jsonl_handle):
                if handle is not None:
                    handle.close()
            self._text_handle = None
            self._jsonl_handle = None
            self.enabled = False

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in {"file", "source", "source_id", "path", "manifest"}:
            return os.path.basename(value)
        return value

    def _sanitize_context(self, context: Dict) -> Dict:
        sanitized = {}
        for key, value in context.items():
            sanitized[key] = self._redact_value(key, value)
        return sanitized

    def log(self, level: str, event: str, message: str, **context) -> None:
        timestamp = datetime.now().isoformat()
        safe_context = self._sanitize_context(context)
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }
        with self._lock:
            if self.enabled:
                self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
                self._jsonl_handle.flush()

                text_context = ""
                if safe_context:
                    context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
                    text_context = " | " + ", ".join(context_parts)
                self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
                self._text_handle.flush()
        _safe_progress(self.event_callback, payload)

    def sync_warnings(self, warnings: List[Dict], cursor: int) -> int:
        """Write warnings recorded since *cursor* and return the new cursor."""
        while cursor < len(warnings):
            warning = warnings[cursor]
            context = {
                key: value
                for key, value in warning.items()
                if key not in {"code", "message"}
            }
            self.log("warning", warning.get("code", "warning"), warning.get("message", ""), **context)
            cursor += 1
        return cursor


# ============================================
# PAGE RANGES
# ============================================

_RANGE_SEPARATORS = re.compile(r"[-–—]")


def _parse_page_token(token: Any) -> Optional[int]:
    """Parse one page number; returns None when the token is not a whole number."""
    if isinstance(token, bool):
        return None
    if isinstance(token, int):
        return token
    if isinstance(token, float):
        return int(token) if token.is_integer() else None
    text = str(token).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    return int(number) if number.is_integer() else None


def parse_page_range(value: Any, warnings: Optional[List[Dict]] = None) -> List[int]:
    """
    Parse a page reference into concrete page numbers.

    Examples:
        "3-5" -> [3, 4, 5]
        "15"  -> [15]
        "5-3" -> []  (warning recorded)
        "0"   -> []  (warning recorded)
    """
    if value is None:
        return []
    text = str(value).strip()
    if not text:
        return []

    if isinstance(value, str) and _RANGE_SEPARATORS.search(text):
        parts = _RANGE_SEPARATORS.split(text)
        if len(parts) != 2:
            _record_warning(warnings, 'page_range_invalid', 'Invalid range format', value=str(value))
            return []
        start = _parse_page_token(parts[0])
        end = _parse_page_token(parts[1])
        if start is None or end is None:
            _record_warning(warnings, 'page_range_invalid', 'Invalid range numbers', value=str(value))
            return []
        if start <= 0 or end <= 0:
            _record_warning(warnings, 'page_range_invalid', 'Page numbers must be positive', value=str(value))
            return []
        if start > end:
            _record_warning(warnings, 'page_range_invalid', 'Invalid range (start > end)', value=str(value))
            return []
        return list(range(start, end + 1))

    page = _parse_page_token(value)
    if page is None or page <= 0:
        _record_warning(warnings, 'page_number_invalid', 'Invalid page number', value=str(value))
        return []
    return [page]


def expand_row_page_range(
    row: Dict[str, Any],
    page_field: str,
    warnings: Optional[List[Dict]] = None,
    row_index: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Expand one raw row into one row per concrete page; blank references pass through."""
    value = row.get(page_field)
    if value is None or (isinstance(value, str) and not value.strip()):
        return [row]

    row_warnings: List[Dict] = []
    pages = parse_page_range(value, row_warnings)
    for warning in row_warnings:
        if row_index is not None:
            warning['row_index'] = row_index
        if warnings is not None:
            warnings.append(warning)
    if not pages:
        return []

    expanded = []
    for page in pages:
        copy = dict(row)
        copy[page_field] = page
        expanded.append(copy)
    return expanded


def expand_all_page_ranges(
    rows: Iterable[Dict[str, Any]],
    page_field: str,
    warnings: Optional[List[Dict]] = None,
    dropped: Optional[List[Dict]] = None,
) -> List[Dict[str, Any]]:
    """
    Expand every row's page reference.

    Rows whose reference yields no page are left out; when *dropped* is given
    each one is recorded there as {row_index, value, reason}.
    """
    expanded: List[Dict[str, Any]] = []
    for index, row in enumerate(rows):
        row_warnings: List[Dict] = []
        pages = expand_row_page_range(row, page_field, row_warnings, row_index=index)
        if warnings is not None:
            warnings.extend(row_warnings)
        if not pages and dropped is not None:
            reason = row_warnings[0]['code'] if row_warnings else 'page_number_invalid'
            dropped.append({'row_index': index, 'value': str(row.get(page_field)), 'reason': reason})
        expanded.extend(pages)
    return expanded


def has_page_ranges(rows: Iterable[Dict[str, Any]], page_field: str) -> bool:
    return any(
        _RANGE_SEPARATORS.search(str(row.get(page_field) or ""))
        for row in rows
    )


def page_range_stats(rows: List[Dict[str, Any]], page_field: str) -> Dict[str, int]:
    """Count single pages, ranges and invalid references before expansion."""
    stats = {'total_rows': len(rows), 'total_pages': 0, 'ranges': 0, 'singles': 0, 'invalid': 0}
    for row in rows:
        pages = parse_page_range(row.get(page_field))
        if not pages:
            stats['invalid'] += 1
        elif len(pages) == 1:
            stats['singles'] += 1
            stats['total_pages'] += 1
        else:
            stats['ranges'] += 1
            stats['total_pages'] += len(pages)
    return stats


# ============================================
# ROW NORMALIZATION
# ============================================

class Row(NamedTuple):
    """One normalized page reference."""
    source_id: str
    page_number: int
    primary_date: str = UNKNOWN_DATE
    settlement_date: str = ""
    type: str = DEFAULT_TYPE
    asset_class: str = DEFAULT_ASSET_CLASS
    counterparty: str = DEFAULT_COUNTERPARTY
    id: str = ""
    value: float = DEFAULT_VALUE
    priority: Priority = Priority.NORMAL


# Prioritized column-name aliases per field; earlier entries win.
FIELD_ALIASES: Dict[str, List[str]] = {
    'source_id': [
        'source_file', 'Source File', 'filename', 'File Name', 'file_name', 'pdf_file',
        'PDF File', 'document', 'Document', 'source', 'Source',
    ],
    'page_number': [
        'page_number', 'Page Number', 'page', 'Page', 'pg', 'Pg', 'page_num', 'pagenum', 'PageNum',
    ],
    'primary_date': [
        'date', 'Date', 'Date (MM/DD/', 'Date (MM/DD/YYYY)', 'Date (MM/DD/YY)', 'trade_date',
        'Trade Date', 'document_date', 'Document Date', 'report_date', 'Report Date',
        'created_date', 'Date Created', 'transaction_date', 'Transaction Date',
    ],
    'settlement_date': [
        'settlement_date', 'Settlement Date', 'settle_date', 'Settle Date', 'completion_date',
        'Completion Date', 'due_date', 'Due Date', 'maturity_date', 'Maturity Date',
    ],
    'type': [
        'type', 'Type', 'Document Title', 'Document Title (As per Image)', 'Title', 'title',
        'trade_type', 'Trade Type', 'document_type', 'Document Type', 'category', 'Category',
        'classification', 'Classification', 'doc_type', 'DocType',
    ],
    'asset_class': [
        'asset_class', 'Asset Class', 'asset', 'Asset', 'security_type', 'Security Type',
        'instrument', 'Instrument', 'product', 'Product', 'asset_type', 'AssetType',
    ],
    'counterparty': [
        'counterparty', 'Counterparty', 'broker', 'Broker', 'dealer', 'Dealer', 'vendor',
        'Vendor', 'supplier', 'Supplier', 'party', 'Party', 'firm', 'Firm',
    ],
    'id': [
        'id', 'ID', 'trade_id', 'Trade ID', 'transaction_id', 'Transaction ID', 'document_id',
        'Document ID', 'reference', 'Reference', 'ref', 'Ref', 'number', 'Number',
        'doc_number', 'DocNumber',
    ],
    'value': [
        'value', 'Value', 'trade_value', 'Trade Value', 'amount', 'Amount', 'notional',
        'Notional', 'principal', 'Principal', 'price', 'Price', 'total', 'Total',
    ],
    'priority': [
        'priority', 'Priority', 'urgency', 'Urgency', 'importance', 'Importance', 'level',
        'Level', 'urgent', 'Urgent',
    ],
}

REQUIRED_FIELDS = ('source_id', 'page_number', 'primary_date', 'type')


def _cell_text(value: Any) -> str:
    """Render a manifest cell as trimmed text (dates as ISO strings)."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.hour == value.minute == value.second == value.microsecond == 0:
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _parse_int(value: Any, default: int) -> int:
    parsed = _parse_page_token(value) if value is not None else None
    return default if parsed is None else parsed


def _parse_float(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip().replace(",", ""))
        except ValueError:
            return default
    if number != number or number in (float("inf"), float("-inf")):
        return default
    return number


def auto_map_columns(
    columns: Iterable[Any],
    extra_aliases: Optional[Mapping[str, List[str]]] = None,
) -> Dict[str, str]:
    """
    Suggest a field -> column mapping.

    Aliases are compared case-insensitively after trimming, in priority order;
    the first alias present among the columns wins.
    """
    lookup: Dict[str, Any] = {}
    for column in columns:
        lookup.setdefault(str(column).strip().lower(), column)

    mapping: Dict[str, str] = {}
    for field, aliases in FIELD_ALIASES.items():
        candidates = list(aliases) + list((extra_aliases or {}).get(field, []))
        for alias in candidates:
            column = lookup.get(alias.strip().lower())
            if column is not None:
                mapping[field] = column
                break
    return mapping


def validate_mapping(mapping: Mapping[str, str], columns: Iterable[Any]) -> Dict[str, Any]:
    """Check a field -> column mapping against the manifest's columns."""
    columns = list(columns)
    errors: List[str] = []
    warnings: List[str] = []

    for field in REQUIRED_FIELDS:
        if not mapping.get(field):
            errors.append(f"Required field missing: {field}")
    for field, column in mapping.items():
        if field not in FIELD_ALIASES:
            errors.append(f"Unknown field: {field}")
        elif column and column not in columns:
            errors.append(f'Mapped column "{column}" not found in manifest')

    used = set()
    for column in mapping.values():
        if column in used:
            warnings.append(f'Column "{column}" is mapped to multiple fields')
        used.add(column)

    return {'valid': not errors, 'errors': errors, 'warnings': warnings}


class RowNormalizer:
    """Maps raw manifest rows onto the fixed Row schema."""

    def __init__(
        self,
        mapping: Optional[Mapping[str, str]] = None,
        single_source: bool = False,
        extra_aliases: Optional[Mapping[str, List[str]]] = None,
    ):
        self.mapping = dict(mapping or {})
        self.single_source = single_source
        self.extra_aliases = extra_aliases
        self._resolved: Dict[Tuple, Dict[str, str]] = {}

    def resolve_mapping(self, columns: Iterable[Any]) -> Dict[str, str]:
        """Auto-detected mapping with explicit entries taking precedence."""
        key = tuple(columns)
        resolved = self._resolved.get(key)
        if resolved is None:
            resolved = auto_map_columns(key, self.extra_aliases)
            resolved.update({field: column for field, column in self.mapping.items() if column})
            self._resolved[key] = resolved
        return resolved

    def missing_required_fields(self, columns: Iterable[Any]) -> List[str]:
        resolved = self.resolve_mapping(columns)
        return [
            field
            for field in REQUIRED_FIELDS
            if field not in resolved and not (field == 'source_id' and self.single_source)
        ]

    def normalize(self, raw: Mapping[str, Any]) -> Row:
        missing = self.missing_required_fields(raw.keys())
        if missing:
            raise RowValidationError(missing)
        mapping = self.resolve_mapping(raw.keys())

        def cell(field: str) -> Any:
            column = mapping.get(field)
            return raw.get(column) if column is not None else None

        source_id = _cell_text(cell('source_id'))
        if not source_id:
            if not self.single_source:
                raise RowValidationError(['source_id'])
            source_id = PENDING_SOURCE

        raw_date = _cell_text(cell('primary_date'))
        return Row(
            source_id=source_id,
            page_number=_parse_int(cell('page_number'), DEFAULT_PAGE_NUMBER),
            primary_date=raw_date or UNKNOWN_DATE,
            settlement_date=_cell_text(cell('settlement_date')) or raw_date,
            type=_cell_text(cell('type')) or DEFAULT_TYPE,
            asset_class=_cell_text(cell('asset_class')) or DEFAULT_ASSET_CLASS,
            counterparty=_cell_text(cell('counterparty')) or DEFAULT_COUNTERPARTY,
            id=_cell_text(cell('id')),
            value=_parse_float(cell('value'), DEFAULT_VALUE),
            priority=Priority.parse(cell('priority')),
        )

    def normalize_all(
        self,
        raw_rows: Iterable[Mapping[str, Any]],
        warnings: Optional[List[Dict]] = None,
    ) -> Tuple[List[Row], List[Dict]]:
        """Normalize every row; invalid rows are reported, not raised."""
        rows: List[Row] = []
        invalid: List[Dict] = []
        for index, raw in enumerate(raw_rows):
            try:
                rows.append(self.normalize(raw))
            except RowValidationError as exc:
                issue = {'row_index': index, 'missing_fields': exc.missing_fields}
                invalid.append(issue)
                _record_warning(warnings, 'row_invalid', str(exc), **issue)
        return rows, invalid


def bind_pending_source(
    rows: List[Row],
    source_ids: Iterable[str],
    warnings: Optional[List[Dict]] = None,
) -> List[Row]:
    """Single-source mode: rebind pending rows to the first supplied source."""
    source_ids = list(source_ids)
    pending = sum(1 for row in rows if row.source_id == PENDING_SOURCE)
    if not pending or not source_ids:
        return list(rows)

    chosen = source_ids[0]
    if len(source_ids) > 1:
        _record_warning(
            warnings,
            'single_source_multiple',
            'Several sources supplied in single-source mode; using the first',
            source_id=chosen,
            ignored=source_ids[1:],
        )
    return [
        row._replace(source_id=chosen) if row.source_id == PENDING_SOURCE else row
        for row in rows
    ]


# ============================================
# GROUPING
# ============================================

def _day_bucket(value: str) -> str:
    return value.split("T")[0].split(" ")[0]


GROUP_KEY_BUILDERS: Dict[GroupingStrategy, Callable[[Row], str]] = {
    GroupingStrategy.DATE_AND_TYPE: lambda row: f"{row.primary_date}_{row.type}",
    GroupingStrategy.DATE: lambda row: f"{row.primary_date}",
    GroupingStrategy.TYPE: lambda row: f"{row.type}",
    GroupingStrategy.SETTLEMENT_DATE: lambda row: f"Settlement_{row.settlement_date}",
    GroupingStrategy.DAY_BUCKET: lambda row: f"DOCS_{_day_bucket(row.primary_date)}",
    GroupingStrategy.ASSET_CLASS: lambda row: f"{row.asset_class}",
    GroupingStrategy.COUNTERPARTY: lambda row: f"{row.counterparty}",
    GroupingStrategy.NONE: lambda row: "ALL_DOCUMENTS",
}


def sanitize_group_key(key: str) -> str:
    return re.sub(r'[^A-Za-z0-9_-]', '_', key)


def build_group_key(row: Row, strategy: GroupingStrategy) -> str:
    return sanitize_group_key(GROUP_KEY_BUILDERS[strategy](row))


class GroupingResult:
    def __init__(self):
        self.groups: Dict[str, List[Row]] = {}
        self.skipped: List[Dict] = []
        self.collisions: Dict[str, List[str]] = {}

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def total_rows(self) -> int:
        return sum(len(rows) for rows in self.groups.values())


class DocumentGrouper:
    """Partitions normalized rows into named output groups."""

    def group(
        self,
        rows: Iterable[Row],
        strategy: Any,
        available_sources: Any,
        warnings: Optional[List[Dict]] = None,
        log_callback=None,
    ) -> GroupingResult:
        """
        Group rows by the selected strategy.

        Args:
            rows: Normalized rows in manifest order
            strategy: GroupingStrategy or its string id
            available_sources: Container of source ids that can be loaded
            warnings: Optional structured warning collector
            log_callback: Optional callback(message)

        Returns:
            GroupingResult with groups in first-seen order and skipped rows
        """
        strategy = GroupingStrategy.parse(strategy)
        builder = GROUP_KEY_BUILDERS[strategy]
        result = GroupingResult()
        raw_keys: Dict[str, List[str]] = {}

        for index, row in enumerate(rows):
            if row.source_id not in available_sources:
                result.skipped.append({'row_index': index, 'source_id': row.source_id})
                _record_warning(
                    warnings,
                    'source_not_found',
                    'Skipping row; source document not available',
                    row_index=index,
                    source_id=row.source_id,
                )
                _safe_progress(log_callback, f"Skipping: '{row.source_id}' not found")
                continue

            raw_key = builder(row)
            key = sanitize_group_key(raw_key)
            seen = raw_keys.setdefault(key, [])
            if raw_key not in seen:
                seen.append(raw_key)
                if len(seen) > 1:
                    result.collisions[key] = list(seen)
                    _record_warning(
                        warnings,
                        'group_key_collision',
                        'Distinct group keys merged after sanitization',
                        group=key,
                        raw_keys=list(seen),
                    )
            result.groups.setdefault(key, []).append(row)

        return result


# ============================================
# SEQUENCING
# ============================================

def _compare_text(left: str, right: str) -> int:
    if left == right:
        return 0
    return -1 if left < right else 1


def compare_rows(a: Row, b: Row, priority_ordering: bool = True) -> int:
    """Comparator: priority, primary date, settlement date, id, page number."""
    if priority_ordering:
        diff = PRIORITY_RANK[a.priority] - PRIORITY_RANK[b.priority]
        if diff:
            return diff

    diff = _compare_text(a.primary_date, b.primary_date)
    if diff:
        return diff

    diff = _compare_text(a.settlement_date, b.settlement_date)
    if diff:
        return diff

    # ids only order rows when both sides carry one
    if a.id and b.id:
        diff = _compare_text(a.id, b.id)
        if diff:
            return diff

    return a.page_number - b.page_number


def sequence_rows(rows: Iterable[Row], priority_ordering: bool = True) -> List[Row]:
    return sorted(rows, key=cmp_to_key(lambda a, b: compare_rows(a, b, priority_ordering)))


# ============================================
# SOURCE DOCUMENTS
# ============================================

class SourceDocument(NamedTuple):
    source_id: str
    reader: PdfReader
    page_count: int


def _try_convert_image_to_pdf(raw_bytes: bytes) -> Optional[bytes]:
    """
    Attempt to open bytes as an image and convert them to PDF bytes.
    Returns PDF bytes on success, or None if the bytes are not a valid image.
    """
    if not HAS_PIL:
        return None
    try:
        img = Image.open(io.BytesIO(raw_bytes))
        # Convert to RGB so it can be saved as PDF (handles RGBA, P, etc.)
        if img.mode not in ('RGB', 'L'):
            img = img.convert('RGB')
        pdf_bytes = io.BytesIO()
        img.save(pdf_bytes, format='PDF', resolution=150)
        return pdf_bytes.getvalue()
    except Exception:
        return None


def _open_reader(source_id: str, raw_bytes: bytes) -> PdfReader:
    reader = PdfReader(io.BytesIO(raw_bytes))
    if reader.is_encrypted:
        # Try the empty password (handles "view-only" PDFs)
        if not reader.decrypt(""):
            raise SourceDecodeError(source_id, "PDF is password-protected")
    return reader


def decode_source_bytes(source_id: str, raw_bytes: Optional[bytes]) -> SourceDocument:
    """Decode raw source bytes into a SourceDocument or raise SourceDecodeError."""
    if raw_bytes is None:
        raise SourceDecodeError(source_id, "source file not supplied")
    try:
        reader = _open_reader(source_id, raw_bytes)
        page_count = len(reader.pages)
    except SourceDecodeError:
        raise
    except Exception as exc:
        converted = _try_convert_image_to_pdf(raw_bytes)
        if converted is None:
            raise SourceDecodeError(source_id, str(exc) or type(exc).__name__) from exc
        reader = PdfReader(io.BytesIO(converted))
        page_count = len(reader.pages)

    if page_count == 0:
        raise SourceDecodeError(source_id, "PDF contains no pages")
    return SourceDocument(source_id, reader, page_count)


class SourceDocumentCache:
    """
    Memoizes decoded source documents for the duration of one group.

    The owner clears the cache at group boundaries so peak memory stays
    bounded by one group's distinct sources.
    """

    def __init__(self, decoder: Optional[Callable[[str, bytes], SourceDocument]] = None, log_callback=None):
        self.decoder = decoder or decode_source_bytes
        self.log_callback = log_callback
        self.decode_count = 0
        self._documents: Dict[str, SourceDocument] = {}

    def acquire(self, source_id: str, raw_bytes: Optional[bytes]) -> SourceDocument:
        document = self._documents.get(source_id)
        if document is not None:
            return document

        self.decode_count += 1
        document = self.decoder(source_id, raw_bytes)
        self._documents[source_id] = document
        if document.page_count > LARGE_SOURCE_PAGES:
            _safe_progress(self.log_callback, f"   Cached large PDF: {source_id} ({document.page_count} pages)")
        return document

    def clear(self) -> None:
        self._documents.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            'size': len(self._documents),
            'files': list(self._documents),
            'decode_count': self.decode_count,
        }

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._documents


# ============================================
# STAMPING
# ============================================

# Distance of top anchors below the top margin, leaving room for the glyph height.
TOP_BASELINE_OFFSET = 10

# Identifier anchor -> metadata anchor in the opposite corner.
METADATA_ANCHORS: Dict[StampPosition, StampPosition] = {
    StampPosition.BOTTOM_RIGHT: StampPosition.TOP_LEFT,
    StampPosition.BOTTOM_LEFT: StampPosition.TOP_RIGHT,
    StampPosition.BOTTOM_CENTER: StampPosition.TOP_RIGHT,
    StampPosition.TOP_RIGHT: StampPosition.BOTTOM_LEFT,
    StampPosition.TOP_LEFT: StampPosition.BOTTOM_RIGHT,
    StampPosition.TOP_CENTER: StampPosition.BOTTOM_RIGHT,
}


def format_identifier(prefix: str, number: int, digits: int) -> str:
    return f"{prefix}{str(number).zfill(digits)}"


def compute_stamp_position(
    position: Any,
    width: float,
    height: float,
    text_length: int,
    margin_x: float = 20,
    margin_y: float = 20,
    character_width: float = 6,
) -> Tuple[float, float]:
    """Return the (x, y) baseline origin of the identifier stamp."""
    position = StampPosition.parse(position)
    text_width = text_length * character_width

    if position.is_center:
        x = (width - text_width) / 2
    elif position.is_right:
        x = width - text_width - margin_x
    else:
        x = margin_x

    if position.is_top:
        y = height - margin_y - TOP_BASELINE_OFFSET
    else:
        y = margin_y
    return x, y


def compute_metadata_position(
    position: Any,
    width: float,
    height: float,
    text_length: int,
    margin_x: float = 20,
    margin_y: float = 20,
    character_width: float = 6,
) -> Tuple[float, float]:
    """
    Place the metadata annotation in the corner opposite the identifier.

    Uses the same margin and text-width rules as the identifier, so a long
    annotation is pulled inward rather than running off the page.
    """
    anchor = METADATA_ANCHORS[StampPosition.parse(position)]
    return compute_stamp_position(anchor, width, height, text_length, margin_x, margin_y, character_width)


def metadata_text(row: Row) -> Optional[str]:
    if not row.id and not row.primary_date:
        return None
    return f"{row.id or 'N/A'} | {row.primary_date}"


class PageStamper:
    """Draws the identifier stamp and metadata annotation onto copied pages."""

    IDENTIFIER_FONT = "Helvetica-Bold"
    METADATA_FONT = "Helvetica"

    def __init__(self, config: AssemblyConfig):
        self.config = config
        self.position = config.stamp_position

    def identifier(self, sequence_number: int) -> str:
        return format_identifier(self.config.prefix, sequence_number, self.config.digits)

    def stamp(self, page: PageObject, sequence_number: int, row: Optional[Row] = None) -> str:
        """
        Stamp *page* in place and return the identifier text.

        The page boxes are left untouched; the overlay is merged on top of the
        existing content.
        """
        config = self.config
        box = page.mediabox
        left, bottom = float(box.left), float(box.bottom)
        width, height = float(box.width), float(box.height)
        identifier = self.identifier(sequence_number)

        draws = []
        if config.stamp_enabled:
            x, y = compute_stamp_position(
                self.position,
                width,
                height,
                len(identifier),
                margin_x=config.margin_x,
                margin_y=config.margin_y,
                character_width=config.character_width,
            )
            draws.append((identifier, left + x, bottom + y, self.IDENTIFIER_FONT, config.font_size, config.font_color))

        if config.metadata_enabled and row is not None:
            text = metadata_text(row)
            if text:
                x, y = compute_metadata_position(
                    self.position,
                    width,
                    height,
                    len(text),
                    margin_x=config.margin_x,
                    margin_y=config.margin_y,
                    character_width=config.character_width * config.metadata_font_size / config.font_size,
                )
                draws.append((text, left + x, bottom + y, self.METADATA_FONT, config.metadata_font_size, config.metadata_color))

        if draws:
            self._detach_contents(page)
            page.merge_page(self._render_overlay(left + width, bottom + height, draws))
        return identifier

    @staticmethod
    def _detach_contents(page: PageObject) -> None:
        # Copies of one source page share its content stream; the merge must
        # not write through to the other copies.
        contents = page.get_contents()
        if contents is not None:
            page[NameObject("/Contents")] = contents

    @staticmethod
    def _render_overlay(width: float, height: float, draws) -> PageObject:
        buffer = io.BytesIO()
        overlay = canvas.Canvas(buffer, pagesize=(width, height))
        for text, x, y, font, size, color in draws:
            overlay.setFont(font, size)
            overlay.setFillColorRGB(*color)
            overlay.drawString(x, y, text)
        overlay.save()
        return PdfReader(io.BytesIO(buffer.getvalue())).pages[0]


# ============================================
# GROUP ASSEMBLY
# ============================================

def analyze_source_usage(rows: List[Row]) -> Dict[str, Any]:
    """Summarize how heavily each source is referenced within a group."""
    usage: Dict[str, int] = {}
    for row in rows:
        usage[row.source_id] = usage.get(row.source_id, 0) + 1

    heavy = [count for count in usage.values() if count > HEAVY_SOURCE_USAGE]
    return {
        'unique_sources': len(usage),
        'total_pages': len(rows),
        'max_usage': max(usage.values()) if usage else 0,
        'has_large_sources': bool(heavy),
        'max_pages': max(heavy) if heavy else 0,
    }


class GroupAssembler:
    """Builds one composite document from a group's sequenced rows."""

    def __init__(self, config: AssemblyConfig, stamper: Optional[PageStamper] = None, log_callback=None):
        self.config = config
        self.stamper = stamper or PageStamper(config)
        self.log_callback = log_callback

    def assemble(
        self,
        group_key: str,
        rows: List[Row],
        sources: Mapping[str, bytes],
        cache: SourceDocumentCache,
        start_number: int,
    ) -> bytes:
        """
        Copy and stamp every row's page, then serialize the composite once.

        Args:
            group_key: Name of the group (used in log messages)
            rows: Rows already in sequenced order
            sources: Lookup of source id -> raw bytes
            cache: Cache owned by this group's worker
            start_number: First sequence number allocated to the group

        Returns:
            Bytes of the composite PDF

        Raises:
            SourceDecodeError, PageOutOfRangeError: the group is abandoned
        """
        writer = PdfWriter()
        total = len(rows)
        chunk_size = self.config.rows_per_chunk

        usage = analyze_source_usage(rows)
        if usage['has_large_sources']:
            _safe_progress(self.log_callback, f"   Optimizing for large PDFs (max {usage['max_pages']} pages)")

        next_report = PROGRESS_LOG_INTERVAL
        for chunk_start in range(0, total, chunk_size):
            chunk = rows[chunk_start:chunk_start + chunk_size]
            for offset, row in enumerate(chunk):
                self._append_page(writer, row, sources, cache, start_number + chunk_start + offset)

            processed = chunk_start + len(chunk)
            if total > PROGRESS_LOG_INTERVAL and processed >= next_report:
                _safe_progress(self.log_callback, f"   Progress: {processed}/{total} pages ({group_key})")
                while next_report <= processed:
                    next_report += PROGRESS_LOG_INTERVAL

        buffer = io.BytesIO()
        writer.write(buffer)
        return buffer.getvalue()

    def _append_page(
        self,
        writer: PdfWriter,
        row: Row,
        sources: Mapping[str, bytes],
        cache: SourceDocumentCache,
        sequence_number: int,
    ) -> None:
        document = cache.acquire(row.source_id, sources.get(row.source_id))
        if not 1 <= row.page_number <= document.page_count:
            raise PageOutOfRangeError(row.source_id, row.page_number, document.page_count)

        page = writer.add_page(document.reader.pages[row.page_number - 1])
        self.stamper.stamp(page, sequence_number, row)


# ============================================
# BATCH SCHEDULING
# ============================================

class SequenceAllocation(NamedTuple):
    """Contiguous range [start, start + count) of sequence numbers."""
    start: int
    count: int

    @property
    def stop(self) -> int:
        return self.start + self.count


def allocate_sequence_ranges(groups: Mapping[str, List[Any]], start_number: int) -> Dict[str, SequenceAllocation]:
    """Prefix-sum allocation over groups in sorted key order."""
    allocations: Dict[str, SequenceAllocation] = {}
    cursor = start_number
    for key in sorted(groups):
        count = len(groups[key])
        allocations[key] = SequenceAllocation(cursor, count)
        cursor += count
    return allocations


class BatchResult:
    def __init__(self, allocations: Dict[str, SequenceAllocation], ordered_groups: Dict[str, List[Row]]):
        self.allocations = allocations
        self.ordered_groups = ordered_groups
        self.outputs: Dict[str, bytes] = {}
        self.failures: Dict[str, str] = {}

    @property
    def succeeded(self) -> bool:
        return not self.failures


class BatchScheduler:
    """Drives groups through GroupAssembler with bounded concurrency."""

    def __init__(
        self,
        assembler: GroupAssembler,
        max_concurrent_groups: int = 4,
        cache_factory: Optional[Callable[[], SourceDocumentCache]] = None,
        progress_callback=None,
        log_callback=None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.assembler = assembler
        self.max_concurrent_groups = max(1, int(max_concurrent_groups))
        self.cache_factory = cache_factory or (lambda: SourceDocumentCache(log_callback=log_callback))
        self.progress_callback = progress_callback
        self.log_callback = log_callback
        self.run_logger = run_logger
        self._completed = 0
        self._total = 0
        self._lock = threading.Lock()

    def _log(self, level: str, event: str, message: str, **context) -> None:
        _safe_progress(self.log_callback, message)
        if self.run_logger is not None:
            self.run_logger.log(level, event, message, **context)

    def run(
        self,
        groups: Mapping[str, List[Row]],
        sources: Mapping[str, bytes],
        start_number: int,
        priority_ordering: bool = True,
    ) -> BatchResult:
        """
        Assemble every group and collect the composite documents.

        Sequence ranges are allocated before any group starts, so numbering is
        independent of which groups finish first.
        """
        keys = sorted(groups)
        allocations = allocate_sequence_ranges(groups, start_number)
        ordered = {key: sequence_rows(groups[key], priority_ordering) for key in keys}
        result = BatchResult(allocations, ordered)

        self._completed = 0
        self._total = len(keys)
        self._log(
            "info",
            "batch_start",
            f"Processing {len(keys)} group(s), max {self.max_concurrent_groups} concurrent",
            group_count=len(keys),
            max_concurrent=self.max_concurrent_groups,
        )

        for batch_start in range(0, len(keys), self.max_concurrent_groups):
            batch = keys[batch_start:batch_start + self.max_concurrent_groups]
            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                futures = {
                    key: pool.submit(self._run_group, key, ordered[key], sources, allocations[key])
                    for key in batch
                }
                for key in batch:
                    try:
                        result.outputs[key] = futures[key].result()
                    except Exception as exc:
                        result.failures[key] = str(exc)

        return result

    def _run_group(
        self,
        key: str,
        rows: List[Row],
        sources: Mapping[str, bytes],
        allocation: SequenceAllocation,
    ) -> bytes:
        self._log(
            "info",
            "group_start",
            f"Processing: {key} ({len(rows)} pages)",
            group=key,
            pages=len(rows),
            first_number=allocation.start,
        )
        cache = self.cache_factory()
        cache.clear()
        try:
            pdf_bytes = self.assembler.assemble(key, rows, sources, cache, allocation.start)
        except Exception as exc:
            self._log("error", "group_failed", f"ERROR processing {key}: {exc}", group=key, error=str(exc))
            self._mark_completed()
            raise
        finally:
            cache.clear()

        self._log("info", "group_end", f"Completed: {key}", group=key, bytes=len(pdf_bytes))
        self._mark_completed()
        return pdf_bytes

    def _mark_completed(self) -> None:
        with self._lock:
            self._completed += 1
            percent = round(100 * self._completed / self._total) if self._total else 100
        _safe_progress(self.progress_callback, percent)


# ============================================
# RUN ORCHESTRATION
# ============================================

class AssemblyResult:
    """Outcome of one assembly run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.state = RunState.IDLE
        self.outputs: Dict[str, bytes] = {}
        self.failures: Dict[str, str] = {}
        self.rows: List[Row] = []
        self.groups: Dict[str, List[Row]] = {}
        self.allocations: Dict[str, SequenceAllocation] = {}
        self.warnings: List[Dict] = []
        self.skipped: List[Dict] = []
        self.dropped_page_refs: List[Dict] = []
        self.invalid_rows: List[Dict] = []
        self.collisions: Dict[str, List[str]] = {}
        self.processing_time_ms = 0
        self.log_paths: Dict[str, Optional[str]] = {}

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def skipped_count(self) -> int:
        """Rows left out of every group: missing sources plus unusable page references."""
        return len(self.skipped) + len(self.dropped_page_refs)

    def skip_report(self) -> List[str]:
        """One line per skipped manifest row, naming why it was left out."""
        lines = [
            f"manifest row {entry['row_index'] + 1}: invalid page reference '{entry['value']}'"
            for entry in self.dropped_page_refs
        ]
        lines.extend(
            f"source '{entry['source_id']}' not found"
            for entry in self.skipped
        )
        return lines

    def summary(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'state': self.state.value,
            'total_rows': len(self.rows),
            'total_groups': len(self.groups),
            'output_groups': list(self.outputs),
            'failed_groups': dict(self.failures),
            'skipped_rows': self.skipped_count,
            'dropped_page_refs': len(self.dropped_page_refs),
            'missing_source_rows': len(self.skipped),
            'invalid_rows': len(self.invalid_rows),
            'warnings_total': len(self.warnings),
            'processing_time_ms': self.processing_time_ms,
        }


def _collect_columns(raw_rows: List[Mapping[str, Any]]) -> List[Any]:
    columns: Dict[Any, None] = {}
    for raw in raw_rows:
        for column in raw.keys():
            columns.setdefault(column, None)
    return list(columns)


class AssemblyOrchestrator:
    """Coordinates a full run from raw manifest rows to composite documents."""

    def __init__(self, config: Optional[AssemblyConfig] = None, single_source: Optional[bool] = None):
        self.config = config or AssemblyConfig()
        self.single_source = single_source

    def assemble(
        self,
        raw_rows: Iterable[Mapping[str, Any]],
        sources: Mapping[str, bytes],
        mapping: Optional[Mapping[str, str]] = None,
        progress_callback=None,
        log_callback=None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> AssemblyResult:
        """
        Main entry point for an assembly run

        Args:
            raw_rows: Manifest rows with arbitrary column names
            sources: Lookup of source id -> raw PDF bytes
            mapping: Optional field -> column mapping overriding auto-detection
            progress_callback: Optional callback(percent) at group completion
            log_callback: Optional callback(message)
            event_callback: Optional callback for structured run-log events

        Returns:
            AssemblyResult; group failures are reported in ``failures``

        Raises:
            ConfigurationError, MappingRequiredError, NoGroupsError
        """
        started = time.monotonic()
        config = self.config
        run_id = datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
        result = AssemblyResult(run_id)
        warnings = result.warnings
        run_logger = RunLogger(
            logs_dir=config.logs_dir,
            run_id=run_id,
            privacy_mode=config.log_privacy_mode,
            event_callback=event_callback,
        )
        result.log_paths = {'text_log': run_logger.text_log_path, 'jsonl_log': run_logger.jsonl_log_path}
        cursor = 0

        try:
            config.validate()
            strategy = config.grouping_strategy
            result.state = RunState.GROUPING
            run_logger.log("info", "run_start", "Assembly run started", group_by=strategy.value)

            raw_rows = list(raw_rows)
            if not raw_rows:
                raise NoGroupsError("Manifest contains no rows")

            columns = _collect_columns(raw_rows)
            normalizer = RowNormalizer(mapping)
            resolved = normalizer.resolve_mapping(columns)
            single_source = self.single_source
            if single_source is None:
                single_source = 'source_id' not in resolved
            normalizer.single_source = single_source

            missing = normalizer.missing_required_fields(columns)
            if missing:
                raise MappingRequiredError(missing, columns)

            page_field = resolved['page_number']
            if has_page_ranges(raw_rows, page_field):
                _safe_progress(log_callback, "Page ranges detected; expanding")
            expanded = expand_all_page_ranges(raw_rows, page_field, warnings, result.dropped_page_refs)
            if result.dropped_page_refs:
                _safe_progress(
                    log_callback,
                    f"Skipped {len(result.dropped_page_refs)} row(s) with invalid page references",
                )
            if len(expanded) != len(raw_rows):
                _safe_progress(log_callback, f"Expanded {len(raw_rows)} rows -> {len(expanded)} rows")

            rows, invalid = normalizer.normalize_all(expanded, warnings)
            result.invalid_rows = invalid
            if single_source:
                rows = bind_pending_source(rows, list(sources), warnings)
            result.rows = rows

            grouping = DocumentGrouper().group(rows, strategy, sources, warnings, log_callback)
            result.skipped = grouping.skipped
            result.collisions = grouping.collisions
            cursor = run_logger.sync_warnings(warnings, cursor)
            if not grouping.groups:
                raise NoGroupsError(
                    f"No groups to assemble ({result.skipped_count} row(s) skipped, {len(invalid)} invalid)"
                )
            _safe_progress(log_callback, f"Created {len(grouping.groups)} group(s)")
            run_logger.log(
                "info",
                "groups_built",
                "Grouping complete",
                group_count=len(grouping.groups),
                skipped=grouping.skipped_count,
            )

            result.state = RunState.SCHEDULING
            assembler = GroupAssembler(config, log_callback=log_callback)
            scheduler = BatchScheduler(
                assembler,
                max_concurrent_groups=config.max_concurrent_groups,
                progress_callback=progress_callback,
                log_callback=log_callback,
                run_logger=run_logger,
            )
            batch = scheduler.run(grouping.groups, sources, config.start_number, config.priority_ordering)

            result.state = RunState.AGGREGATING
            result.groups = batch.ordered_groups
            result.allocations = batch.allocations
            result.outputs = batch.outputs
            result.failures = batch.failures
            result.state = RunState.COMPLETED if batch.succeeded else RunState.FAILED
        except AssemblyError as exc:
            result.state = RunState.FAILED
            run_logger.log("error", "run_failed", "Run aborted", error=str(exc))
            raise
        finally:
            result.processing_time_ms = int((time.monotonic() - started) * 1000)
            cursor = run_logger.sync_warnings(warnings, cursor)
            run_logger.log(
                "info",
                "run_end",
                "Assembly run finished",
                state=result.state.value,
                outputs=len(result.outputs),
                failures=len(result.failures),
                elapsed_ms=result.processing_time_ms,
            )
            run_logger.close()

        return result


def build_manifest_rows(result: AssemblyResult, config: AssemblyConfig) -> List[Dict[str, Any]]:
    """Describe every stamped page of the successful groups, in stamped order."""
    manifest: List[Dict[str, Any]] = []
    for key in sorted(result.outputs):
        allocation = result.allocations[key]
        for offset, row in enumerate(result.groups[key]):
            manifest.append({
                'sequence_id': format_identifier(config.prefix, allocation.start + offset, config.digits),
                'group': key,
                'id': row.id,
                'date': row.primary_date,
                'settlement_date': row.settlement_date,
                'type': row.type,
                'asset_class': row.asset_class,
                'counterparty': row.counterparty,
                'value': row.value,
                'source_id': row.source_id,
                'page_number': row.page_number,
                'priority': row.priority.value,
            })
    return manifest
