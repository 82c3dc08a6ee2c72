"""
Output packaging - archive, statistics and summary report for a run
"""

import io
import zipfile
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from dateutil import parser as date_parser

from assembly_engine import (
    AssemblyConfig,
    AssemblyResult,
    Priority,
    Row,
    build_manifest_rows,
    format_identifier,
)
from manifest_io import MANIFEST_NAME, write_manifest_xlsx

SUMMARY_NAME = "PROCESSING_SUMMARY.txt"
ZIP_PREFIX = "Processed_Documents"


def _parse_date(value: str) -> Optional[datetime]:
    """Parse a manifest date to a naive UTC datetime; None when unparsable."""
    if not value or not value.strip():
        return None
    try:
        parsed = date_parser.parse(value)
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def calculate_stats(rows: Iterable[Row]) -> Dict[str, Any]:
    """Aggregate statistics handed to the report alongside the outputs."""
    stats = {
        'total_docs': 0,
        'total_value': 0.0,
        'categories': set(),
        'asset_classes': set(),
        'counterparties': set(),
        'priorities': {},
        'date_range': {'min': None, 'max': None},
    }

    for row in rows:
        stats['total_docs'] += 1
        stats['total_value'] += row.value
        if row.type:
            stats['categories'].add(row.type)
        if row.asset_class:
            stats['asset_classes'].add(row.asset_class)
        if row.counterparty:
            stats['counterparties'].add(row.counterparty)

        priority = row.priority.value if isinstance(row.priority, Priority) else str(row.priority)
        stats['priorities'][priority] = stats['priorities'].get(priority, 0) + 1

        doc_date = _parse_date(row.primary_date)
        if doc_date is not None:
            date_range = stats['date_range']
            if date_range['min'] is None or doc_date < date_range['min']:
                date_range['min'] = doc_date
            if date_range['max'] is None or doc_date > date_range['max']:
                date_range['max'] = doc_date

    return stats


def _format_duration(processing_time_ms: int) -> str:
    seconds = processing_time_ms / 1000
    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes, seconds = divmod(seconds, 60)
    return f"{int(minutes)}m {seconds:.0f}s"


def generate_summary_report(
    outputs: Dict[str, bytes],
    total_rows: int,
    stats: Dict[str, Any],
    config: AssemblyConfig,
    processing_time_ms: int,
    failures: Optional[Dict[str, str]] = None,
    skipped_count: int = 0,
    now: Optional[datetime] = None,
    skip_report: Optional[List[str]] = None,
    invalid_count: int = 0,
) -> str:
    """Human-readable summary of a run."""
    now = now or datetime.now()
    failures = failures or {}
    lines = [
        "DOCUMENT ASSEMBLY SUMMARY",
        "=" * 40,
        f"Generated: {now.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Processing time: {_format_duration(processing_time_ms)}",
        "",
        "Run",
        f"  Pages referenced: {total_rows}",
        f"  Output documents: {len(outputs)}",
        f"  Skipped rows: {skipped_count}",
        f"  Invalid rows: {invalid_count}",
        f"  Failed groups: {len(failures)}",
        f"  Grouping: {config.group_by}",
        f"  Priority ordering: {'on' if config.priority_ordering else 'off'}",
    ]

    if total_rows and not failures:
        first = format_identifier(config.prefix, config.start_number, config.digits)
        last = format_identifier(config.prefix, config.start_number + total_rows - 1, config.digits)
        lines.append(f"  Identifier range: {first} - {last}")

    lines.extend(["", "Output files"])
    for key in sorted(outputs):
        lines.append(f"  {key}.pdf ({len(outputs[key]):,} bytes)")

    if skip_report:
        lines.extend(["", "Skipped rows"])
        lines.extend(f"  {line}" for line in skip_report)

    if failures:
        lines.extend(["", "Failed groups"])
        for key in sorted(failures):
            lines.append(f"  {key}: {failures[key]}")

    date_range = stats.get('date_range') or {}
    lines.extend([
        "",
        "Statistics",
        f"  Total value: {stats.get('total_value', 0.0):,.2f}",
        f"  Categories: {', '.join(sorted(stats.get('categories', ()))) or '-'}",
        f"  Asset classes: {', '.join(sorted(stats.get('asset_classes', ()))) or '-'}",
        f"  Counterparties: {', '.join(sorted(stats.get('counterparties', ()))) or '-'}",
    ])
    priorities = stats.get('priorities') or {}
    if priorities:
        counts = ", ".join(f"{name}={priorities[name]}" for name in sorted(priorities))
        lines.append(f"  Priorities: {counts}")
    if date_range.get('min') and date_range.get('max'):
        lines.append(
            f"  Date range: {date_range['min'].date().isoformat()} to {date_range['max'].date().isoformat()}"
        )

    return "\n".join(lines) + "\n"


def create_zip_archive(named_blobs: Dict[str, bytes]) -> bytes:
    """Pack named byte blobs into a single zip archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as archive:
        for name, payload in named_blobs.items():
            archive.writestr(name, payload)
    return buffer.getvalue()


def package_results(result: AssemblyResult, config: AssemblyConfig) -> bytes:
    """Build the downloadable archive: composite PDFs, manifest and summary."""
    manifest_rows: List[Dict[str, Any]] = build_manifest_rows(result, config)
    stats = calculate_stats(result.rows)
    summary = generate_summary_report(
        result.outputs,
        len(manifest_rows),
        stats,
        config,
        result.processing_time_ms,
        failures=result.failures,
        skipped_count=result.skipped_count,
        skip_report=result.skip_report(),
        invalid_count=len(result.invalid_rows),
    )

    blobs: Dict[str, bytes] = {}
    for key, pdf_bytes in result.outputs.items():
        blobs[f"{key}.pdf"] = pdf_bytes
    blobs[MANIFEST_NAME] = write_manifest_xlsx(manifest_rows)
    blobs[SUMMARY_NAME] = summary.encode("utf-8")
    return create_zip_archive(blobs)


def generate_default_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{ZIP_PREFIX}_{now.strftime('%Y-%m-%d')}.zip"


def format_file_size(size: float) -> str:
    units = ['B', 'KB', 'MB', 'GB']
    unit_index = 0
    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1
    return f"{size:.1f} {units[unit_index]}"
