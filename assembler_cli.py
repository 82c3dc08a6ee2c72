"""
Document Assembler - Command-line front end
Loads a manifest and a set of source PDFs, runs the assembly pipeline and
writes the packaged archive.
"""

import argparse
import os
import sys
from typing import Dict, List, Optional

from assembly_engine import (
    FIELD_ALIASES,
    AssemblyError,
    AssemblyOrchestrator,
    GroupingStrategy,
    MappingRequiredError,
    StampPosition,
    load_settings,
    save_settings,
)
from manifest_io import read_manifest
from output_packager import format_file_size, generate_default_filename, package_results

EXIT_OK = 0
EXIT_GROUP_FAILURES = 1
EXIT_RUN_FAILED = 2


def load_sources(paths: List[str]) -> Dict[str, bytes]:
    """
    Read source PDFs keyed by file name.

    Directories contribute their *.pdf files in name order; files are taken in
    the order given, which matters in single-source mode. Two files with the
    same name are rejected since rows refer to sources by name.
    """
    sources: Dict[str, bytes] = {}
    for path in paths:
        if os.path.isdir(path):
            names = sorted(
                name for name in os.listdir(path)
                if name.lower().endswith('.pdf') and os.path.isfile(os.path.join(path, name))
            )
            candidates = [os.path.join(path, name) for name in names]
        elif os.path.isfile(path):
            candidates = [path]
        else:
            raise FileNotFoundError(f"Source path not found: {path}")

        for candidate in candidates:
            name = os.path.basename(candidate)
            if name in sources:
                raise ValueError(f"Duplicate source file name '{name}' ({candidate}); source names must be unique")
            with open(candidate, 'rb') as handle:
                sources[name] = handle.read()
    return sources


def _parse_mapping(entries: Optional[List[str]]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for entry in entries or []:
        field, sep, column = entry.partition('=')
        field = field.strip()
        if not sep or not column.strip():
            raise argparse.ArgumentTypeError(f"Mapping must look like FIELD=COLUMN (got '{entry}')")
        if field not in FIELD_ALIASES:
            raise argparse.ArgumentTypeError(
                f"Unknown field '{field}' (expected one of: {', '.join(FIELD_ALIASES)})"
            )
        mapping[field] = column.strip()
    return mapping


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Regroup manifest rows into stamped composite PDFs.",
    )
    parser.add_argument("manifest", help="Manifest file (.csv or .xlsx)")
    parser.add_argument("sources", nargs="+", help="Source PDF files or folders of PDFs")
    parser.add_argument("-o", "--output", help="Archive path or folder (default: Processed_Documents_<date>.zip)")
    parser.add_argument("--settings", help="JSON settings file to start from")
    parser.add_argument("--save-settings", action="store_true", help="Write the effective settings back to --settings")
    parser.add_argument("--prefix")
    parser.add_argument("--start", type=int, dest="start_number")
    parser.add_argument("--digits", type=int)
    parser.add_argument("--position", choices=[member.value for member in StampPosition])
    parser.add_argument("--group-by", choices=[member.value for member in GroupingStrategy])
    parser.add_argument("--no-priority", action="store_true", help="Disable priority-based ordering")
    parser.add_argument("--no-metadata", action="store_true", help="Do not stamp id/date metadata")
    parser.add_argument("--max-concurrent", type=int, dest="max_concurrent_groups")
    parser.add_argument("--rows-per-chunk", type=int)
    parser.add_argument("--logs-dir", help="Write run_<id>.log / .jsonl files here")
    parser.add_argument("--map", action="append", metavar="FIELD=COLUMN", help="Explicit column mapping (repeatable)")
    parser.add_argument("--single-source", action="store_true", help="Bind every row to the first source PDF")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    warnings: List[Dict] = []
    config = load_settings(args.settings, warnings)
    for warning in warnings:
        print(f"Warning: {warning['message']} ({warning.get('path')})")

    for name in ("prefix", "start_number", "digits", "position", "group_by", "max_concurrent_groups", "rows_per_chunk"):
        value = getattr(args, name)
        if value is not None:
            setattr(config, name, value)
    if args.no_priority:
        config.priority_ordering = False
    if args.no_metadata:
        config.metadata_enabled = False
    config.logs_dir = args.logs_dir

    try:
        mapping = _parse_mapping(args.map)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))

    try:
        raw_rows = read_manifest(args.manifest)
        sources = load_sources(args.sources)
    except (OSError, ValueError, ImportError) as exc:
        print(f"ERROR: {exc}")
        return EXIT_RUN_FAILED

    print(f"Loaded {len(raw_rows)} manifest row(s) and {len(sources)} source PDF(s)")

    def progress(percent: int) -> None:
        print(f"  [{percent:3d}%]")

    orchestrator = AssemblyOrchestrator(config, single_source=True if args.single_source else None)
    try:
        result = orchestrator.assemble(
            raw_rows,
            sources,
            mapping=mapping,
            progress_callback=progress,
            log_callback=print,
        )
    except MappingRequiredError as exc:
        print(f"ERROR: {exc}")
        print("Use --map FIELD=COLUMN to map the missing field(s).")
        return EXIT_RUN_FAILED
    except AssemblyError as exc:
        print(f"ERROR: {exc}")
        return EXIT_RUN_FAILED

    if args.settings and args.save_settings:
        save_settings(args.settings, config)

    output_path = args.output or generate_default_filename()
    if os.path.isdir(output_path):
        output_path = os.path.join(output_path, generate_default_filename())
    archive = package_results(result, config)
    with open(output_path, 'wb') as handle:
        handle.write(archive)

    print(f"\nCreated: {output_path} ({format_file_size(len(archive))})")
    print(f"Groups assembled: {len(result.outputs)}")
    if result.skipped_count:
        print(f"Skipped rows: {result.skipped_count}")
        for line in result.skip_report():
            print(f"  {line}")
    if result.invalid_rows:
        print(f"Invalid rows: {len(result.invalid_rows)}")
    if result.failures:
        print("Failed groups:")
        for key in sorted(result.failures):
            print(f"  {key}: {result.failures[key]}")
        return EXIT_GROUP_FAILURES
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
