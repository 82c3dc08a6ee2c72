import argparse
import json
import zipfile

import pytest

from assembler_cli import EXIT_GROUP_FAILURES, EXIT_OK, EXIT_RUN_FAILED, _parse_mapping, load_sources, main


def _write_manifest(path, lines):
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_load_sources_reads_folders_in_name_order(tmp_path, make_pdf):
    make_pdf("b.pdf")
    make_pdf("a.pdf")
    (tmp_path / "notes.txt").write_text("skip me", encoding="utf-8")

    sources = load_sources([str(tmp_path)])

    assert list(sources) == ["a.pdf", "b.pdf"]


def test_load_sources_rejects_missing_paths(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_sources([str(tmp_path / "nope")])


def test_parse_mapping_validates_entries():
    assert _parse_mapping(["type = Kind", "source_id=Doc"]) == {"type": "Kind", "source_id": "Doc"}
    with pytest.raises(argparse.ArgumentTypeError):
        _parse_mapping(["colour=Paint"])


def test_cli_writes_archive_and_returns_ok(tmp_path, make_pdf, capsys):
    make_pdf("s.pdf", pages=2)
    manifest = _write_manifest(tmp_path / "manifest.csv", [
        "Source File,Page,Date,Type",
        "s.pdf,1-2,2024-01-01,Invoice",
    ])
    output = tmp_path / "out.zip"

    code = main([str(manifest), str(tmp_path / "s.pdf"), "-o", str(output), "--prefix", "CASE-", "--digits", "4"])

    assert code == EXIT_OK
    with zipfile.ZipFile(output) as archive:
        assert "2024-01-01_Invoice.pdf" in archive.namelist()
        assert "CASE-0001 - CASE-0002" in archive.read("PROCESSING_SUMMARY.txt").decode("utf-8")
    assert "Groups assembled: 1" in capsys.readouterr().out


def test_cli_reports_group_failures(tmp_path, make_pdf, capsys):
    make_pdf("s.pdf", pages=1)
    manifest = _write_manifest(tmp_path / "manifest.csv", [
        "Source File,Page,Date,Type",
        "s.pdf,1,2024-01-01,A",
        "s.pdf,5,2024-01-01,B",
    ])

    code = main([str(manifest), str(tmp_path / "s.pdf"), "-o", str(tmp_path / "out.zip"), "--group-by", "type"])

    assert code == EXIT_GROUP_FAILURES
    assert "B: Invalid page number 5 in s.pdf (PDF has 1 pages)" in capsys.readouterr().out


def test_cli_run_level_errors_exit_with_run_failed(tmp_path, make_pdf, capsys):
    make_pdf("s.pdf")
    manifest = _write_manifest(tmp_path / "manifest.csv", ["foo,bar", "1,2"])

    code = main([str(manifest), str(tmp_path / "s.pdf"), "-o", str(tmp_path / "out.zip")])

    assert code == EXIT_RUN_FAILED
    assert "--map FIELD=COLUMN" in capsys.readouterr().out
    assert not (tmp_path / "out.zip").exists()


def test_cli_saves_settings_when_asked(tmp_path, make_pdf):
    make_pdf("s.pdf")
    manifest = _write_manifest(tmp_path / "manifest.csv", ["Source File,Page,Date,Type", "s.pdf,1,2024-01-01,A"])
    settings = tmp_path / "settings.json"

    code = main([
        str(manifest), str(tmp_path / "s.pdf"),
        "-o", str(tmp_path / "out.zip"),
        "--settings", str(settings), "--save-settings",
        "--position", "top-left",
    ])

    assert code == EXIT_OK
    assert json.loads(settings.read_text(encoding="utf-8"))["settings"]["position"] == "top-left"


def test_cli_lists_skipped_rows(tmp_path, make_pdf, capsys):
    make_pdf("s.pdf", pages=1)
    manifest = _write_manifest(tmp_path / "manifest.csv", [
        "Source File,Page,Date,Type",
        "s.pdf,1,2024-01-01,A",
        "s.pdf,5-3,2024-01-01,A",
    ])

    code = main([str(manifest), str(tmp_path / "s.pdf"), "-o", str(tmp_path / "out.zip")])

    out = capsys.readouterr().out
    assert code == EXIT_OK
    assert "Skipped rows: 1" in out
    assert "manifest row 2: invalid page reference '5-3'" in out


def test_load_sources_rejects_duplicate_file_names(tmp_path, make_pdf_bytes):
    first = tmp_path / "one"
    second = tmp_path / "two"
    first.mkdir()
    second.mkdir()
    (first / "a.pdf").write_bytes(make_pdf_bytes("first"))
    (second / "a.pdf").write_bytes(make_pdf_bytes("second"))

    with pytest.raises(ValueError, match="Duplicate source file name 'a.pdf'"):
        load_sources([str(first), str(second)])


def test_cli_duplicate_sources_fail_the_run(tmp_path, make_pdf_bytes, capsys):
    for folder in ("one", "two"):
        (tmp_path / folder).mkdir()
        (tmp_path / folder / "a.pdf").write_bytes(make_pdf_bytes(folder))
    manifest = _write_manifest(tmp_path / "manifest.csv", ["Source File,Page,Date,Type", "a.pdf,1,2024-01-01,A"])

    code = main([str(manifest), str(tmp_path / "one"), str(tmp_path / "two"), "-o", str(tmp_path / "out.zip")])

    assert code == EXIT_RUN_FAILED
    assert "ERROR: Duplicate source file name 'a.pdf'" in capsys.readouterr().out
