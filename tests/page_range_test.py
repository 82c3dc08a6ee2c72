from assembly_engine import (
    expand_all_page_ranges,
    expand_row_page_range,
    has_page_ranges,
    page_range_stats,
    parse_page_range,
)


def test_range_expands_inclusively_in_ascending_order():
    assert parse_page_range("3-5") == [3, 4, 5]
    assert parse_page_range(" 7 - 7 ") == [7]


def test_en_and_em_dash_are_accepted_as_separators():
    assert parse_page_range("1–3") == [1, 2, 3]
    assert parse_page_range("2—4") == [2, 3, 4]


def test_single_values_parse_from_strings_and_numbers():
    assert parse_page_range("15") == [15]
    assert parse_page_range(4) == [4]
    assert parse_page_range(2.0) == [2]


def test_invalid_references_are_dropped_with_warnings():
    warnings = []

    assert parse_page_range("5-3", warnings) == []
    assert parse_page_range("0", warnings) == []
    assert parse_page_range("abc", warnings) == []
    assert parse_page_range("1-2-3", warnings) == []
    assert parse_page_range("0-2", warnings) == []

    codes = [warning["code"] for warning in warnings]
    assert codes == [
        "page_range_invalid",
        "page_number_invalid",
        "page_number_invalid",
        "page_range_invalid",
        "page_range_invalid",
    ]
    assert warnings[0]["value"] == "5-3"


def test_expanded_rows_copy_every_other_field():
    row = {"file": "a.pdf", "page": "2-4", "type": "Invoice"}

    expanded = expand_row_page_range(row, "page")

    assert [item["page"] for item in expanded] == [2, 3, 4]
    assert all(item["file"] == "a.pdf" and item["type"] == "Invoice" for item in expanded)
    assert row["page"] == "2-4"


def test_blank_page_field_passes_row_through_unchanged():
    row = {"file": "a.pdf", "page": "  "}

    assert expand_row_page_range(row, "page") == [row]
    assert expand_row_page_range({"file": "a.pdf"}, "page") == [{"file": "a.pdf"}]


def test_expand_all_tags_warnings_with_row_index():
    rows = [
        {"page": "1-2"},
        {"page": "9-1"},
        {"page": "3"},
    ]
    warnings = []

    expanded = expand_all_page_ranges(rows, "page", warnings)

    assert [item["page"] for item in expanded] == [1, 2, 3]
    assert len(warnings) == 1
    assert warnings[0]["row_index"] == 1


def test_page_range_stats_and_detection():
    rows = [{"page": "1-3"}, {"page": "4"}, {"page": "x"}]

    assert has_page_ranges(rows, "page") is True
    assert has_page_ranges([{"page": 4}], "page") is False
    assert page_range_stats(rows, "page") == {
        "total_rows": 3,
        "total_pages": 4,
        "ranges": 1,
        "singles": 1,
        "invalid": 1,
    }
