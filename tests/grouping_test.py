import pytest

from assembly_engine import (
    ConfigurationError,
    DocumentGrouper,
    GroupingStrategy,
    Row,
    build_group_key,
    sanitize_group_key,
)


def _row(**fields):
    fields.setdefault("source_id", "a.pdf")
    fields.setdefault("page_number", 1)
    return Row(**fields)


@pytest.mark.parametrize(
    "strategy, expected",
    [
        (GroupingStrategy.DATE_AND_TYPE, "2024-01-02T10_00_Trade_Confirm"),
        (GroupingStrategy.DATE, "2024-01-02T10_00"),
        (GroupingStrategy.TYPE, "Trade_Confirm"),
        (GroupingStrategy.SETTLEMENT_DATE, "Settlement_2024-01-05"),
        (GroupingStrategy.DAY_BUCKET, "DOCS_2024-01-02"),
        (GroupingStrategy.ASSET_CLASS, "Equity"),
        (GroupingStrategy.COUNTERPARTY, "Acme_Co_"),
        (GroupingStrategy.NONE, "ALL_DOCUMENTS"),
    ],
)
def test_group_key_per_strategy(strategy, expected):
    row = _row(
        primary_date="2024-01-02T10:00",
        settlement_date="2024-01-05",
        type="Trade Confirm",
        asset_class="Equity",
        counterparty="Acme Co.",
    )

    assert build_group_key(row, strategy) == expected


def test_sanitize_replaces_everything_outside_safe_set():
    assert sanitize_group_key("a/b c:d-e_f") == "a_b_c_d-e_f"


def test_unknown_strategy_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        DocumentGrouper().group([], "by_colour", {})


def test_rows_with_unavailable_sources_are_skipped_and_counted():
    rows = [_row(source_id="a.pdf", type="X"), _row(source_id="missing.pdf", type="X"), _row(source_id="a.pdf", type="Y")]
    warnings = []
    messages = []

    result = DocumentGrouper().group(rows, "type", {"a.pdf": b""}, warnings, messages.append)

    assert list(result.groups) == ["X", "Y"]
    assert result.skipped_count == 1
    assert result.skipped == [{"row_index": 1, "source_id": "missing.pdf"}]
    assert result.total_rows == 2
    assert warnings[0]["code"] == "source_not_found"
    assert messages == ["Skipping: 'missing.pdf' not found"]


def test_groups_keep_manifest_order_within_each_group():
    rows = [_row(page_number=3, type="X"), _row(page_number=1, type="X")]

    result = DocumentGrouper().group(rows, GroupingStrategy.TYPE, {"a.pdf"})

    assert [row.page_number for row in result.groups["X"]] == [3, 1]


def test_sanitized_key_collisions_merge_and_are_reported():
    rows = [_row(type="A/B"), _row(type="A B"), _row(type="A/B")]
    warnings = []

    result = DocumentGrouper().group(rows, "type", {"a.pdf"}, warnings)

    assert list(result.groups) == ["A_B"]
    assert len(result.groups["A_B"]) == 3
    assert result.collisions == {"A_B": ["A/B", "A B"]}
    assert [warning["code"] for warning in warnings] == ["group_key_collision"]
