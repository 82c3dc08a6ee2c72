from assembly_engine import Priority, Row, compare_rows, sequence_rows


def _row(page, **fields):
    return Row(source_id="a.pdf", page_number=page, **fields)


def test_priority_sorts_before_dates_when_enabled():
    rows = [
        _row(1, primary_date="2024-01-01", priority=Priority.LOW),
        _row(2, primary_date="2024-03-01", priority=Priority.CRITICAL),
        _row(3, primary_date="2024-02-01", priority=Priority.HIGH),
    ]

    ordered = sequence_rows(rows, priority_ordering=True)

    assert [row.page_number for row in ordered] == [2, 3, 1]


def test_priority_is_ignored_when_disabled():
    rows = [
        _row(1, primary_date="2024-02-01", priority=Priority.CRITICAL),
        _row(2, primary_date="2024-01-01", priority=Priority.LOW),
    ]

    ordered = sequence_rows(rows, priority_ordering=False)

    assert [row.page_number for row in ordered] == [2, 1]


def test_settlement_date_then_id_then_page_break_ties():
    rows = [
        _row(5, primary_date="d", settlement_date="s2", id="A"),
        _row(4, primary_date="d", settlement_date="s1", id="B"),
        _row(3, primary_date="d", settlement_date="s1", id="A"),
        _row(2, primary_date="d", settlement_date="s1", id="A"),
    ]

    ordered = sequence_rows(rows)

    assert [row.page_number for row in ordered] == [2, 3, 4, 5]


def test_id_only_compares_when_both_rows_carry_one():
    with_id = _row(9, primary_date="d", id="Z")
    without_id = _row(1, primary_date="d")

    assert compare_rows(without_id, with_id) < 0
    assert compare_rows(with_id, without_id) > 0


def test_fully_equal_rows_keep_input_order():
    first = Row(source_id="a.pdf", page_number=1, primary_date="d")
    second = Row(source_id="b.pdf", page_number=1, primary_date="d")

    assert sequence_rows([first, second]) == [first, second]
    assert sequence_rows([second, first]) == [second, first]
