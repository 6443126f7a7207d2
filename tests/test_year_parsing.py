import pytest

import filmweb_export as fe


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1984", fe.ReleaseYear(1984, 1984)),
        (" 1984 ", fe.ReleaseYear(1984, 1984)),
        ("2015-2019", fe.ReleaseYear(2015, 2019)),
        ("2015-", fe.ReleaseYear(2015, 2015)),
    ],
)
def test_parse_release_year(text, expected):
    assert fe.parse_release_year(text, 7) == expected


def test_unparseable_year_names_the_record():
    with pytest.raises(fe.RecordParseError) as excinfo:
        fe.parse_release_year("abc", 42)
    assert excinfo.value.source_id == 42
    assert "abc" in excinfo.value.detail


def test_year_window():
    year = fe.ReleaseYear(2015, 2019)
    assert year.is_range
    assert year.window() == (2015, 2015)
    assert year.window(1) == (2014, 2016)


@pytest.mark.parametrize("total, pages", [(0, 1), (24, 1), (25, 2), (60, 3)])
def test_page_count(total, pages):
    assert fe.page_count(total) == pages
