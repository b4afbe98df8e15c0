from finnacli import (
    TITLE_WIDTH,
    Record,
    SearchParameters,
    Style,
    format_result,
    render_page,
    render_record,
)
from tests.helpers import make_page, make_record


def test_result_line_contents():
    lines = format_result(1, Record.from_json(make_record()))
    assert lines[0].startswith("  1. Kalevala")
    assert "(1849)" in lines[0]
    assert lines[0].endswith("Kirja [1/Book/Book/]")
    assert lines[1].strip() == "Lönnrot, Elias"
    assert lines[2].strip() == "Helmet-kirjastot"


def test_long_titles_are_truncated():
    record = Record.from_json(make_record(title="x" * 200, year=None))
    title = format_result(12, record)[0][len(" 12. "):]
    assert title.startswith("x" * (TITLE_WIDTH - 1) + "…")


def test_record_with_nothing_renders():
    lines = format_result(1, Record())
    assert lines == ["  1. " + f"{'(untitled)':<{TITLE_WIDTH}}" + "  ? [?]"]


def test_page_footer():
    params = SearchParameters(lookfor=("cat",), page=2, limit=2, filters=("format:0/Book/",))
    page = make_page(make_record(id="a.1"), make_record(id="a.2"), count=5)
    lines = render_page(params, page)
    assert lines[0].startswith("  1. ")
    assert lines[-1] == "5 results (page 2/3)  filters: format:0/Book/"


def test_empty_page_footer():
    lines = render_page(SearchParameters(), make_page(count=0))
    assert lines[-1] == "0 results (page 1)"


def test_color_only_when_enabled():
    record = Record.from_json(make_record())
    assert Style.GREEN not in "".join(format_result(1, record))
    assert Style.GREEN in "".join(format_result(1, record, color=True))


def test_record_detail_view():
    record = Record.from_json(make_record(
        summary=["First line.", "Second line."],
        languages=["fin"],
        rawData={"hidden": True},
    ))
    text = "\n".join(render_record(record))
    assert text.splitlines()[0] == "Kalevala"
    assert "helmet.1234" in text
    assert "Gallen-Kallela, Akseli (kuvittaja)" in text
    assert "Kirja [1/Book/Book/]" in text
    assert "languages" in text and "fin" in text
    assert "First line." in text
    assert "hidden" not in text


def test_record_detail_view_legacy_authors():
    record = Record.from_json({
        "id": "x.1",
        "authors": {"primary": {"Sibelius, Jean": {}}},
        "nonPresenterAuthors": {"Kajanus, Robert": {}},
    })
    text = "\n".join(render_record(record))
    assert "Sibelius, Jean" in text
    assert "Kajanus, Robert" in text
    assert "? [?]" in text
