#!/usr/bin/env python3
"""
finna-cli - Search Finnish library, archive and museum collections from the terminal.

Talks to the public Finna REST API (api.finna.fi). Works as a one-shot search
or as an interactive loop with paging and record actions.
"""

import argparse
import http.client
import json
import logging
import re
import shlex
import shutil
import signal
import subprocess
import sys
import urllib.error
import urllib.parse
import urllib.request
import webbrowser
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Callable

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory

logger = logging.getLogger(__name__)

# ── Configuration ───────────────────────────────────────────────────

CONFIG_DIR = Path.home() / ".finna-cli"
CONFIG_FILE = CONFIG_DIR / "config.json"
HISTORY_FILE = CONFIG_DIR / "history"


@dataclass
class AppConfig:
    """Endpoints and launcher settings."""
    api_base_url: str = "https://api.finna.fi/api/v1"
    site_base_url: str = "https://www.finna.fi"
    image_base_url: str = "https://api.finna.fi"
    image_viewer: str = "feh"
    legacy_fields: bool = False

    @classmethod
    def load(cls, path: Path | None = None) -> "AppConfig":
        path = path or CONFIG_FILE
        if not path.exists():
            return cls()
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable config %s: %s", path, e)
            return cls()
        if not isinstance(data, dict):
            logger.warning("Ignoring config %s: expected a JSON object", path)
            return cls()
        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if f.type is str and isinstance(value, str) and value.strip():
                values[f.name] = value.strip()
            elif f.type is bool and isinstance(value, bool):
                values[f.name] = value
            else:
                logger.warning("Ignoring config %s: bad value for %s: %r", path, f.name, value)
        return cls(**values)


# ── Errors ──────────────────────────────────────────────────────────

class FinnaError(Exception):
    """Base for every failure reported to the user as a single line."""


class InvalidQuery(FinnaError):
    pass


class NetworkError(FinnaError):
    pass


class ParseError(FinnaError):
    pass


class InvalidIndex(FinnaError):
    pass


class InvalidInput(FinnaError):
    pass


class UnknownCommand(FinnaError):
    pass


class LaunchError(FinnaError):
    pass


# ── Record model ────────────────────────────────────────────────────

@dataclass(frozen=True)
class TranslatedValue:
    value: str
    translated: str


@dataclass(frozen=True)
class Author:
    name: str
    role: str | None = None


def _text(value) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def _translated_list(value) -> list[TranslatedValue]:
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if isinstance(item, dict):
            code = _text(item.get("value")) or ""
            label = _text(item.get("translated")) or code
            out.append(TranslatedValue(code, label))
        elif isinstance(item, str):
            out.append(TranslatedValue(item, item))
    return out


def _string_list(value) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [s for s in (_text(v) for v in value) if s]


def _author_list(value) -> list[Author]:
    out = []
    for item in value:
        if isinstance(item, dict):
            name = _text(item.get("name"))
            if name:
                out.append(Author(name, _text(item.get("role"))))
        elif isinstance(item, str) and item.strip():
            out.append(Author(item.strip()))
    return out


@dataclass(frozen=True)
class Record:
    """
    One catalog entry.

    Known keys are promoted to typed fields; everything else (including the
    dict-shaped author fields of older responses) stays in `extra`.
    """
    id: str | None = None
    title: str | None = None
    formats: list[TranslatedValue] = field(default_factory=list)
    buildings: list[TranslatedValue] = field(default_factory=list)
    description: str | None = None
    summary: list[str] | None = None
    year: str | None = None
    primary_authors: list[str] = field(default_factory=list)
    other_authors: list[Author] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict) -> "Record":
        extra = dict(data)
        summary = _string_list(extra.pop("summary", None))
        primary = extra.get("primaryAuthors")
        others = extra.get("nonPresenterAuthors")
        if isinstance(primary, list):
            del extra["primaryAuthors"]
        if isinstance(others, list):
            del extra["nonPresenterAuthors"]
        return cls(
            id=_text(extra.pop("id", None)),
            title=_text(extra.pop("title", None)),
            formats=_translated_list(extra.pop("formats", None)),
            buildings=_translated_list(extra.pop("buildings", None)),
            description=_text(extra.pop("description", None)),
            summary=summary or None,
            year=_text(extra.pop("year", None)),
            primary_authors=_string_list(primary) if isinstance(primary, list) else [],
            other_authors=_author_list(others) if isinstance(others, list) else [],
            images=_string_list(extra.pop("images", None)),
            extra=extra,
        )

    def get(self, key: str, default=None):
        return self.extra.get(key, default)


@dataclass(frozen=True)
class ResultPage:
    records: tuple[Record, ...] = ()
    result_count: int = 0

    @classmethod
    def from_json(cls, data) -> "ResultPage":
        if not isinstance(data, dict):
            raise ParseError("Unexpected response: not a JSON object")
        count = data.get("resultCount")
        if not isinstance(count, int) or isinstance(count, bool):
            message = data.get("statusMessage") or "missing resultCount"
            raise ParseError(f"Unexpected response: {message}")
        raw = data.get("records", [])
        if not isinstance(raw, list) or not all(isinstance(r, dict) for r in raw):
            raise ParseError("Unexpected response: records is not a list of objects")
        return cls(tuple(Record.from_json(r) for r in raw), count)


def canonical_format(record: Record) -> tuple[str, str]:
    """The most specific format is listed last."""
    if not record.formats:
        return "?", "?"
    last = record.formats[-1]
    return last.translated, last.value


def canonical_building(record: Record) -> str:
    return record.buildings[0].translated if record.buildings else ""


def legacy_primary_authors(record: Record) -> list[str]:
    authors = record.get("authors")
    if not isinstance(authors, dict):
        return []
    primary = authors.get("primary")
    return list(primary) if isinstance(primary, dict) else []


def legacy_other_authors(record: Record) -> list[str]:
    others = record.get("nonPresenterAuthors")
    return list(others) if isinstance(others, dict) else []


def display_authors(record: Record) -> list[str]:
    """Primary authors, or the secondary ones when there are none. Never both."""
    primary = record.primary_authors or legacy_primary_authors(record)
    if primary:
        return list(primary)
    return [a.name for a in record.other_authors] or legacy_other_authors(record)


# ── Query building ──────────────────────────────────────────────────

SEARCH_FIELDS = (
    "id", "title", "formats", "buildings", "images",
    "primaryAuthors", "nonPresenterAuthors", "year",
)
LEGACY_SEARCH_FIELDS = (
    "id", "title", "formats", "authors", "buildings", "nonPresenterAuthors",
)
SUMMARY_FIELDS = SEARCH_FIELDS + (
    "description", "summary", "languages", "publishers",
    "subjects", "physicalDescriptions", "series",
)
FULL_RECORD_FIELDS = ("fullRecord",)
RAW_DATA_FIELDS = ("rawData",)


@dataclass(frozen=True)
class SearchParameters:
    lookfor: tuple[str, ...] = ()
    filters: tuple[str, ...] = ()
    type: str = "AllFields"
    page: int = 1
    limit: int = 20
    lng: str = "fi"
    sort: str = "relevance,id asc"
    fields: tuple[str, ...] = ()

    @property
    def query_text(self) -> str:
        return " ".join(self.lookfor).strip()


def _check_positive(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidQuery(f"{name} must be a positive integer, got {value!r}")


def build_search_query(params: SearchParameters, legacy: bool = False) -> str:
    """
    Build the query string for the search endpoint.

    The free-text part is appended last as its own `lookfor` value so that it
    never travels inside the structured portion.
    """
    lookfor = params.query_text
    structured = replace(
        params,
        fields=LEGACY_SEARCH_FIELDS if legacy else SEARCH_FIELDS,
        lookfor=(),
    )
    _check_positive("page", structured.page)
    _check_positive("limit", structured.limit)
    if not all(isinstance(f, str) for f in structured.filters):
        raise InvalidQuery("filters must be strings")

    query = {
        "type": structured.type,
        "filter[]": list(structured.filters),
        "sort": structured.sort,
        "page": structured.page,
        "limit": structured.limit,
        "lng": structured.lng,
        "prettyPrint": "false",
        "field[]": list(structured.fields),
    }
    try:
        encoded = urllib.parse.urlencode(query, doseq=True)
    except TypeError as e:
        raise InvalidQuery(f"Could not encode search parameters: {e}") from e
    return f"{encoded}&lookfor={urllib.parse.quote(lookfor, safe='')}"


def build_record_query(record_id: str, record_fields, lng: str | None = None) -> str:
    """Build the query string for the record endpoint. Exactly `record_fields` are requested."""
    if not isinstance(record_id, str) or not record_id.strip():
        raise InvalidQuery("Record id must be a non-empty string")
    query = {"id[]": [record_id.strip()], "field[]": list(record_fields)}
    if lng:
        query["lng"] = lng
    query["prettyPrint"] = "false"
    return urllib.parse.urlencode(query, doseq=True)


def search_page_url(config: AppConfig, query: str) -> str:
    return f"{config.site_base_url.rstrip('/')}/Search/Results?{query}"


def record_page_url(config: AppConfig, record_id: str, holdings: bool = False) -> str:
    url = f"{config.site_base_url.rstrip('/')}/Record/{urllib.parse.quote(record_id, safe='.:')}"
    return url + "/Holdings#tabnav" if holdings else url


def image_urls(config: AppConfig, record: Record) -> list[str]:
    base = config.image_base_url.rstrip("/")
    urls = []
    for path in record.images:
        if path.startswith(("http://", "https://")):
            urls.append(path)
        else:
            urls.append(f"{base}/{path.lstrip('/')}")
    return urls


# ── Full record markup ──────────────────────────────────────────────

_TAG_GAP = re.compile(r">(\s*)<")
_ESCAPE = re.compile(r"\\(.)", re.DOTALL)
_ESCAPES = {"n": "", "r": "", "t": "\t", '"': '"', "\\": "\\"}


def normalize_full_record(blob: str) -> str:
    """
    Pretty-print the JSON-escaped fullRecord blob.

    Line-break escapes are dropped, tab, quote and backslash escapes undone,
    the surrounding quotes stripped, and each `><` boundary
    gets a line break that keeps the whitespace already between the tags.
    """
    text = _ESCAPE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(0)), blob)
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        text = text[1:-1]
    return _TAG_GAP.sub(lambda m: f">\n{m.group(1)}<", text)


# ── Network ─────────────────────────────────────────────────────────

_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "finna-cli/0.1",
}


class FinnaApi:
    """GET-and-decode access to the search and record endpoints."""

    def __init__(self, base_url: str, timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get(self, endpoint: str, query: str):
        url = f"{self.base_url}/{endpoint}?{query}"
        logger.debug("GET %s", url)
        try:
            req = urllib.request.Request(url, headers=_HEADERS)
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read()
        except urllib.error.HTTPError as e:
            raise NetworkError(f"HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise NetworkError(f"Connection error: {e.reason}") from e
        except OSError as e:
            raise NetworkError(f"Connection error: {e}") from e
        except http.client.HTTPException as e:
            raise NetworkError(f"Connection error: {e!r}") from e
        except ValueError as e:
            raise InvalidQuery(f"Bad request URL {url}: {e}") from e
        try:
            return json.loads(body.decode())
        except ValueError as e:
            raise ParseError(f"Invalid JSON response: {e}") from e

    def search(self, query: str) -> ResultPage:
        return ResultPage.from_json(self._get("search", query))

    def record(self, query: str) -> Record:
        page = ResultPage.from_json(self._get("record", query))
        if not page.records:
            raise ParseError("Record not found")
        return page.records[0]


# ── External launchers ──────────────────────────────────────────────

class Launcher:
    """Opens web pages in the browser and images in an external viewer."""

    def __init__(self, image_viewer: str = "feh"):
        self.image_viewer = image_viewer

    def open_url(self, url: str) -> None:
        if not webbrowser.open(url):
            raise LaunchError(f"Could not open a browser for {url}")

    def open_images(self, urls: list[str]) -> None:
        cmd = shlex.split(self.image_viewer)
        if not cmd or not shutil.which(cmd[0]):
            raise LaunchError(f"Image viewer '{self.image_viewer}' not found")
        try:
            subprocess.Popen(
                [*cmd, *urls],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise LaunchError(f"Could not start {cmd[0]}: {e}") from e


# ── History ─────────────────────────────────────────────────────────

class HistoryStore:
    """Prompt history preloaded from disk; new lines are appended on save()."""

    def __init__(self, path: Path = HISTORY_FILE):
        self.path = path
        self.history = InMemoryHistory()
        self._new: list[str] = []

    def load(self):
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Could not read history %s: %s", self.path, e)
            return
        for line in lines:
            if line.strip():
                self.history.append_string(line)

    def add(self, line: str):
        self._new.append(line)

    def save(self):
        if not self._new:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.writelines(f"{line}\n" for line in self._new)
        except OSError as e:
            logger.warning("Could not save history to %s: %s", self.path, e)
            return
        self._new.clear()


# ── Rendering ───────────────────────────────────────────────────────

TITLE_WIDTH = 50


class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[32m"


def paint(text: str, *codes: str, color: bool = False) -> str:
    if not color or not text:
        return text
    return "".join(codes) + text + Style.RESET


def _fit(text: str, width: int) -> str:
    if len(text) > width:
        text = text[: width - 1] + "…"
    return f"{text:<{width}}"


def format_result(index: int, record: Record, *, color: bool = False) -> list[str]:
    label, code = canonical_format(record)
    title = _fit(record.title or "(untitled)", TITLE_WIDTH)
    year = f" ({record.year})" if record.year else ""
    lines = [
        f"{index:>3}. {paint(title, Style.BOLD, Style.GREEN, color=color)}"
        f"{year}  {paint(label, Style.GREEN, color=color)} [{code}]"
    ]
    authors = " | ".join(display_authors(record))
    if authors:
        lines.append(f"     {authors[:100]}")
    building = canonical_building(record)
    if building:
        lines.append(f"     {paint(building, Style.DIM, color=color)}")
    return lines


def render_page(params: SearchParameters, page: ResultPage, *, color: bool = False) -> list[str]:
    lines = []
    for i, record in enumerate(page.records, 1):
        lines.extend(format_result(i, record, color=color))
    total = paint(str(page.result_count), Style.BOLD, Style.DIM, color=color)
    pages = -(-page.result_count // params.limit) if params.limit else 0
    footer = f"{total} results (page {params.page}"
    footer += f"/{pages})" if pages else ")"
    if params.filters:
        footer += f"  filters: {', '.join(params.filters)}"
    lines.append("")
    lines.append(footer)
    return lines


def _short(value) -> str:
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        text = "; ".join(value)
    elif isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False)
    return text[:200] + ("…" if len(text) > 200 else "")


def render_record(record: Record, *, color: bool = False) -> list[str]:
    """Detail view of a single record."""
    label, code = canonical_format(record)
    lines = [paint(record.title or "(untitled)", Style.BOLD, Style.GREEN, color=color)]
    rows = [("Id", record.id or "?")]
    primary = record.primary_authors or legacy_primary_authors(record)
    if primary:
        rows.append(("Authors", " | ".join(primary)))
    others = [
        f"{a.name} ({a.role})" if a.role else a.name for a in record.other_authors
    ] or legacy_other_authors(record)
    if others:
        rows.append(("Other authors", " | ".join(others)))
    if record.year:
        rows.append(("Year", record.year))
    rows.append(("Format", f"{label} [{code}]"))
    building = canonical_building(record)
    if building:
        rows.append(("Building", building))
    if record.description:
        rows.append(("Description", record.description))
    if record.images:
        rows.append(("Images", str(len(record.images))))
    for key in sorted(record.extra):
        if key in ("authors", "nonPresenterAuthors", "rawData", "fullRecord"):
            continue
        rows.append((key, _short(record.extra[key])))

    for key, value in rows:
        lines.append(f"  {paint(key, Style.DIM, color=color):<14} {value}")
    if record.summary:
        lines.append("")
        lines.extend(f"  {line}" for line in record.summary)
    return lines


def get_help() -> str:
    return """\
  Search:
    TEXT [-f FILTER]... [-l N] [-p N] [-t TYPE] [--lng LNG] [-s SORT]

  Commands:
    :n               Next page
    :p               Previous page
    :r               Re-run current search
    :finna           Open current search on the Finna website
    :img             Open all images from the current page
    :info N|ID       Show record details
    :raw N|ID        Show raw record data
    :full N|ID       Show full record markup
    :img N|ID        Open the record's first image
    :open N|ID       Open the record on the Finna website
    :hold N|ID       Open the record's holdings
    :h               This help
    :q               Quit

  N is the number shown in the result list, ID a Finna record id."""


# ── Command parsing ─────────────────────────────────────────────────

SESSION_COMMANDS = ("q", "n", "p", "r", "finna", "img", "h")
RECORD_ACTIONS = ("info", "raw", "full", "img", "open", "hold")

_COLON_COMMAND = re.compile(r"^:([a-z]+)(?: ([A-Za-z0-9_.:-]+))?$")


@dataclass(frozen=True)
class SessionCommand:
    name: str


@dataclass(frozen=True)
class IndexedAction:
    name: str
    index: int


@dataclass(frozen=True)
class LiteralAction:
    name: str
    record_id: str


@dataclass(frozen=True)
class NewSearch:
    params: SearchParameters


class _LineParser(argparse.ArgumentParser):
    """ArgumentParser that reports errors as InvalidInput instead of exiting."""

    def error(self, message):
        raise InvalidInput(message)


def positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {n}")
    return n


def add_search_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("lookfor", nargs="*", help="Free-text search terms")
    parser.add_argument(
        "-f", "--filter",
        action="append",
        dest="filters",
        metavar="FILTER",
        help='Filter expression, e.g. format:"0/Book/" (repeatable)'
    )
    parser.add_argument("-l", "--limit", type=positive_int, help="Results per page (default 20)")
    parser.add_argument("-p", "--page", type=positive_int, help="Page number (default 1)")
    parser.add_argument("--lng", help="Language of translated values (default fi)")
    parser.add_argument("-t", "--type", help="Search type (default AllFields)")
    parser.add_argument("-s", "--sort", help="Sort order (default 'relevance,id asc')")


def params_from_args(args: argparse.Namespace, current: SearchParameters) -> SearchParameters:
    """
    Query-specific options start from defaults; limit, lng and sort carry
    over from `current`.
    """
    defaults = SearchParameters()
    return SearchParameters(
        lookfor=tuple(args.lookfor),
        filters=tuple(args.filters or ()),
        type=args.type or defaults.type,
        page=args.page or defaults.page,
        limit=args.limit or current.limit,
        lng=args.lng or current.lng,
        sort=args.sort or current.sort,
    )


def parse_search_line(line: str, current: SearchParameters) -> SearchParameters:
    parser = _LineParser(prog="search", add_help=False)
    add_search_arguments(parser)
    args = parser.parse_intermixed_args(line.split())
    return params_from_args(args, current)


def classify(line: str, current: SearchParameters):
    """
    Turn one input line into a command.

    Returns SessionCommand, IndexedAction, LiteralAction or NewSearch, or None
    for a blank line. An all-digit argument is always an index.
    """
    line = line.strip()
    if not line:
        return None
    m = _COLON_COMMAND.match(line)
    if not m:
        return NewSearch(parse_search_line(line, current))
    name, arg = m.groups()
    if arg is None:
        if name not in SESSION_COMMANDS:
            raise UnknownCommand(f"Unknown command ':{name}'  (:h for help)")
        return SessionCommand(name)
    if name not in RECORD_ACTIONS:
        raise UnknownCommand(f"Unknown command ':{name} {arg}'  (:h for help)")
    if arg.isdigit():
        return IndexedAction(name, int(arg))
    return LiteralAction(name, arg)


def resolve_index(page: ResultPage | None, index: int) -> Record:
    if page is None or not page.records:
        raise InvalidIndex("No results to pick from")
    if not 1 <= index <= len(page.records):
        raise InvalidIndex(f"No record #{index} (1-{len(page.records)} on this page)")
    return page.records[index - 1]


# ── Session ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionState:
    config: AppConfig
    params: SearchParameters = field(default_factory=SearchParameters)
    page: ResultPage | None = None
    last_query: str | None = None


class Repl:
    """Dispatches input lines against an explicitly passed SessionState."""

    def __init__(self, api, launcher, out: Callable[[str], None] = print, color: bool = False):
        self.api = api
        self.launcher = launcher
        self.out = out
        self.color = color

    def _print(self, lines):
        for line in lines:
            self.out(line)

    def search(self, state: SessionState, params: SearchParameters) -> SessionState:
        query = build_search_query(params, legacy=state.config.legacy_fields)
        page = self.api.search(query)
        self._print(render_page(params, page, color=self.color))
        return replace(state, params=params, page=page, last_query=query)

    def handle(self, line: str, state: SessionState) -> tuple[SessionState, bool]:
        """Process one line. Returns the next state and whether to keep going."""
        try:
            command = classify(line, state.params)
            if isinstance(command, SessionCommand):
                return self._session_command(command.name, state)
            if isinstance(command, NewSearch):
                return self.search(state, command.params), True
            if isinstance(command, IndexedAction):
                record = resolve_index(state.page, command.index)
                if not record.id:
                    raise InvalidIndex(f"Record #{command.index} has no id")
                self._record_action(command.name, record.id, state, record)
            elif isinstance(command, LiteralAction):
                self._record_action(command.name, command.record_id, state)
        except FinnaError as e:
            self.out(f"  ✗ {e}")
        return state, True

    def _session_command(self, name: str, state: SessionState) -> tuple[SessionState, bool]:
        params = state.params
        if name == "q":
            return state, False
        elif name in ("n", "p", "r") and state.last_query is None:
            raise InvalidInput("No search to re-run yet")
        elif name == "n":
            return self.search(state, replace(params, page=params.page + 1)), True
        elif name == "p":
            if params.page <= 1:
                raise InvalidInput("Already on the first page")
            return self.search(state, replace(params, page=params.page - 1)), True
        elif name == "r":
            return self.search(state, params), True
        elif name == "finna":
            if not state.last_query:
                raise InvalidInput("No search to open yet")
            self._open(search_page_url(state.config, state.last_query))
        elif name == "img":
            if state.page is None:
                raise InvalidInput("No results yet")
            urls = [u for r in state.page.records for u in image_urls(state.config, r)]
            if not urls:
                self.out("  No images on this page")
            else:
                self.launcher.open_images(urls)
                self.out(f"  🖼  Opened {len(urls)} images")
        elif name == "h":
            self.out(get_help())
        return state, True

    def _fetch(self, record_id: str, record_fields, state: SessionState) -> Record:
        return self.api.record(build_record_query(record_id, record_fields, state.params.lng))

    def _open(self, url: str):
        self.launcher.open_url(url)
        self.out(f"  🔗 {url}")

    def _record_action(self, name: str, record_id: str, state: SessionState, record: Record | None = None):
        if name == "info":
            self._print(render_record(self._fetch(record_id, SUMMARY_FIELDS, state), color=self.color))
        elif name == "raw":
            raw = self._fetch(record_id, RAW_DATA_FIELDS, state).get("rawData")
            if raw is None:
                raise ParseError(f"No raw data for {record_id}")
            self.out(json.dumps(raw, indent=2, ensure_ascii=False))
        elif name == "full":
            blob = self._fetch(record_id, FULL_RECORD_FIELDS, state).get("fullRecord")
            if blob is None:
                raise ParseError(f"No full record for {record_id}")
            self.out(normalize_full_record(json.dumps(blob, ensure_ascii=False)))
        elif name == "img":
            record = record or self._fetch(record_id, SUMMARY_FIELDS, state)
            urls = image_urls(state.config, record)
            if not urls:
                self.out(f"  No images for {record_id}")
                return
            self.launcher.open_images(urls[:1])
            self.out(f"  🖼  {urls[0]}")
        elif name == "open":
            self._open(record_page_url(state.config, record_id))
        elif name == "hold":
            self._open(record_page_url(state.config, record_id, holdings=True))


def _interrupt(signum, frame):
    raise KeyboardInterrupt


def install_signal_handlers():
    """Treat SIGTERM and SIGHUP like Ctrl-C so the loop still saves history."""
    for name in ("SIGTERM", "SIGHUP"):
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, _interrupt)


def repl_loop(repl: Repl, state: SessionState, read_line: Callable[[str], str],
              history: HistoryStore) -> SessionState:
    """Read-eval loop. History is saved however the loop ends."""
    try:
        while True:
            try:
                line = read_line("> ")
            except (KeyboardInterrupt, EOFError):
                repl.out("\n  Hei hei! 📖")
                break
            except OSError as e:
                repl.out(f"  ✗ Input error: {e}")
                break
            if line.strip():
                history.add(line)
            state, running = repl.handle(line, state)
            if not running:
                repl.out("  Hei hei! 📖")
                break
    except KeyboardInterrupt:
        repl.out("\n  Interrupted")
    finally:
        history.save()
    return state


# ── CLI ─────────────────────────────────────────────────────────────

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Search the Finna library, archive and museum catalog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s kalevala                         Search and enter interactive mode
  %(prog)s sibelius -f 'format:"0/Sound/"'  Search with a filter
  %(prog)s helsinki -l 5 -p 2 --lng en      Second page of five, English labels
  %(prog)s                                  Interactive mode without a search
        """
    )
    add_search_arguments(parser)
    parser.add_argument("--api-url", metavar="URL", help="API base URL for this session")
    parser.add_argument("--site-url", metavar="URL", help="Website base URL for this session")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log requests to stderr"
    )
    return parser


def main(argv: list[str] | None = None):
    parser = build_arg_parser()
    args = parser.parse_intermixed_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = AppConfig.load()
    if args.api_url:
        config = replace(config, api_base_url=args.api_url)
    if args.site_url:
        config = replace(config, site_base_url=args.site_url)

    history = HistoryStore()
    history.load()

    repl = Repl(
        FinnaApi(config.api_base_url),
        Launcher(config.image_viewer),
        color=sys.stdout.isatty(),
    )
    state = SessionState(config=config, params=params_from_args(args, SearchParameters()))

    if state.params.lookfor or state.params.filters:
        try:
            state = repl.search(state, state.params)
        except FinnaError as e:
            print(f"  ✗ {e}")
    print("  :h for help, :q to quit")

    install_signal_handlers()
    session = PromptSession(history=history.history)
    repl_loop(repl, state, session.prompt, history)


if __name__ == "__main__":
    main()
