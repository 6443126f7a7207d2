#!/usr/bin/env python3
"""Filmweb -> IMDb ratings export.

Architecture:
- Stage A: scrape the user's rated films, rated serials and want-to-see pages
  from filmweb.pl with a small pool of authenticated sessions, one page per
  task, and hand every scraped page to stage B through a bounded queue.
- Stage B: link each scraped title to an IMDb title by walking its ranked
  alternate titles through two search strategies, then corroborate the match
  by comparing runtimes.

Matches whose runtime does not corroborate are confirmed by the user after the
concurrent stages finish. Confirmed titles are written as IMDb v2 CSV files.
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import csv
import datetime as dt
import email.utils
import json
import logging
import random
import re
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, TextIO, Tuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text


LOGGER = logging.getLogger("filmweb-export")

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:106.0) Gecko/20100101 Firefox/106.0"


DEFAULT_CONFIG: Dict[str, Any] = {
    "filmweb": {
        "username": "",
        "token": "",
        "session": "",
        "jwt": "",
        "base_url": "https://www.filmweb.pl",
        "timeout_seconds": 20,
        "max_retries": 3,
        "clients": 3,
    },
    "imdb": {
        "base_url": "https://www.imdb.com",
        "timeout_seconds": 20,
        "max_retries": 3,
        "clients": 3,
        "year_window_padding": 0,
    },
    "runtime": {
        "workers": 6,
        "queue_size": 0,
        "export_dir": "exports",
        "review_mode": "ask",
        "quiet": False,
        "console_mode": "dashboard",
        "log_level": "INFO",
        "log_file_path": "logs/filmweb_export.log",
        "log_file_max_bytes": 5242880,
        "log_file_backup_count": 3,
        "dashboard_event_lines": 6,
        "retry_backoff_seconds": 1.0,
    },
    "corroboration": {
        "short_form_max_minutes": 60,
        "short_form_band": [0.75, 1.50],
        "band": [0.85, 1.15],
        "missing_candidate_duration": "accept",
    },
}


CATEGORY_FILM = "film"
CATEGORY_SERIAL = "serial"
CATEGORY_WANT2SEE = "want2see"
CATEGORIES: Tuple[str, ...] = (CATEGORY_FILM, CATEGORY_SERIAL, CATEGORY_WANT2SEE)

CATEGORY_LISTING_PATHS: Dict[str, str] = {
    CATEGORY_FILM: "films",
    CATEGORY_SERIAL: "serials",
    CATEGORY_WANT2SEE: "wantToSee",
}
CATEGORY_LABELS: Dict[str, str] = {
    CATEGORY_FILM: "films",
    CATEGORY_SERIAL: "serials",
    CATEGORY_WANT2SEE: "want2see",
}

CONFIDENCE_CONFIRMED = "confirmed"
CONFIDENCE_NEEDS_REVIEW = "needs_review"
CONFIDENCE_NOT_FOUND = "not_found"

MISS_ZERO_RESULTS = "zero_results"
MISS_INVALID_DURATION = "invalid_duration"
MISS_TRANSPORT = "transport_error"

SUPPORTED_CONSOLE_MODES: Set[str] = {
    "dashboard",
    "raw",
}

SUPPORTED_REVIEW_MODES: Set[str] = {
    "ask",
    "accept",
    "reject",
}

SUPPORTED_MISSING_DURATION_POLICIES: Set[str] = {
    "accept",
    "review",
}

CREDENTIAL_KEYS: Tuple[str, ...] = ("token", "session", "jwt")

# Filmweb lists 25 titles per page.
PAGE_SIZE = 25

FLOOR_SCORE = 0
HOME_LOCALE_SCORE = 5

# First matching row wins. Labels come from the filmweb "titles" tab.
TITLE_SCORE_TABLE: Tuple[Tuple[Tuple[str, ...], int], ...] = (
    (("USA", "angielski", "English"), 10),
    (("oryginalny",), 9),
    (("główny",), 8),
    (("alternatywna pisownia",), 7),
    (("inny tytuł",), 6),
    (("Polska",), HOME_LOCALE_SCORE),
)

CONTENT_RATING_MARKERS: Tuple[str, ...] = ("Unrated", "Not Rated", "TV")
MAX_RUNTIME_TEXT_LENGTH = 40

IMDB_ID_PATTERN = re.compile(r"(\d{7,8})")
DURATION_TOKEN_PATTERN = re.compile(r"(\d+)[hm]?")

NO_VOTE = "no.vote"

BUCKET_GENERIC = "generic"
BUCKET_FAVORITED = "favorited"
BUCKET_WANT2SEE = "want2see"

EXPORT_FILE_NAMES: Dict[str, str] = {
    BUCKET_GENERIC: "generic.csv",
    BUCKET_FAVORITED: "favorited.csv",
    BUCKET_WANT2SEE: "want2see.csv",
}
NOT_FOUND_FILE_NAME = "not_found.csv"

EXPORT_HEADER: Tuple[str, ...] = (
    "Const",
    "Your Rating",
    "Date Rated",
    "Title",
    "URL",
    "Title Type",
    "IMDb Rating",
    "Runtime (mins)",
    "Year",
    "Genres",
    "Num Votes",
    "Release Date",
    "Directors",
)

TITLE_TYPES: Dict[str, str] = {
    CATEGORY_FILM: "movie",
    CATEGORY_SERIAL: "tvSeries",
    CATEGORY_WANT2SEE: "",
}

AUTH_REMEDIATION = (
    "Filmweb rejected the session cookies. Log in to filmweb.pl again and pass "
    "fresh _fwuser_token, _fwuser_sessionId and JWT cookie values."
)


def now_epoch() -> int:
    return int(time.time())


def format_clock(ts: int) -> str:
    return dt.datetime.fromtimestamp(ts, dt.timezone.utc).astimezone().strftime("%H:%M:%S")


def parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_retry_after(value: Optional[str], default_seconds: int = 5) -> int:
    if not value:
        return default_seconds

    stripped = value.strip()
    as_int = parse_int(stripped)
    if as_int is not None:
        return max(1, as_int)

    try:
        dt_value = email.utils.parsedate_to_datetime(stripped)
        if dt_value.tzinfo is None:
            dt_value = dt_value.replace(tzinfo=dt.timezone.utc)
        delta = int((dt_value - dt.datetime.now(dt.timezone.utc)).total_seconds())
        return max(1, delta)
    except (TypeError, ValueError):
        return default_seconds


def sanitize_url_for_logs(url: str) -> str:
    sensitive_keys = {
        "token",
        "jwt",
        "session",
        "sessionid",
        "auth",
        "authorization",
    }
    try:
        parts = urlsplit(url)
        if not parts.query:
            return url
        sanitized_query = []
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            if key.lower() in sensitive_keys:
                sanitized_query.append((key, "***"))
            else:
                sanitized_query.append((key, value))
        return urlunsplit(
            (
                parts.scheme,
                parts.netloc,
                parts.path,
                urlencode(sanitized_query, doseq=True),
                parts.fragment,
            )
        )
    except ValueError:
        return url


def is_network_unavailable_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    marker_text = str(exc).lower()
    markers = (
        "nameresolutionerror",
        "failed to resolve",
        "temporary failure in name resolution",
        "network is unreachable",
        "connection refused",
    )
    if any(marker in marker_text for marker in markers):
        return True
    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, (socket.gaierror, TimeoutError))


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _parse_band(raw: Any, name: str) -> List[float]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise ValueError(f"corroboration.{name} must be a [lower, upper] pair")
    lower, upper = float(raw[0]), float(raw[1])
    if lower <= 0 or lower > upper:
        raise ValueError(f"corroboration.{name} must satisfy 0 < lower <= upper")
    return [lower, upper]


def load_config(
    path: Optional[Path], overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    loaded: Dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise FileNotFoundError(
                f"Config file not found at {path}. Create one (for example from config.example.json)."
            )
        with path.open("r", encoding="utf-8") as handle:
            loaded = json.load(handle)

    config = merge_dict(DEFAULT_CONFIG, loaded)
    if overrides:
        config = merge_dict(config, overrides)

    missing_keys = []
    for key_name in CREDENTIAL_KEYS:
        raw_value = str(config["filmweb"].get(key_name, "") or "").strip()
        placeholder_markers = (
            "YOUR_",
            "YOUR-",
            "CHANGEME",
            "REPLACE_ME",
        )
        if not raw_value or any(marker in raw_value.upper() for marker in placeholder_markers):
            missing_keys.append(f"filmweb.{key_name}")
            continue
        config["filmweb"][key_name] = raw_value
    if missing_keys:
        raise ValueError(
            "Missing required filmweb credentials: " + ", ".join(missing_keys)
        )
    config["filmweb"]["username"] = str(config["filmweb"].get("username") or "").strip()

    for section in ("filmweb", "imdb"):
        config[section]["base_url"] = str(config[section]["base_url"]).rstrip("/")
        config[section]["timeout_seconds"] = max(
            1, int(config[section]["timeout_seconds"])
        )
        config[section]["max_retries"] = max(1, int(config[section]["max_retries"]))
        # At least two sessions so concurrent workers do not all share one connection pool.
        config[section]["clients"] = max(2, min(8, int(config[section]["clients"])))

    config["imdb"]["year_window_padding"] = max(
        0, min(5, int(config["imdb"].get("year_window_padding", 0)))
    )

    runtime_cfg = config["runtime"]
    runtime_cfg["workers"] = max(1, min(16, int(runtime_cfg.get("workers", 6))))
    runtime_cfg["queue_size"] = max(0, int(runtime_cfg.get("queue_size", 0)))
    runtime_cfg["quiet"] = bool(runtime_cfg.get("quiet", False))
    runtime_cfg["retry_backoff_seconds"] = max(
        0.0, float(runtime_cfg.get("retry_backoff_seconds", 1.0))
    )
    export_dir = str(runtime_cfg.get("export_dir", "exports")).strip()
    runtime_cfg["export_dir"] = export_dir or "exports"
    log_file_path = str(runtime_cfg.get("log_file_path", "logs/filmweb_export.log")).strip()
    runtime_cfg["log_file_path"] = log_file_path or "logs/filmweb_export.log"
    runtime_cfg["log_file_max_bytes"] = max(
        1024, int(runtime_cfg.get("log_file_max_bytes", 5242880))
    )
    runtime_cfg["log_file_backup_count"] = max(
        0, int(runtime_cfg.get("log_file_backup_count", 3))
    )
    runtime_cfg["dashboard_event_lines"] = max(
        3, min(20, int(runtime_cfg.get("dashboard_event_lines", 6)))
    )

    console_mode = str(runtime_cfg.get("console_mode", "dashboard")).strip().lower()
    if console_mode not in SUPPORTED_CONSOLE_MODES:
        raise ValueError(
            "Invalid runtime.console_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_CONSOLE_MODES))
        )
    runtime_cfg["console_mode"] = console_mode

    review_mode = str(runtime_cfg.get("review_mode", "ask")).strip().lower()
    if review_mode not in SUPPORTED_REVIEW_MODES:
        raise ValueError(
            "Invalid runtime.review_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_REVIEW_MODES))
        )
    runtime_cfg["review_mode"] = review_mode

    corroboration_cfg = config["corroboration"]
    corroboration_cfg["short_form_max_minutes"] = max(
        0, int(corroboration_cfg.get("short_form_max_minutes", 60))
    )
    corroboration_cfg["short_form_band"] = _parse_band(
        corroboration_cfg.get("short_form_band"), "short_form_band"
    )
    corroboration_cfg["band"] = _parse_band(corroboration_cfg.get("band"), "band")
    missing_policy = (
        str(corroboration_cfg.get("missing_candidate_duration", "accept")).strip().lower()
    )
    if missing_policy not in SUPPORTED_MISSING_DURATION_POLICIES:
        raise ValueError(
            "Invalid corroboration.missing_candidate_duration. Expected one of: "
            + ", ".join(sorted(SUPPORTED_MISSING_DURATION_POLICIES))
        )
    corroboration_cfg["missing_candidate_duration"] = missing_policy

    return config


class ExportError(Exception):
    """Base class for errors raised while exporting."""


class AuthInvalidated(ExportError):
    """Filmweb no longer accepts the session cookies. Fatal for the whole run."""

    def __init__(self, detail: str = "session cookies rejected"):
        super().__init__(detail)
        self.detail = detail


class RecordParseError(ExportError):
    def __init__(self, source_id: Optional[int], detail: str):
        super().__init__(f"could not parse title {source_id}: {detail}")
        self.source_id = source_id
        self.detail = detail


class TransportError(ExportError):
    def __init__(self, url: str, detail: str, status: int = 0):
        super().__init__(f"{url}: {detail}")
        self.url = url
        self.detail = detail
        self.status = status


@dataclass(frozen=True)
class AlternateTitle:
    label: str
    title: str

    @property
    def score(self) -> int:
        return score_alternate_title(self.label)


@dataclass(frozen=True)
class ReleaseYear:
    start: int
    end: int

    @property
    def is_range(self) -> bool:
        return self.end != self.start

    def window(self, padding: int = 0) -> Tuple[int, int]:
        pad = max(0, int(padding))
        return self.start - pad, self.start + pad


@dataclass
class UserRating:
    rate: int
    favorite: bool
    view_date: Optional[int] = None


@dataclass
class MatchCandidate:
    external_id: str
    display_title: str
    duration_minutes: Optional[int]
    strategy: str = ""


@dataclass
class StrategyResult:
    candidate: Optional[MatchCandidate] = None
    miss: Optional[str] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.candidate is not None


@dataclass
class ResolvedMatch:
    confidence: str
    candidate: Optional[MatchCandidate] = None
    query_title: str = ""


@dataclass
class SourceRecord:
    source_id: int
    canonical_title: str
    category: str
    release_year: ReleaseYear
    alternate_titles: List[AlternateTitle] = field(default_factory=list)
    source_duration: Optional[int] = None
    user_rating: Optional[UserRating] = None
    url: str = ""
    match: Optional[ResolvedMatch] = None


@dataclass
class ListingEntry:
    source_id: int
    title: str
    year_text: str
    url: str


@dataclass
class HarvestUnit:
    category: str
    page: int
    records: List[SourceRecord] = field(default_factory=list)
    parse_errors: List[RecordParseError] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class PipelineResult:
    total_pages: int = 0
    units_enqueued: int = 0
    units_processed: int = 0
    records: List[SourceRecord] = field(default_factory=list)
    skipped: List[RecordParseError] = field(default_factory=list)
    failed_pages: List[Tuple[str, int]] = field(default_factory=list)
    auth_error: Optional[AuthInvalidated] = None

    @property
    def aborted(self) -> bool:
        return self.auth_error is not None


@dataclass
class ReviewSummary:
    confirmed: int = 0
    rejected: int = 0


def score_alternate_title(label: str) -> int:
    text = str(label or "")
    for markers, score in TITLE_SCORE_TABLE:
        if any(marker in text for marker in markers):
            return score
    return FLOOR_SCORE


def build_title_queue(record: SourceRecord) -> List[Tuple[str, int]]:
    """Return (title, score) pairs in descending score order.

    The canonical title joins the queue at the home-locale score; a title text
    listed more than once keeps its best score. Ties keep their listing order.
    """
    best: Dict[str, int] = {}
    order: List[str] = []
    entries = [(alt.title, alt.score) for alt in record.alternate_titles]
    entries.append((record.canonical_title, HOME_LOCALE_SCORE))
    for title, score in entries:
        text = " ".join(str(title or "").split())
        if not text:
            continue
        if text not in best:
            order.append(text)
            best[text] = score
        elif score > best[text]:
            best[text] = score

    queue = [(text, best[text]) for text in order]
    queue.sort(key=lambda item: item[1], reverse=True)
    return queue


def parse_release_year(text: str, source_id: Optional[int]) -> ReleaseYear:
    raw = str(text or "").strip().replace("–", "-")
    if "-" in raw:
        head, _, tail = raw.partition("-")
        start = parse_int(head)
        if start is None:
            raise RecordParseError(source_id, f"unparseable year {raw!r}")
        end = parse_int(tail)
        return ReleaseYear(start=start, end=end if end is not None else start)

    year = parse_int(raw)
    if year is None:
        raise RecordParseError(source_id, f"unparseable year {raw!r}")
    return ReleaseYear(start=year, end=year)


def page_count(total_titles: int) -> int:
    return max(0, int(total_titles)) // PAGE_SIZE + 1


def normalize_imdb_id(raw: str) -> Optional[str]:
    found = IMDB_ID_PATTERN.search(str(raw or ""))
    if found is None:
        return None
    return f"tt{int(found.group(1)):07d}"


def imdb_title_url(external_id: str) -> str:
    return f"https://www.imdb.com/title/{external_id}/"


def parse_duration_tokens(text: str) -> Optional[int]:
    tokens: List[int] = []
    for raw in str(text or "").split():
        found = DURATION_TOKEN_PATTERN.fullmatch(raw)
        if found is None:
            return None
        tokens.append(int(found.group(1)))
    if len(tokens) == 2:
        hours, minutes = tokens
        return hours * 60 + minutes
    if len(tokens) == 1:
        return tokens[0]
    return None


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


# --- Filmweb page parsing -------------------------------------------------


def parse_settings_username(html: str) -> Optional[str]:
    items = make_soup(html).select(".mainSettings__groupItemStateContent")
    if len(items) < 3:
        return None
    username = items[2].get_text(strip=True)
    return username or None


def parse_user_counts(html: str) -> Optional[Dict[str, int]]:
    node = make_soup(html).select_one(".voteStatsBoxData")
    if node is None:
        return None
    raw = node.string if node.string is not None else node.get_text()
    data = json.loads(raw)
    votes = data.get("votes") or {}
    want_to_see = data.get("w2s") or {}
    return {
        CATEGORY_FILM: parse_int(votes.get("films")) or 0,
        CATEGORY_SERIAL: parse_int(votes.get("serials")) or 0,
        CATEGORY_WANT2SEE: (parse_int(want_to_see.get("films")) or 0)
        + (parse_int(want_to_see.get("serials")) or 0),
    }


def parse_vote_boxes(
    html: str, base_url: str
) -> Tuple[List[ListingEntry], List[RecordParseError]]:
    entries: List[ListingEntry] = []
    errors: List[RecordParseError] = []
    for box in make_soup(html).select("div.myVoteBox"):
        preview = box.select_one(".previewFilm")
        source_id = parse_int(preview.get("data-film-id")) if preview is not None else None
        if source_id is None:
            errors.append(RecordParseError(None, "vote box without a numeric data-film-id"))
            continue

        link = box.select_one(".preview__link")
        if link is None or not link.get("href"):
            errors.append(RecordParseError(source_id, "vote box without a title link"))
            continue
        year = box.select_one(".preview__year")

        entries.append(
            ListingEntry(
                source_id=source_id,
                title=link.get_text(strip=True),
                year_text=year.get_text(strip=True) if year is not None else "",
                url=urljoin(base_url + "/", link["href"]),
            )
        )
    return entries, errors


def parse_filmweb_duration(html: str) -> Optional[int]:
    node = make_soup(html).select_one(".filmCoverSection__duration")
    if node is None:
        return None
    return parse_int(node.get("data-duration"))


def parse_alternate_titles(html: str) -> List[AlternateTitle]:
    soup = make_soup(html)
    titles = soup.select(".filmTitlesSection__title")
    labels = soup.select(".filmTitlesSection__desc")
    return [
        AlternateTitle(label=label.get_text(" ", strip=True), title=title.get_text(strip=True))
        for title, label in zip(titles, labels)
    ]


# --- IMDb page parsing -----------------------------------------------------


def parse_imdb_listing(html: str) -> Optional[Dict[str, Any]]:
    soup = make_soup(html)
    image = soup.select_one("div.lister-item-image")
    if image is None:
        return None
    link = image.select_one("a[href]")
    external_id = None
    if link is not None:
        external_id = normalize_imdb_id(link["href"])
    if external_id is None:
        external_id = normalize_imdb_id(str(image))
    if external_id is None:
        return None

    item = image.find_parent(class_="lister-item") or soup
    poster = item.select_one("img.loadlate")
    runtime = item.select_one(".runtime")
    return {
        "external_id": external_id,
        "title": str(poster.get("alt") or "").strip() if poster is not None else "",
        "runtime_text": runtime.get_text(" ", strip=True) if runtime is not None else None,
    }


def parse_listing_runtime(runtime_text: Optional[str]) -> Optional[int]:
    if runtime_text is None:
        return None
    return parse_int(runtime_text.replace("min", ""))


def parse_imdb_find(html: str) -> Optional[Dict[str, str]]:
    cell = make_soup(html).select_one(".result_text")
    if cell is None:
        return None
    link = cell.select_one("a")
    if link is None or not link.get("href"):
        return None
    external_id = normalize_imdb_id(link["href"]) or normalize_imdb_id(str(cell))
    if external_id is None:
        return None
    return {
        "external_id": external_id,
        "title": link.get_text(strip=True),
        "href": link["href"],
    }


def parse_imdb_detail_runtime(html: str) -> Optional[int]:
    # The metadata strip is positional: year, certificate, runtime... with the
    # content rating slot shifting runtime one place to the right.
    items = make_soup(html).select(".ipc-inline-list__item")

    def item_text(index: int) -> Optional[str]:
        if index >= len(items):
            return None
        return items[index].get_text(" ", strip=True)

    raw = item_text(5)
    if raw is not None and any(marker in raw for marker in CONTENT_RATING_MARKERS):
        raw = item_text(6)
    if raw is None or len(raw) > MAX_RUNTIME_TEXT_LENGTH:
        return None
    return parse_duration_tokens(raw)


# --- HTTP ------------------------------------------------------------------


@dataclass
class PageResponse:
    status: int
    url: str
    text: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.text)


class HTTPClient:
    def __init__(
        self,
        *,
        session: requests.Session,
        base_url: str,
        timeout_seconds: int,
        max_retries: int,
        name: str = "http",
        backoff_seconds: float = 1.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, int(max_retries))
        self.name = name
        self.backoff_seconds = max(0.0, float(backoff_seconds))

    def _backoff(self, attempt: int) -> float:
        if self.backoff_seconds <= 0:
            return 0.0
        return min(60.0, self.backoff_seconds * (2**attempt) + random.random())

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> PageResponse:
        safe_url = sanitize_url_for_logs(url)
        last_status = 0

        for attempt in range(self.max_retries):
            try:
                raw_resp = await asyncio.to_thread(
                    self.session.get,
                    url,
                    params=params,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                if attempt == self.max_retries - 1:
                    raise TransportError(safe_url, str(exc)) from exc
                sleep_for = self._backoff(attempt)
                if is_network_unavailable_error(exc):
                    LOGGER.warning(
                        "[%s] Network unavailable for GET %s (attempt %s/%s). Backing off %.1fs: %s",
                        self.name,
                        safe_url,
                        attempt + 1,
                        self.max_retries,
                        sleep_for,
                        exc,
                    )
                else:
                    LOGGER.warning(
                        "[%s] HTTP error calling GET %s (attempt %s/%s): %s",
                        self.name,
                        safe_url,
                        attempt + 1,
                        self.max_retries,
                        exc,
                    )
                await asyncio.sleep(sleep_for)
                continue

            response = PageResponse(
                status=raw_resp.status_code,
                url=safe_url,
                text=raw_resp.text or "",
                headers={str(k).lower(): str(v) for k, v in raw_resp.headers.items()},
            )
            last_status = response.status

            if response.status == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"), 5)
                LOGGER.warning(
                    "[%s] 429 from GET %s. Retry-After=%ss",
                    self.name,
                    safe_url,
                    retry_after,
                )
                if attempt == self.max_retries - 1:
                    break
                await asyncio.sleep(retry_after if self.backoff_seconds > 0 else 0)
                continue

            if response.status in (500, 502, 503, 504):
                sleep_for = self._backoff(attempt)
                LOGGER.warning(
                    "[%s] %s from GET %s. Retrying in %.1fs (attempt %s/%s)",
                    self.name,
                    response.status,
                    safe_url,
                    sleep_for,
                    attempt + 1,
                    self.max_retries,
                )
                if attempt == self.max_retries - 1:
                    break
                await asyncio.sleep(sleep_for)
                continue

            return response

        raise TransportError(
            safe_url,
            f"giving up after {self.max_retries} attempt(s)",
            status=last_status,
        )

    def close(self) -> None:
        self.session.close()


class ClientPool:
    """Round-robin pool of equivalent clients shared by the workers of one stage."""

    def __init__(self, clients: Sequence[Any]):
        if not clients:
            raise ValueError("ClientPool needs at least one client")
        self._clients = tuple(clients)
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    def get(self) -> Any:
        with self._lock:
            client = self._clients[self._cursor % len(self._clients)]
            self._cursor += 1
        return client

    def close(self) -> None:
        for client in self._clients:
            close = getattr(client, "close", None)
            if close is not None:
                close()


def _base_session() -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": USER_AGENT,
            "Accept-Encoding": "gzip",
            "Connection": "keep-alive",
        }
    )
    return session


def build_filmweb_session(filmweb_cfg: Dict[str, Any]) -> requests.Session:
    session = _base_session()
    for cookie_name, key in (
        ("_fwuser_token", "token"),
        ("_fwuser_sessionId", "session"),
        ("JWT", "jwt"),
    ):
        session.cookies.set(cookie_name, str(filmweb_cfg[key]).strip())
    return session


def build_imdb_session(_imdb_cfg: Dict[str, Any]) -> requests.Session:
    session = _base_session()
    session.headers["Accept-Language"] = "en-US,en;q=0.8"
    return session


def build_client_pool(
    *,
    name: str,
    section_cfg: Dict[str, Any],
    session_factory: Callable[[Dict[str, Any]], requests.Session],
    backoff_seconds: float = 1.0,
) -> ClientPool:
    LOGGER.debug("Creating %s %s client(s)", section_cfg["clients"], name)
    return ClientPool(
        [
            HTTPClient(
                session=session_factory(section_cfg),
                base_url=section_cfg["base_url"],
                timeout_seconds=section_cfg["timeout_seconds"],
                max_retries=section_cfg["max_retries"],
                name=name,
                backoff_seconds=backoff_seconds,
            )
            for _ in range(int(section_cfg["clients"]))
        ]
    )


# --- Source catalog --------------------------------------------------------


class FilmwebScraper:
    def __init__(self, *, config: Dict[str, Any]):
        self.base_url = config["base_url"].rstrip("/")
        self.username = str(config.get("username") or "").strip()

    async def verify_credentials(self, http: Any) -> str:
        response = await http.get(f"{self.base_url}/settings")
        if response.status in (401, 403):
            raise AuthInvalidated(f"settings page returned {response.status}")
        account = parse_settings_username(response.text)
        if account is None:
            raise AuthInvalidated("settings page does not show a logged-in account")
        if not self.username:
            self.username = account
        LOGGER.info("[Filmweb] Logged in as %s", account)
        return self.username

    async def fetch_counts(self, http: Any) -> Dict[str, int]:
        url = f"{self.base_url}/user/{self.username}"
        response = await http.get(url)
        if response.status in (401, 403):
            raise AuthInvalidated(f"profile page returned {response.status}")
        if not response.ok:
            raise TransportError(response.url, "profile page unavailable", response.status)
        try:
            counts = parse_user_counts(response.text)
        except ValueError as exc:
            raise ExportError(f"could not decode title counts for {self.username}: {exc}") from exc
        if counts is None:
            raise ExportError(f"no title counts on the profile page of {self.username}")
        return counts

    @staticmethod
    def page_plan(counts: Dict[str, int]) -> Dict[str, int]:
        return {category: page_count(counts.get(category, 0)) for category in CATEGORIES}

    async def fetch_page(self, category: str, page: int, http: Any) -> HarvestUnit:
        if page < 1:
            raise ValueError("filmweb page numbers start at 1")
        url = f"{self.base_url}/user/{self.username}/{CATEGORY_LISTING_PATHS[category]}"
        response = await http.get(url, params={"page": page})
        if response.status in (401, 403):
            raise AuthInvalidated(f"{CATEGORY_LABELS[category]} page {page} returned {response.status}")
        if not response.ok:
            raise TransportError(response.url, "listing page unavailable", response.status)

        entries, errors = parse_vote_boxes(response.text, self.base_url)
        unit = HarvestUnit(category=category, page=page, parse_errors=list(errors))
        for entry in entries:
            try:
                year = parse_release_year(entry.year_text, entry.source_id)
            except RecordParseError as exc:
                unit.parse_errors.append(exc)
                continue
            try:
                rating = await self._fetch_rating(category, entry.source_id, http)
            except RecordParseError as exc:
                unit.parse_errors.append(exc)
                continue
            except TransportError as exc:
                unit.parse_errors.append(
                    RecordParseError(entry.source_id, f"rating unavailable: {exc}")
                )
                continue
            unit.records.append(
                SourceRecord(
                    source_id=entry.source_id,
                    canonical_title=entry.title,
                    category=category,
                    release_year=year,
                    alternate_titles=await self._fetch_alternate_titles(entry, http),
                    source_duration=await self._fetch_duration(category, entry, http),
                    user_rating=rating,
                    url=entry.url,
                )
            )
        LOGGER.debug(
            "[Filmweb] %s page %s: %s title(s), %s unparseable",
            CATEGORY_LABELS[category],
            page,
            len(unit.records),
            len(unit.parse_errors),
        )
        return unit

    async def _fetch_rating(
        self, category: str, source_id: int, http: Any
    ) -> Optional[UserRating]:
        if category == CATEGORY_WANT2SEE:
            return None
        url = f"{self.base_url}/api/v1/logged/vote/{category}/{source_id}/details"
        response = await http.get(url)
        if response.status in (401, 403):
            raise AuthInvalidated(f"vote API returned {response.status}")
        # An invalidated JWT turns the vote API into an HTML login page.
        try:
            data = response.json()
        except ValueError as exc:
            raise AuthInvalidated("vote API did not return JSON") from exc
        rate = parse_int(data.get("rate")) if isinstance(data, dict) else None
        if rate is None:
            raise RecordParseError(source_id, f"vote API returned no rating: {response.text[:80]!r}")
        return UserRating(
            rate=rate,
            favorite=bool(data.get("favorite")),
            view_date=parse_int(data.get("viewDate")),
        )

    async def _fetch_duration(
        self, category: str, entry: ListingEntry, http: Any
    ) -> Optional[int]:
        if category == CATEGORY_WANT2SEE:
            return None
        try:
            response = await http.get(entry.url)
        except TransportError as exc:
            LOGGER.warning("[Filmweb] No runtime for %s: %s", entry.source_id, exc)
            return None
        if not response.ok:
            return None
        return parse_filmweb_duration(response.text)

    async def _fetch_alternate_titles(
        self, entry: ListingEntry, http: Any
    ) -> List[AlternateTitle]:
        try:
            response = await http.get(f"{entry.url}/titles")
        except TransportError as exc:
            LOGGER.warning("[Filmweb] No alternate titles for %s: %s", entry.source_id, exc)
            return []
        if not response.ok:
            return []
        return parse_alternate_titles(response.text)


# --- Matching --------------------------------------------------------------


async def broad_search(
    title: str, year: ReleaseYear, http: Any, *, padding: int = 0
) -> StrategyResult:
    year_start, year_end = year.window(padding)
    url = f"{http.base_url}/search/title/"
    params = {
        "title": title,
        "release_date": f"{year_start},{year_end}",
        "adult": "include",
    }
    try:
        response = await http.get(url, params=params)
    except TransportError as exc:
        LOGGER.warning("[IMDb] Listing search failed for %r %s: %s", title, year_start, exc)
        return StrategyResult(miss=MISS_TRANSPORT, detail=str(exc))
    if not response.ok:
        return StrategyResult(miss=MISS_TRANSPORT, detail=f"status {response.status}")

    listing = parse_imdb_listing(response.text)
    if listing is None:
        return StrategyResult(miss=MISS_ZERO_RESULTS, detail=f"{title} {year_start}-{year_end}")

    duration = parse_listing_runtime(listing["runtime_text"])
    if duration is None:
        return StrategyResult(
            miss=MISS_INVALID_DURATION,
            detail=f"{listing['external_id']} runtime={listing['runtime_text']!r}",
        )
    return StrategyResult(
        candidate=MatchCandidate(
            external_id=listing["external_id"],
            display_title=listing["title"] or title,
            duration_minutes=duration,
            strategy="broad",
        )
    )


async def exact_search(title: str, year: ReleaseYear, http: Any) -> StrategyResult:
    try:
        response = await http.get(f"{http.base_url}/find", params={"q": f"{title} {year.start}"})
        if not response.ok:
            return StrategyResult(miss=MISS_TRANSPORT, detail=f"status {response.status}")
        found = parse_imdb_find(response.text)
        if found is None:
            return StrategyResult(miss=MISS_ZERO_RESULTS, detail=f"{title} {year.start}")

        detail = await http.get(urljoin(http.base_url + "/", found["href"]))
    except TransportError as exc:
        LOGGER.warning("[IMDb] Quick search failed for %r %s: %s", title, year.start, exc)
        return StrategyResult(miss=MISS_TRANSPORT, detail=str(exc))
    if not detail.ok:
        return StrategyResult(miss=MISS_TRANSPORT, detail=f"status {detail.status}")

    duration = parse_imdb_detail_runtime(detail.text)
    if duration is None:
        return StrategyResult(miss=MISS_INVALID_DURATION, detail=found["external_id"])
    LOGGER.debug("[IMDb] Found runtime %sm for %s %s", duration, title, year.start)
    return StrategyResult(
        candidate=MatchCandidate(
            external_id=found["external_id"],
            display_title=found["title"] or title,
            duration_minutes=duration,
            strategy="exact",
        )
    )


Strategy = Callable[[str, ReleaseYear, Any], Awaitable[StrategyResult]]


class DurationCorroborator:
    def __init__(
        self,
        *,
        short_form_max_minutes: int = 60,
        short_form_band: Sequence[float] = (0.75, 1.50),
        band: Sequence[float] = (0.85, 1.15),
        missing_candidate_duration: str = "accept",
    ):
        self.short_form_max_minutes = short_form_max_minutes
        self.short_form_band = (float(short_form_band[0]), float(short_form_band[1]))
        self.band = (float(band[0]), float(band[1]))
        self.missing_candidate_duration = missing_candidate_duration

    @classmethod
    def from_config(cls, section: Dict[str, Any]) -> "DurationCorroborator":
        return cls(
            short_form_max_minutes=section["short_form_max_minutes"],
            short_form_band=section["short_form_band"],
            band=section["band"],
            missing_candidate_duration=section["missing_candidate_duration"],
        )

    def tolerance_band(self, source_minutes: int, candidate_minutes: int) -> Tuple[float, float]:
        # Episodes differ a lot between the two sites, so short runtimes get a wider band.
        if (
            source_minutes <= self.short_form_max_minutes
            and candidate_minutes <= self.short_form_max_minutes
        ):
            lower, upper = self.short_form_band
        else:
            lower, upper = self.band
        return candidate_minutes * lower, candidate_minutes * upper

    def classify(
        self, source_duration: Optional[int], candidate_duration: Optional[int]
    ) -> str:
        if source_duration is None:
            return CONFIDENCE_CONFIRMED
        if candidate_duration is None:
            if self.missing_candidate_duration == "review":
                return CONFIDENCE_NEEDS_REVIEW
            return CONFIDENCE_CONFIRMED
        lower, upper = self.tolerance_band(source_duration, candidate_duration)
        if lower <= source_duration <= upper:
            return CONFIDENCE_CONFIRMED
        return CONFIDENCE_NEEDS_REVIEW


class RecordLinker:
    def __init__(
        self,
        *,
        config: Dict[str, Any],
        strategies: Optional[Sequence[Tuple[str, Strategy]]] = None,
        corroborator: Optional[DurationCorroborator] = None,
    ):
        padding = int(config["imdb"].get("year_window_padding", 0))

        async def broad(title: str, year: ReleaseYear, http: Any) -> StrategyResult:
            return await broad_search(title, year, http, padding=padding)

        self.strategies: Tuple[Tuple[str, Strategy], ...] = tuple(
            strategies or (("broad", broad), ("exact", exact_search))
        )
        self.corroborator = corroborator or DurationCorroborator.from_config(
            config["corroboration"]
        )

    async def link(self, record: SourceRecord, http: Any) -> ResolvedMatch:
        for title, score in build_title_queue(record):
            if score <= FLOOR_SCORE:
                break
            for name, strategy in self.strategies:
                result = await strategy(title, record.release_year, http)
                if result.candidate is None:
                    LOGGER.debug(
                        "[Linker] %s: %s miss for %r (%s) %s",
                        record.source_id,
                        name,
                        title,
                        result.miss,
                        result.detail,
                    )
                    continue
                confidence = self.corroborator.classify(
                    record.source_duration, result.candidate.duration_minutes
                )
                LOGGER.debug(
                    "[Linker] %s: %s -> %s via %s (%s)",
                    record.source_id,
                    title,
                    result.candidate.external_id,
                    name,
                    confidence,
                )
                return ResolvedMatch(
                    confidence=confidence,
                    candidate=result.candidate,
                    query_title=title,
                )
        return ResolvedMatch(confidence=CONFIDENCE_NOT_FOUND)


# --- Pipeline --------------------------------------------------------------


class HarvestPipeline:
    """Stage A scrapes listing pages, stage B links their titles.

    Both stages are fixed-size pools of asyncio tasks joined by a bounded queue
    of HarvestUnits. An AuthInvalidated from stage A stops further page
    dispatch; units already on the queue are still linked.
    """

    def __init__(
        self,
        *,
        config: Dict[str, Any],
        scraper: Any,
        linker: Any,
        source_pool: ClientPool,
        external_pool: ClientPool,
        status: Optional["RunStatus"] = None,
    ):
        self.worker_count = max(1, int(config["runtime"]["workers"]))
        self.queue_size = int(config["runtime"].get("queue_size") or 0) or self.worker_count * 2
        self.scraper = scraper
        self.linker = linker
        self.source_pool = source_pool
        self.external_pool = external_pool
        self.status = status

    async def run(self, page_plan: Dict[str, int]) -> PipelineResult:
        jobs: asyncio.Queue[Tuple[str, int]] = asyncio.Queue()
        for category, pages in page_plan.items():
            for page in range(1, int(pages) + 1):
                jobs.put_nowait((category, page))

        result = PipelineResult(total_pages=jobs.qsize())
        units: asyncio.Queue[Optional[HarvestUnit]] = asyncio.Queue(maxsize=self.queue_size)
        abort_event = asyncio.Event()
        results_lock = asyncio.Lock()
        seen_ids: Set[int] = set()

        if self.status is not None:
            self.status.begin(page_plan)
        LOGGER.info(
            "[Pipeline] %s page(s) to scrape with %s worker(s) per stage",
            result.total_pages,
            self.worker_count,
        )

        async def producer() -> None:
            while not abort_event.is_set():
                try:
                    category, page = jobs.get_nowait()
                except asyncio.QueueEmpty:
                    return

                try:
                    unit = await self.scraper.fetch_page(category, page, self.source_pool.get())
                except AuthInvalidated as exc:
                    if result.auth_error is None:
                        result.auth_error = exc
                    abort_event.set()
                    LOGGER.error(
                        "[Pipeline] Filmweb rejected the session on %s page %s: %s",
                        CATEGORY_LABELS.get(category, category),
                        page,
                        exc.detail,
                    )
                    return
                except (TransportError, ValueError) as exc:
                    LOGGER.warning(
                        "[Pipeline] %s page %s failed: %s",
                        CATEGORY_LABELS.get(category, category),
                        page,
                        exc,
                    )
                    unit = HarvestUnit(category=category, page=page, error=str(exc))
                except Exception:
                    abort_event.set()
                    raise

                if abort_event.is_set():
                    LOGGER.debug("[Pipeline] Discarding %s page %s after abort", category, page)
                    return
                await units.put(unit)
                result.units_enqueued += 1
                if self.status is not None:
                    self.status.record_page(unit)

        async def consumer() -> None:
            while True:
                unit = await units.get()
                try:
                    if unit is None:
                        return
                    await self._process_unit(unit, result, results_lock, seen_ids)
                except Exception:
                    LOGGER.exception("[Pipeline] Failed to process a harvested page")
                finally:
                    units.task_done()

        producer_count = max(1, min(self.worker_count, result.total_pages))
        producers = [
            asyncio.create_task(producer(), name=f"stage-a-{i + 1}")
            for i in range(producer_count)
        ]
        consumers = [
            asyncio.create_task(consumer(), name=f"stage-b-{i + 1}")
            for i in range(self.worker_count)
        ]

        outcomes = await asyncio.gather(*producers, return_exceptions=True)
        for _ in consumers:
            await units.put(None)
        await asyncio.gather(*consumers)

        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        LOGGER.info(
            "[Pipeline] Done: pages %s/%s, titles=%s, skipped=%s, failed pages=%s%s",
            result.units_processed,
            result.total_pages,
            len(result.records),
            len(result.skipped),
            len(result.failed_pages),
            " (aborted)" if result.aborted else "",
        )
        return result

    async def _process_unit(
        self,
        unit: HarvestUnit,
        result: PipelineResult,
        results_lock: asyncio.Lock,
        seen_ids: Set[int],
    ) -> None:
        for error in unit.parse_errors:
            LOGGER.warning("[Pipeline] Skipping title: %s", error)
        if unit.error is not None:
            async with results_lock:
                result.failed_pages.append((unit.category, unit.page))

        for record in unit.records:
            async with results_lock:
                if record.source_id in seen_ids:
                    LOGGER.debug("[Pipeline] Duplicate title %s on page %s", record.source_id, unit.page)
                    continue
                seen_ids.add(record.source_id)

            try:
                match = await self.linker.link(record, self.external_pool.get())
            except Exception:
                LOGGER.exception(
                    "[Pipeline] Linking failed for %s (%s)",
                    record.canonical_title,
                    record.source_id,
                )
                match = ResolvedMatch(confidence=CONFIDENCE_NOT_FOUND)
            record.match = match

            async with results_lock:
                result.records.append(record)
            if self.status is not None:
                self.status.record_match(record)

        async with results_lock:
            result.skipped.extend(unit.parse_errors)
            result.units_processed += 1


# --- Review ----------------------------------------------------------------


def review_matches(
    records: Sequence[SourceRecord], decide: Callable[[SourceRecord], bool]
) -> ReviewSummary:
    summary = ReviewSummary()
    pending = [
        record
        for record in records
        if record.match is not None and record.match.confidence == CONFIDENCE_NEEDS_REVIEW
    ]
    for record in sorted(pending, key=lambda r: (r.canonical_title.lower(), r.source_id)):
        match = record.match
        if decide(record):
            match.confidence = CONFIDENCE_CONFIRMED
            summary.confirmed += 1
            LOGGER.info("[Review] Accepted %s for %s", match.candidate.external_id, record.source_id)
        else:
            record.match = ResolvedMatch(
                confidence=CONFIDENCE_NOT_FOUND,
                query_title=match.query_title,
            )
            summary.rejected += 1
            LOGGER.info("[Review] Rejected %s for %s", match.candidate.external_id, record.source_id)
    return summary


class ConsoleDecider:
    def __init__(self, console: Console, stream: Optional[TextIO] = None):
        self.console = console
        self.stream = stream

    def __call__(self, record: SourceRecord) -> bool:
        candidate = record.match.candidate
        runtimes = ""
        if record.source_duration is not None and candidate.duration_minutes is not None:
            runtimes = f" [dim](runtime {record.source_duration} vs {candidate.duration_minutes} min)[/dim]"
        question = (
            f"[blue][?][/blue] Is {imdb_title_url(candidate.external_id)} "
            f"({escape(candidate.display_title)}) a good match for "
            f"{escape(record.canonical_title)} ({record.release_year.start})?{runtimes} (y/N): "
        )
        while True:
            try:
                answer = self.console.input(question, stream=self.stream)
            except EOFError:
                return False
            normalized = answer.strip().lower()
            if normalized in ("y", "yes"):
                return True
            if normalized in ("", "n", "no"):
                return False
            self.console.print("[red]Please answer y or n.[/red]")


def build_decider(review_mode: str, console: Console) -> Callable[[SourceRecord], bool]:
    if review_mode == "accept":
        return lambda record: True
    if review_mode == "reject":
        return lambda record: False
    return ConsoleDecider(console)


# --- Export ----------------------------------------------------------------


def export_bucket(record: SourceRecord) -> str:
    if record.user_rating is None:
        return BUCKET_WANT2SEE
    if record.user_rating.favorite:
        return BUCKET_FAVORITED
    return BUCKET_GENERIC


def build_export_row(record: SourceRecord) -> List[str]:
    candidate = record.match.candidate
    row = [""] * len(EXPORT_HEADER)
    row[0] = candidate.external_id
    row[1] = str(record.user_rating.rate) if record.user_rating is not None else NO_VOTE
    row[3] = candidate.display_title or record.canonical_title
    row[4] = imdb_title_url(candidate.external_id)
    row[5] = TITLE_TYPES.get(record.category, "")
    if candidate.duration_minutes is not None:
        row[7] = str(candidate.duration_minutes)
    row[8] = str(record.release_year.start)
    return row


class ExportSink:
    def __init__(self, export_dir: Path):
        self.export_dir = export_dir
        self.written: Dict[str, int] = {bucket: 0 for bucket in EXPORT_FILE_NAMES}
        self._handles: Dict[str, TextIO] = {}
        self._writers: Dict[str, Any] = {}
        self._seen: Dict[str, Set[str]] = {bucket: set() for bucket in EXPORT_FILE_NAMES}

    def open(self) -> None:
        self.export_dir.mkdir(parents=True, exist_ok=True)
        for bucket, file_name in EXPORT_FILE_NAMES.items():
            handle = (self.export_dir / file_name).open("w", encoding="utf-8", newline="")
            writer = csv.writer(handle)
            writer.writerow(EXPORT_HEADER)
            self._handles[bucket] = handle
            self._writers[bucket] = writer

    def close(self) -> None:
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()
        self._writers.clear()

    def write(self, record: SourceRecord) -> bool:
        match = record.match
        if match is None or match.confidence != CONFIDENCE_CONFIRMED or match.candidate is None:
            return False
        bucket = export_bucket(record)
        external_id = match.candidate.external_id
        if external_id in self._seen[bucket]:
            LOGGER.debug("[Export] %s already written to %s", external_id, bucket)
            return False
        row = build_export_row(record)
        LOGGER.debug(
            "[Export] %s title=%r rating=%s bucket=%s",
            external_id,
            row[3],
            row[1],
            bucket,
        )
        self._writers[bucket].writerow(row)
        self._seen[bucket].add(external_id)
        self.written[bucket] += 1
        return True

    def write_not_found(self, records: Sequence[SourceRecord]) -> int:
        self.export_dir.mkdir(parents=True, exist_ok=True)
        with (self.export_dir / NOT_FOUND_FILE_NAME).open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(("Filmweb ID", "Title", "Year", "Category", "URL"))
            for record in records:
                writer.writerow(
                    (
                        record.source_id,
                        record.canonical_title,
                        record.release_year.start,
                        record.category,
                        record.url,
                    )
                )
        return len(records)


# --- Console & logging -----------------------------------------------------


def format_rating(record: SourceRecord) -> Text:
    rating = record.user_rating
    if rating is None:
        return Text("")
    if rating.favorite:
        return Text(f"{rating.rate}/10 ♥", style="red")
    return Text(f"{rating.rate}/10")


def print_title_line(console: Console, record: SourceRecord, quiet: bool) -> None:
    match = record.match
    if match is not None and match.candidate is not None:
        if quiet:
            return
        line = Text.assemble(
            ("[+] ", "green"),
            record.canonical_title,
            " ",
            format_rating(record),
            (" | ", "dim"),
            (match.candidate.display_title, "dim"),
            " ",
            (match.candidate.external_id, "dim"),
        )
        if match.confidence == CONFIDENCE_NEEDS_REVIEW:
            line.append(" (to review)", style="yellow")
    else:
        line = Text.assemble(("[-] ", "red"), record.canonical_title, " ", format_rating(record))
    console.print(line)


@dataclass
class DashboardEvent:
    timestamp: int
    level: str
    message: str
    count: int = 1
    signature: str = ""


class DashboardEventBuffer:
    def __init__(self, *, max_lines: int, max_message_length: int = 160):
        self.max_lines = max(1, int(max_lines))
        self.max_message_length = max(40, int(max_message_length))
        self._events: deque[DashboardEvent] = deque(maxlen=self.max_lines)
        self._lock = threading.Lock()

    def _normalize_message(self, message: str) -> str:
        collapsed = " ".join(str(message or "").split())
        if not collapsed:
            return "-"
        if len(collapsed) <= self.max_message_length:
            return collapsed
        return f"{collapsed[: self.max_message_length - 3]}..."

    def add(self, *, level: str, message: str, now_ts: Optional[int] = None) -> None:
        ts = now_epoch() if now_ts is None else int(now_ts)
        level_name = str(level or "INFO").upper()
        normalized = self._normalize_message(message)
        signature = f"{level_name}:{normalized}"

        with self._lock:
            if self._events and self._events[-1].signature == signature:
                last = self._events[-1]
                last.count += 1
                last.timestamp = ts
                return
            self._events.append(
                DashboardEvent(
                    timestamp=ts,
                    level=level_name,
                    message=normalized,
                    signature=signature,
                )
            )

    def snapshot(self) -> List[DashboardEvent]:
        with self._lock:
            return list(self._events)


class LiveLogState:
    """Set while the rich dashboard owns the terminal."""

    def __init__(self):
        self._active = threading.Event()

    def set_live_active(self, active: bool) -> None:
        if active:
            self._active.set()
        else:
            self._active.clear()

    def is_live_active(self) -> bool:
        return self._active.is_set()


class LiveAwareConsoleHandler(logging.StreamHandler):
    def __init__(self, *, live_state: LiveLogState, allow_while_live: bool):
        super().__init__()
        self.live_state = live_state
        self.allow_while_live = bool(allow_while_live)

    def emit(self, record: logging.LogRecord) -> None:
        if self.live_state.is_live_active() and not self.allow_while_live:
            return
        clean_record = logging.makeLogRecord(record.__dict__.copy())
        # Tracebacks go to the log file only.
        clean_record.exc_info = None
        clean_record.exc_text = None
        clean_record.stack_info = None
        super().emit(clean_record)


class DashboardEventHandler(logging.Handler):
    def __init__(self, *, buffer: DashboardEventBuffer, min_level: int = logging.WARNING):
        super().__init__(level=min_level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.add(level=record.levelname, message=record.getMessage())
        except Exception:
            self.handleError(record)


@dataclass
class LoggingRuntime:
    live_state: LiveLogState
    event_buffer: DashboardEventBuffer
    log_file_path: Path


class RunStatus:
    """Live terminal status rendered with rich."""

    BAR_WIDTH = 30

    def __init__(
        self,
        *,
        console: Console,
        event_buffer: Optional[DashboardEventBuffer] = None,
        quiet: bool = False,
        refresh_seconds: float = 0.5,
    ):
        self.console = console
        self.event_buffer = event_buffer
        self.quiet = quiet
        self.refresh_seconds = max(0.1, float(refresh_seconds))
        self.started_at = now_epoch()
        self.phase = "Starting"

        self.pages_total: Dict[str, int] = {category: 0 for category in CATEGORIES}
        self.pages_done: Dict[str, int] = {category: 0 for category in CATEGORIES}
        self.pages_failed: Dict[str, int] = {category: 0 for category in CATEGORIES}
        self.linked = 0
        self.confirmed = 0
        self.needs_review = 0
        self.not_found = 0

    def begin(self, page_plan: Dict[str, int]) -> None:
        self.phase = "Harvesting"
        for category, pages in page_plan.items():
            self.pages_total[category] = int(pages)

    def record_page(self, unit: HarvestUnit) -> None:
        self.pages_done[unit.category] = self.pages_done.get(unit.category, 0) + 1
        if unit.error is not None:
            self.pages_failed[unit.category] = self.pages_failed.get(unit.category, 0) + 1

    def record_match(self, record: SourceRecord) -> None:
        self.linked += 1
        confidence = record.match.confidence if record.match is not None else CONFIDENCE_NOT_FOUND
        if confidence == CONFIDENCE_CONFIRMED:
            self.confirmed += 1
        elif confidence == CONFIDENCE_NEEDS_REVIEW:
            self.needs_review += 1
        else:
            self.not_found += 1
        print_title_line(self.console, record, self.quiet)

    @staticmethod
    def _render_bar(total: int, completed: int, width: int = BAR_WIDTH) -> Any:
        if total <= 0:
            return Text("-")
        safe_done = max(0, min(int(completed), int(total)))
        return ProgressBar(total=int(total), completed=safe_done, width=width)

    @staticmethod
    def _format_duration(seconds: int) -> str:
        minutes, secs = divmod(max(0, int(seconds)), 60)
        return f"{minutes:02d}:{secs:02d}"

    def render(self) -> Group:
        uptime = self._format_duration(now_epoch() - self.started_at)
        header = Text(f"filmweb-export | {self.phase} | elapsed={uptime}", style="bold")

        pages = Table.grid(padding=(0, 2))
        for category in CATEGORIES:
            total = self.pages_total.get(category, 0)
            done = self.pages_done.get(category, 0)
            failed = self.pages_failed.get(category, 0)
            pages.add_row(
                CATEGORY_LABELS[category],
                self._render_bar(total, done),
                f"{done}/{total}" + (f" ({failed} failed)" if failed else ""),
            )

        counts = Text.assemble(
            ("linked ", "dim"),
            str(self.linked),
            ("  confirmed ", "dim"),
            (str(self.confirmed), "green"),
            ("  to review ", "dim"),
            (str(self.needs_review), "yellow"),
            ("  not found ", "dim"),
            (str(self.not_found), "red"),
        )
        panels: List[Any] = [header, Panel(Group(pages, counts), title="Harvest", title_align="left")]

        if self.event_buffer is not None:
            events = self.event_buffer.snapshot()
            lines = Text()
            for event in events:
                suffix = f" (x{event.count})" if event.count > 1 else ""
                style = "red" if event.level in ("ERROR", "CRITICAL") else "yellow"
                lines.append(f"{format_clock(event.timestamp)} ", style="dim")
                lines.append(f"{event.message}{suffix}\n", style=style)
            panels.append(Panel(lines if events else Text("-"), title="Events", title_align="left"))
        return Group(*panels)

    async def run(self, stop_event: asyncio.Event) -> None:
        with Live(
            self.render(),
            console=self.console,
            auto_refresh=False,
            transient=True,
        ) as live:
            while not stop_event.is_set():
                live.update(self.render(), refresh=True)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.refresh_seconds)
                except asyncio.TimeoutError:
                    pass
            live.update(self.render(), refresh=True)


def configure_logging(config: Dict[str, Any]) -> LoggingRuntime:
    runtime_cfg = config.get("runtime", {})
    level_name = runtime_cfg.get("log_level", "INFO")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    raw_log_path = Path(str(runtime_cfg.get("log_file_path", "logs/filmweb_export.log"))).expanduser()
    if not raw_log_path.is_absolute():
        raw_log_path = (Path.cwd() / raw_log_path).resolve()
    raw_log_path.parent.mkdir(parents=True, exist_ok=True)

    console_mode = str(runtime_cfg.get("console_mode", "dashboard")).strip().lower()
    event_buffer = DashboardEventBuffer(
        max_lines=int(runtime_cfg.get("dashboard_event_lines", 6)),
    )
    live_state = LiveLogState()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        raw_log_path,
        maxBytes=int(runtime_cfg.get("log_file_max_bytes", 5242880)),
        backupCount=int(runtime_cfg.get("log_file_backup_count", 3)),
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = LiveAwareConsoleHandler(
        live_state=live_state,
        allow_while_live=console_mode == "raw",
    )
    # Per-title progress already goes to the console; keep only problems there.
    console_handler.setLevel(max(level, logging.WARNING))
    console_handler.setFormatter(formatter)

    event_handler = DashboardEventHandler(buffer=event_buffer, min_level=logging.WARNING)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(event_handler)

    logging.captureWarnings(True)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return LoggingRuntime(
        live_state=live_state,
        event_buffer=event_buffer,
        log_file_path=raw_log_path,
    )


def print_summary(
    console: Console,
    result: PipelineResult,
    review: ReviewSummary,
    sink: ExportSink,
    not_found: Sequence[SourceRecord],
) -> None:
    if not_found:
        table = Table(title="Following titles couldn't be found", title_justify="left")
        table.add_column("Filmweb ID", justify="right")
        table.add_column("Title")
        table.add_column("Year", justify="right")
        table.add_column("Rating")
        for record in sorted(not_found, key=lambda r: r.canonical_title.lower()):
            table.add_row(
                str(record.source_id),
                record.canonical_title,
                str(record.release_year.start),
                format_rating(record),
            )
        console.print(table)

    console.print(
        Text.assemble(
            ("exported ", "dim"),
            (str(sum(sink.written.values())), "green"),
            (
                f" (generic={sink.written[BUCKET_GENERIC]}, "
                f"favorited={sink.written[BUCKET_FAVORITED]}, "
                f"want2see={sink.written[BUCKET_WANT2SEE]})",
                "dim",
            ),
            ("  reviewed ", "dim"),
            f"{review.confirmed} accepted / {review.rejected} rejected",
            ("  not found ", "dim"),
            (str(len(not_found)), "red"),
            ("  skipped ", "dim"),
            str(len(result.skipped)),
        )
    )
    console.print(f"[dim]Files written to {sink.export_dir}[/dim]")


# --- Application -----------------------------------------------------------


async def harvest(
    config: Dict[str, Any], logging_runtime: LoggingRuntime, console: Console
) -> PipelineResult:
    runtime_cfg = config["runtime"]
    backoff = float(runtime_cfg["retry_backoff_seconds"])
    source_pool = build_client_pool(
        name="filmweb",
        section_cfg=config["filmweb"],
        session_factory=build_filmweb_session,
        backoff_seconds=backoff,
    )
    external_pool = build_client_pool(
        name="imdb",
        section_cfg=config["imdb"],
        session_factory=build_imdb_session,
        backoff_seconds=backoff,
    )
    live_active = False

    try:
        scraper = FilmwebScraper(config=config["filmweb"])
        await scraper.verify_credentials(source_pool.get())
        counts = await scraper.fetch_counts(source_pool.get())
        plan = scraper.page_plan(counts)
        LOGGER.info(
            "Titles: films=%s serials=%s want2see=%s",
            counts[CATEGORY_FILM],
            counts[CATEGORY_SERIAL],
            counts[CATEGORY_WANT2SEE],
        )

        status = RunStatus(
            console=console,
            event_buffer=logging_runtime.event_buffer,
            quiet=bool(runtime_cfg["quiet"]),
        )
        pipeline = HarvestPipeline(
            config=config,
            scraper=scraper,
            linker=RecordLinker(config=config),
            source_pool=source_pool,
            external_pool=external_pool,
            status=status,
        )

        stop_event = asyncio.Event()
        dashboard_task: Optional[asyncio.Task] = None
        if runtime_cfg["console_mode"] == "dashboard":
            logging_runtime.live_state.set_live_active(True)
            live_active = True
            dashboard_task = asyncio.create_task(status.run(stop_event), name="dashboard")
        try:
            return await pipeline.run(plan)
        finally:
            stop_event.set()
            if dashboard_task is not None:
                await dashboard_task
    finally:
        if live_active:
            logging_runtime.live_state.set_live_active(False)
        source_pool.close()
        external_pool.close()


def run_app(
    config: Dict[str, Any],
    logging_runtime: LoggingRuntime,
    console: Console,
    decide: Optional[Callable[[SourceRecord], bool]] = None,
) -> int:
    console.print("[yellow]filmweb-export starting...[/yellow]")
    result = asyncio.run(harvest(config, logging_runtime, console))
    if result.auth_error is not None:
        raise result.auth_error

    if decide is None:
        decide = build_decider(config["runtime"]["review_mode"], console)
    review = review_matches(result.records, decide)

    sink = ExportSink(Path(config["runtime"]["export_dir"]).expanduser())
    sink.open()
    try:
        for record in result.records:
            sink.write(record)
    finally:
        sink.close()

    not_found = [
        record
        for record in result.records
        if record.match is None or record.match.confidence == CONFIDENCE_NOT_FOUND
    ]
    sink.write_not_found(not_found)
    print_summary(console, result, review, sink, not_found)
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filmweb-export",
        description="Exports user data from filmweb.pl to the IMDb v2 CSV format",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config JSON file (default: config.json when present)",
    )
    parser.add_argument("-u", "--username", help="filmweb.pl user name")
    parser.add_argument("-t", "--token", help="_fwuser_token cookie value")
    parser.add_argument("-s", "--session", help="_fwuser_sessionId cookie value")
    parser.add_argument("-j", "--jwt", help="JWT cookie value")
    parser.add_argument("--threads", type=int, help="Workers per pipeline stage")
    parser.add_argument("--export-dir", help="Directory for the CSV files")
    parser.add_argument(
        "--review",
        choices=sorted(SUPPORTED_REVIEW_MODES),
        help="How to settle matches whose runtime does not agree (default: ask)",
    )
    parser.add_argument(
        "--console",
        choices=sorted(SUPPORTED_CONSOLE_MODES),
        help="Live dashboard or plain log lines",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Don't print successfully matched titles",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    filmweb: Dict[str, Any] = {}
    for key in ("username", "token", "session", "jwt"):
        value = getattr(args, key, None)
        if value is not None:
            filmweb[key] = value

    runtime: Dict[str, Any] = {}
    if args.threads is not None:
        runtime["workers"] = args.threads
    if args.export_dir is not None:
        runtime["export_dir"] = args.export_dir
    if args.review is not None:
        runtime["review_mode"] = args.review
    if args.console is not None:
        runtime["console_mode"] = args.console
    if args.quiet:
        runtime["quiet"] = True
    if args.verbose:
        runtime["log_level"] = "DEBUG"

    overrides: Dict[str, Any] = {}
    if filmweb:
        overrides["filmweb"] = filmweb
    if runtime:
        overrides["runtime"] = runtime
    return overrides


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    config_path: Optional[Path] = None
    if args.config is not None:
        config_path = Path(args.config).expanduser().resolve()
    elif Path("config.json").exists():
        config_path = Path("config.json").resolve()

    try:
        config = load_config(config_path, overrides_from_args(args))
    except (OSError, ValueError) as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    logging_runtime = configure_logging(config)
    console = Console()

    try:
        return run_app(config, logging_runtime, console)
    except AuthInvalidated as exc:
        LOGGER.error("Filmweb session rejected: %s", exc.detail)
        console.print(f"[red]{AUTH_REMEDIATION}[/red]")
        return 1
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
        return 1
    except Exception:
        LOGGER.exception("Fatal runtime error")
        console.print(f"[red]Export failed. Details in {logging_runtime.log_file_path}[/red]")
        return 1
    finally:
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)


if __name__ == "__main__":
    raise SystemExit(main())
