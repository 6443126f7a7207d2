import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

import filmweb_export as fe


CREDENTIALS = {"filmweb": {"token": "tok", "session": "sess", "jwt": "jwt"}}


class FakeHTTP:
    """Async stand-in for HTTPClient answering from a url -> response table."""

    def __init__(self, base_url: str, routes: Optional[Dict[str, Any]] = None, handler: Optional[Callable] = None):
        self.base_url = base_url
        self.routes = routes or {}
        self.handler = handler
        self.calls: List[Tuple[str, Optional[Dict[str, Any]]]] = []

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> fe.PageResponse:
        self.calls.append((url, params))
        await asyncio.sleep(0)
        if self.handler is not None:
            return self.handler(url, params)
        answer = self.routes.get(url)
        if answer is None:
            return fe.PageResponse(status=404, url=url, text="")
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, fe.PageResponse):
            return answer
        return fe.PageResponse(status=200, url=url, text=answer)


def ok(url: str, text: str) -> fe.PageResponse:
    return fe.PageResponse(status=200, url=url, text=text)


@pytest.fixture
def config():
    return fe.load_config(None, CREDENTIALS)


def make_record(
    source_id: int = 1,
    title: str = "Seksmisja",
    year: int = 1984,
    category: str = fe.CATEGORY_FILM,
    alternates=None,
    duration: Optional[int] = 117,
    rating: Optional[fe.UserRating] = None,
) -> fe.SourceRecord:
    return fe.SourceRecord(
        source_id=source_id,
        canonical_title=title,
        category=category,
        release_year=fe.ReleaseYear(year, year),
        alternate_titles=list(alternates or []),
        source_duration=duration,
        user_rating=rating,
        url=f"https://www.filmweb.pl/film/{source_id}",
    )
