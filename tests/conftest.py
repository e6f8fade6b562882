"""
Pytest configuration and fixtures for the inventory monitor test suite.
"""

import pytest

from extractors import MatchExtractor
from inventory_monitor import MonitorConfig
from models import NotifyError, TrackedItem


class FakeResponse:
    """Stands in for an aiohttp response used as an async context manager."""

    def __init__(self, status=200, text="", json_data=None, body=None, charset="utf-8"):
        self.status = status
        self._text = text
        self._json = json_data
        self._body = body
        self.charset = charset

    async def text(self, encoding=None, errors="strict"):
        # raw bodies are decoded like aiohttp does, so bad bytes can fail
        if self._body is not None:
            return self._body.decode(encoding or self.charset, errors)
        return self._text

    async def json(self, content_type="application/json"):
        if self._json is None:
            raise ValueError("response body is not JSON")
        return self._json

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Hands out queued responses (or raises queued exceptions) in order."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def _next(self):
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self._next()

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self._next()


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.transitions = []
        self.messages = []

    async def send_message(self, text):
        if self.fail:
            raise NotifyError("chat not found")
        self.messages.append(text)

    async def send_transition(self, item, event):
        if self.fail:
            raise NotifyError("chat not found")
        self.transitions.append((item, event))


def make_item(name="Widget", url=None, item_id=None, vendor="Shop"):
    url = url or f"https://shop.example.com/{name.lower()}"
    return TrackedItem(
        item_id=item_id or url,
        name=name,
        url=url,
        extractor=MatchExtractor.from_config({"matches": [{"contains": "Add to cart"}]}),
        vendor=vendor,
    )


IN_STOCK_PAGE = "<html><body><button>Add to cart</button></body></html>"
OUT_OF_STOCK_PAGE = "<html><body><span>Sold out</span></body></html>"


@pytest.fixture
def config():
    """Monitor config with a short period and no boot message."""
    return MonitorConfig(
        chat_id=123456,
        bot_token="123:SECRET",
        poll_period_s=60.0,
        retries=1,
        boot_message=False,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def item():
    return make_item("Widget")
