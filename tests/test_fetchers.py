import logging
import threading
import time
from typing import Any

import pytest
import requests

from imap_autoconnect.cancellation import CancellationToken
from imap_autoconnect.errors import FetchError, OperationCancelled
from imap_autoconnect.fetchers import RequestsFetcher, make_retry_session
from imap_autoconnect.models import ProxySettings, ProxyType


class FakeResponse:
    def __init__(self, *, status_code: int = 200, text: str = "") -> None:
        self.status_code = status_code
        self.text = text

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError("bad status")


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None) -> None:
        self._response = response or FakeResponse()
        self._error = error
        self.calls: list[tuple[str, Any]] = []
        self.closed = False

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((url, kwargs.get("timeout")))
        if self._error is not None:
            raise self._error
        return self._response

    def close(self) -> None:
        self.closed = True


def _fetcher(session: FakeSession) -> RequestsFetcher:
    return RequestsFetcher(
        session=session,  # type: ignore[arg-type]
        timeout=(5.0, 7.0),
        logger=logging.getLogger("test"),
    )


def test_requests_fetcher_rejects_invalid_urls() -> None:
    session = FakeSession(FakeResponse(text="<clientConfig/>"))
    with pytest.raises(FetchError):
        _fetcher(session).fetch("file:///tmp/config.xml")
    assert session.calls == []


def test_requests_fetcher_returns_document_for_success() -> None:
    session = FakeSession(FakeResponse(text="<clientConfig/>"))
    assert _fetcher(session).fetch("https://example.com/config") == "<clientConfig/>"
    assert session.calls == [("https://example.com/config", (5.0, 7.0))]


def test_requests_fetcher_raises_on_http_error_status() -> None:
    session = FakeSession(FakeResponse(status_code=404))
    with pytest.raises(FetchError, match="Failed to fetch"):
        _fetcher(session).fetch("https://example.com/config")


def test_requests_fetcher_raises_on_transport_error() -> None:
    session = FakeSession(error=requests.ConnectionError("refused"))
    with pytest.raises(FetchError):
        _fetcher(session).fetch("http://example.com/config")


def test_requests_fetcher_honors_cancelled_token() -> None:
    session = FakeSession(FakeResponse(text="<clientConfig/>"))
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        _fetcher(session).fetch("https://example.com/config", token)
    assert session.calls == []


def test_make_retry_session_sets_user_agent() -> None:
    session = make_retry_session("my-agent")
    assert session.headers["User-Agent"] == "my-agent"
    assert session.trust_env is True


def test_make_retry_session_routes_through_proxy() -> None:
    proxy = ProxySettings(ProxyType.SOCKS5, "127.0.0.1", 9050)
    session = make_retry_session("my-agent", proxy)
    assert session.proxies["https"] == "socks5h://127.0.0.1:9050"
    assert session.trust_env is False


class StalledSession(FakeSession):
    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((url, kwargs.get("timeout")))
        self.release.wait(10.0)
        raise requests.ConnectionError("connection aborted")


def test_requests_fetcher_cancellation_interrupts_stalled_request() -> None:
    session = StalledSession()
    token = CancellationToken()
    timer = threading.Timer(0.05, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(OperationCancelled):
            _fetcher(session).fetch("https://example.com/config", token)
    finally:
        session.release.set()
        timer.cancel()
    assert time.monotonic() - started < 5.0
    assert session.closed is True


def test_make_retry_session_does_not_retry_timeouts() -> None:
    session = make_retry_session("my-agent")
    retry = session.get_adapter("https://example.com/").max_retries
    assert retry.connect == 0
    assert retry.read == 0
    assert retry.total == 2
    assert 503 in retry.status_forcelist
