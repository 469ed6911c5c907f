"""HTTP fetcher for autoconfiguration documents."""

from __future__ import annotations

import logging

from requests import Session
from requests.adapters import HTTPAdapter
from requests.exceptions import RequestException
from urllib3.util.retry import Retry

from .cancellation import CancellationToken
from .errors import FetchError
from .models import ProxySettings
from .validation import is_supported_url


def make_retry_session(user_agent: str, proxy: ProxySettings | None = None) -> Session:
    """Create requests session with retry/backoff defaults, routed through ``proxy``."""
    session = Session()
    session.headers.update({"User-Agent": user_agent})
    if proxy is not None:
        session.proxies.update(proxy.requests_proxies())
        # environment proxies must not override the actor's assignment
        session.trust_env = False
    # status retries only; connect and read failures surface at once
    retry = Retry(
        total=2,
        connect=0,
        read=0,
        other=0,
        backoff_factor=0.3,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=frozenset({"GET"}),
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class RequestsFetcher:
    """Requests-based fetcher honoring a (connect, read) timeout and cancellation."""

    def __init__(
        self,
        *,
        session: Session,
        timeout: tuple[float, float],
        logger: logging.Logger,
    ) -> None:
        self._session = session
        self._timeout = timeout
        self._logger = logger

    def fetch(self, url: str, token: CancellationToken | None = None) -> str:
        if not is_supported_url(url):
            raise FetchError(f"Unsupported URL: {url}")
        token = token or CancellationToken()
        try:
            return token.run(f"GET {url}", lambda: self._get(url), self._session.close)
        except RequestException as exc:
            self._logger.debug("Fetch failed for %s: %s", url, exc)
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc

    def _get(self, url: str) -> str:
        response = self._session.get(url, timeout=self._timeout)
        response.raise_for_status()
        return str(response.text)
