"""Discovery orchestration: find a reachable IMAP endpoint from an email address."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from threading import Lock

from .cache import FileDiscoveryCache, InMemoryDiscoveryCache
from .config import AutoconnectConfig
from .engine import ImapClientConnector
from .errors import DiscoveryError, ProtocolError
from .fetchers import make_retry_session
from .models import CandidateSource, Connector, DiscoveryCache, HostCandidate
from .prober import ConnectionProber
from .session import SessionContext
from .sources import build_default_sources
from .validation import domain_from_email

EXHAUSTED_MESSAGE = "Exhausted all possibilities, failed to connect!"

_shared_caches: dict[str | None, DiscoveryCache] = {}
_shared_caches_lock = Lock()


def get_shared_cache(config: AutoconnectConfig, *, logger: logging.Logger) -> DiscoveryCache:
    """Return the process-wide cache for ``config.cache_path`` (in memory when unset)."""
    with _shared_caches_lock:
        cache = _shared_caches.get(config.cache_path)
        if cache is None:
            if config.cache_path:
                cache = FileDiscoveryCache(config.cache_path, logger=logger)
            else:
                cache = InMemoryDiscoveryCache()
            _shared_caches[config.cache_path] = cache
        return cache


@dataclass(frozen=True)
class StageOutcome:
    stage: str
    candidates: int
    probed: int
    error: str | None = None
    succeeded: bool = False


@dataclass
class DiscoveryReport:
    """What each stage produced, so degraded-but-successful runs are visible."""

    domain: str
    outcomes: list[StageOutcome] = field(default_factory=list)
    endpoint: HostCandidate | None = None

    @property
    def stages(self) -> list[str]:
        return [outcome.stage for outcome in self.outcomes]

    @property
    def failed_stages(self) -> list[str]:
        return [outcome.stage for outcome in self.outcomes if outcome.error is not None]


def release_connection(ctx: SessionContext, *, logger: logging.Logger) -> None:
    """Log out of any live connection so the context never holds two."""
    connection = ctx.connection
    if connection is None or not connection.is_connected:
        return
    try:
        connection.logout()
    except ProtocolError as exc:
        logger.debug("Logout of previous session failed, dropping it: %s", exc)
        connection.abort()


class DiscoveryOrchestrator:
    """Run sources in priority order, probing their candidates until one connects."""

    def __init__(
        self,
        sources: Sequence[CandidateSource],
        *,
        prober: ConnectionProber,
        logger: logging.Logger,
    ) -> None:
        self._sources = list(sources)
        self._prober = prober
        self._logger = logger

    def discover(self, ctx: SessionContext, email: str) -> DiscoveryReport:
        domain = domain_from_email(email)
        report = DiscoveryReport(domain=domain)
        failed: set[HostCandidate] = set()

        for source in self._sources:
            ctx.token.raise_if_cancelled("discovery")
            result = source.candidates(domain, email, ctx.token)
            probed = 0
            for candidate in result.candidates:
                if candidate in failed:
                    self._logger.debug("Skipping %s, already failed in this attempt", candidate)
                    continue
                probed += 1
                if self._prober.probe(ctx, domain, candidate):
                    report.outcomes.append(
                        StageOutcome(
                            source.name,
                            len(result.candidates),
                            probed,
                            result.error,
                            succeeded=True,
                        )
                    )
                    report.endpoint = candidate
                    return report
                failed.add(candidate)
            report.outcomes.append(
                StageOutcome(source.name, len(result.candidates), probed, result.error)
            )

        raise DiscoveryError(EXHAUSTED_MESSAGE, report)


def auto_connect(
    ctx: SessionContext,
    email: str,
    *,
    timeout: float | None = None,
    use_proxy: bool = True,
    cache: DiscoveryCache | None = None,
    sources: Sequence[CandidateSource] | None = None,
    connector: Connector | None = None,
    logger: logging.Logger,
) -> DiscoveryReport:
    """Discover the IMAP server for ``email`` and leave a live connection on ``ctx``."""
    config = ctx.config
    domain_from_email(email)
    release_connection(ctx, logger=logger)
    ctx.begin_session(use_proxy)
    cache = cache if cache is not None else get_shared_cache(config, logger=logger)
    connector = connector or ImapClientConnector(
        verify_certificates=config.verify_certificates, logger=logger, token=ctx.token
    )
    prober = ConnectionProber(
        connector=connector,
        cache=cache,
        timeout=timeout or config.connect_timeout,
        logger=logger,
    )
    session = make_retry_session(config.user_agent, ctx.proxy)
    try:
        if sources is None:
            sources = build_default_sources(
                config,
                cache=cache,
                session=session,
                proxied=ctx.proxy is not None,
                logger=logger,
            )
        orchestrator = DiscoveryOrchestrator(sources, prober=prober, logger=logger)
        return orchestrator.discover(ctx, email)
    finally:
        session.close()


def connect(
    ctx: SessionContext,
    host: str,
    port: int,
    *,
    timeout: float | None = None,
    use_proxy: bool = True,
    connector: Connector | None = None,
    logger: logging.Logger,
) -> None:
    """Connect to a known endpoint; failures propagate."""
    config = ctx.config
    release_connection(ctx, logger=logger)
    transcript = ctx.begin_session(use_proxy)
    connector = connector or ImapClientConnector(
        verify_certificates=config.verify_certificates, logger=logger, token=ctx.token
    )
    candidate = HostCandidate(host, port)
    try:
        connection = connector.connect(
            candidate,
            timeout=timeout or config.connect_timeout,
            transcript=transcript,
            proxy=ctx.proxy,
        )
    except OSError as exc:
        raise ProtocolError(f"connect to {candidate} failed: {exc}") from exc
    ctx.connection = connection
    ctx.endpoint = candidate
    logger.info("Connected to %s on port %d. SSL/TLS: %s", host, port, connection.is_secure)
