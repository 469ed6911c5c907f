"""Candidate sources tried in order by the discovery orchestrator."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from urllib.parse import quote

from requests import Session

from .autoconfig import parse_autoconfig
from .cancellation import CancellationToken
from .config import DEFAULT_GUESS_PORTS, DEFAULT_SUBDOMAINS, AutoconnectConfig
from .dns_lookup import make_mx_resolver
from .errors import FetchError, ResolutionError
from .fetchers import RequestsFetcher
from .models import (
    CandidateSource,
    DiscoveryCache,
    DocumentFetcher,
    HostCandidate,
    MxResolver,
    SourceResult,
)

UrlBuilder = Callable[[str, str], list[str]]


def expand_ports(hosts: Iterable[str], ports: Iterable[int]) -> list[HostCandidate]:
    """Pair every host with every port, host-major, dropping duplicates."""
    port_list = list(ports)
    output: list[HostCandidate] = []
    for host in hosts:
        for port in port_list:
            candidate = HostCandidate(host, port)
            if candidate not in output:
                output.append(candidate)
    return output


def guess_candidates(
    domain: str,
    subdomains: Iterable[str] = DEFAULT_SUBDOMAINS,
    ports: Iterable[int] = DEFAULT_GUESS_PORTS,
) -> list[HostCandidate]:
    """Bare domain first, then each ``label.domain``, every host on each port in order."""
    hosts = [domain, *(f"{label}.{domain}" for label in subdomains)]
    return expand_ports(hosts, ports)


def thunderbird_urls(template: str) -> UrlBuilder:
    return lambda domain, _email: [template.format(domain=domain)]


def domain_autoconfig_urls(domain: str, email: str) -> list[str]:
    path = f"autoconfig.{domain}/mail/config-v1.1.xml?emailaddress={quote(email, safe='@')}"
    return [f"https://{path}", f"http://{path}"]


def well_known_urls(domain: str, _email: str) -> list[str]:
    path = f"{domain}/.well-known/autoconfig/mail/config-v1.1.xml"
    return [f"https://{path}", f"http://{path}"]


class CacheSource:
    """Servers that accepted a connection for this domain before."""

    name = "cache"

    def __init__(self, cache: DiscoveryCache, *, logger: logging.Logger) -> None:
        self._cache = cache
        self._logger = logger

    def candidates(
        self, domain: str, email: str, token: CancellationToken | None = None
    ) -> SourceResult:
        found = tuple(self._cache.lookup(domain))
        self._logger.info("Found %d cached server(s) for %s", len(found), domain)
        return SourceResult(self.name, found)


class AutoconfigSource:
    """Fetch an autoconfig document, trying each URL until one answers."""

    def __init__(
        self,
        name: str,
        urls: UrlBuilder,
        *,
        fetcher: DocumentFetcher,
        logger: logging.Logger,
    ) -> None:
        self.name = name
        self._urls = urls
        self._fetcher = fetcher
        self._logger = logger

    def candidates(
        self, domain: str, email: str, token: CancellationToken | None = None
    ) -> SourceResult:
        urls = self._urls(domain, email)
        document: str | None = None
        errors: list[str] = []
        for url in urls:
            try:
                document = self._fetcher.fetch(url, token)
                break
            except FetchError as exc:
                errors.append(str(exc))
        if document is None:
            suffix = " (both https and http)" if len(urls) > 1 else ""
            self._logger.warning("Failed to query %s%s", urls[0], suffix)
            return SourceResult(self.name, error="; ".join(errors) or "no URL to query")
        found = tuple(parse_autoconfig(document, domain))
        self._logger.info("Queried %s and got %d server(s)", urls[0], len(found))
        return SourceResult(self.name, found)


class GuessSource:
    """Well-known subdomains of the mail domain. No network access."""

    name = "guess"

    def __init__(
        self,
        *,
        subdomains: Iterable[str] = DEFAULT_SUBDOMAINS,
        ports: Iterable[int] = DEFAULT_GUESS_PORTS,
    ) -> None:
        self._subdomains = tuple(subdomains)
        self._ports = tuple(ports)

    def candidates(
        self, domain: str, email: str, token: CancellationToken | None = None
    ) -> SourceResult:
        found = guess_candidates(domain, self._subdomains, self._ports)
        return SourceResult(self.name, tuple(found))


class MxSource:
    """Mail exchangers of the domain, on the usual IMAP ports."""

    name = "mx"

    def __init__(
        self,
        resolver: MxResolver,
        *,
        ports: Iterable[int] = DEFAULT_GUESS_PORTS,
        logger: logging.Logger,
    ) -> None:
        self._resolver = resolver
        self._ports = tuple(ports)
        self._logger = logger

    def candidates(
        self, domain: str, email: str, token: CancellationToken | None = None
    ) -> SourceResult:
        try:
            hosts = self._resolver.resolve_mx(domain, token)
        except ResolutionError as exc:
            self._logger.warning("Failed to query the MX records")
            self._logger.debug("MX failure for %s: %s", domain, exc)
            return SourceResult(self.name, error=str(exc))
        found = tuple(expand_ports(hosts, self._ports))
        self._logger.info("Queried the MX records and got %d server(s)", len(found))
        return SourceResult(self.name, found)


def build_default_sources(
    config: AutoconnectConfig,
    *,
    cache: DiscoveryCache,
    session: Session,
    proxied: bool,
    logger: logging.Logger,
) -> list[CandidateSource]:
    """Cache, three autoconfig locations, guesses, then MX, in that order."""
    fetcher = RequestsFetcher(session=session, timeout=config.http_timeout, logger=logger)
    resolver = make_mx_resolver(
        session=session,
        doh_url=config.doh_url,
        timeout=config.dns_timeout,
        proxied=proxied,
        logger=logger,
    )
    return [
        CacheSource(cache, logger=logger),
        AutoconfigSource(
            "thunderbird", thunderbird_urls(config.thunderbird_url), fetcher=fetcher, logger=logger
        ),
        AutoconfigSource("autoconfig", domain_autoconfig_urls, fetcher=fetcher, logger=logger),
        AutoconfigSource("well-known", well_known_urls, fetcher=fetcher, logger=logger),
        GuessSource(subdomains=config.subdomains, ports=config.guess_ports),
        MxSource(resolver, ports=config.guess_ports, logger=logger),
    ]
