"""MX resolution, directly via dnspython or over HTTPS through the actor's proxy."""

from __future__ import annotations

import logging
from typing import Any

import dns.exception
import dns.name
import dns.rdatatype
import dns.resolver
from requests import Session
from requests.exceptions import RequestException

from .cancellation import CancellationToken
from .errors import ResolutionError
from .models import MxResolver


def _normalize_exchange(value: str) -> str:
    name = dns.name.from_text(value)
    if name == dns.name.root:
        # null MX: the domain accepts no mail
        return ""
    return name.to_text(omit_final_dot=True).lower()


class DnsMxResolver:
    """Resolve MX records with the system-configured nameservers."""

    def __init__(self, *, timeout: float, logger: logging.Logger) -> None:
        self._timeout = timeout
        self._logger = logger

    def resolve_mx(self, domain: str, token: CancellationToken | None = None) -> list[str]:
        token = token or CancellationToken()
        try:
            answers = token.run(
                f"MX lookup for {domain}",
                lambda: dns.resolver.resolve(domain, "MX", lifetime=self._timeout),
            )
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN) as exc:
            raise ResolutionError(f"No MX records for {domain}: {exc}") from exc
        except dns.exception.DNSException as exc:
            raise ResolutionError(f"MX lookup failed for {domain}: {exc}") from exc
        records = sorted(answers, key=lambda record: record.preference)
        hosts = [_normalize_exchange(record.exchange.to_text()) for record in records]
        self._logger.debug("MX records for %s: %s", domain, hosts)
        return [host for host in hosts if host]


class DohMxResolver:
    """Resolve MX records with a JSON DNS-over-HTTPS endpoint (dns.google style)."""

    def __init__(
        self,
        *,
        session: Session,
        url: str,
        timeout: float,
        logger: logging.Logger,
    ) -> None:
        self._session = session
        self._url = url
        self._timeout = timeout
        self._logger = logger

    def resolve_mx(self, domain: str, token: CancellationToken | None = None) -> list[str]:
        token = token or CancellationToken()
        try:
            payload = token.run(
                f"MX lookup for {domain}", lambda: self._query(domain), self._session.close
            )
        except (RequestException, ValueError) as exc:
            raise ResolutionError(f"DoH MX lookup failed for {domain}: {exc}") from exc
        return self._parse(domain, payload)

    def _query(self, domain: str) -> Any:
        response = self._session.get(
            self._url,
            params={"name": domain, "type": "MX"},
            headers={"Accept": "application/dns-json"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        return response.json()

    def _parse(self, domain: str, payload: Any) -> list[str]:
        if not isinstance(payload, dict):
            raise ResolutionError(f"Unexpected DoH payload for {domain}")
        status = payload.get("Status", 0)
        if status != 0:
            raise ResolutionError(f"DoH lookup for {domain} returned status {status}")
        records: list[tuple[int, str]] = []
        for answer in payload.get("Answer", []):
            if not isinstance(answer, dict) or answer.get("type") != dns.rdatatype.MX:
                continue
            parts = str(answer.get("data", "")).split()
            if len(parts) != 2 or not parts[0].isdigit():
                continue
            try:
                host = _normalize_exchange(parts[1])
            except dns.exception.DNSException:
                continue
            if host:
                records.append((int(parts[0]), host))
        records.sort(key=lambda item: item[0])
        hosts = [host for _, host in records]
        self._logger.debug("MX records for %s: %s", domain, hosts)
        return hosts


def make_mx_resolver(
    *,
    session: Session,
    doh_url: str,
    timeout: float,
    proxied: bool,
    logger: logging.Logger,
) -> MxResolver:
    """Pick DoH when traffic must go through a proxy, plain DNS otherwise."""
    if proxied:
        return DohMxResolver(session=session, url=doh_url, timeout=timeout, logger=logger)
    return DnsMxResolver(timeout=timeout, logger=logger)
