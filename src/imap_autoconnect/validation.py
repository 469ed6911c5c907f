"""Validation and runtime guardrails."""

from __future__ import annotations

from urllib.parse import urlparse

import dns.exception
import dns.name

from .errors import ConfigError

MAX_PORT = 65535


def is_supported_url(url: str) -> bool:
    """Allow only absolute HTTP(S) URLs with a hostname."""
    parsed = urlparse(url)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def normalize_domain(domain: str) -> str:
    """Lowercase a domain and drop surrounding whitespace and the root dot."""
    return domain.strip().rstrip(".").lower()


def is_valid_hostname(host: str) -> bool:
    """Accept only names DNS can carry: no empty labels, none over 63 octets."""
    if not host or any(char.isspace() or char in "%/:@" for char in host):
        return False
    try:
        dns.name.from_text(host)
    except dns.exception.DNSException:
        return False
    return True


def domain_from_email(email: str) -> str:
    """Extract the normalized domain of an address, raising ConfigError if there is none."""
    local, sep, domain = email.strip().rpartition("@")
    domain = normalize_domain(domain)
    if not sep or not local or not domain or "." not in domain:
        raise ConfigError(f"Not a usable email address: {email!r}")
    return domain


def is_valid_port(port: int) -> bool:
    return 0 < port <= MAX_PORT


def validate_runtime_constraints(
    *,
    connect_timeout: float,
    login_timeout: float,
    http_connect_timeout: float,
    http_read_timeout: float,
    dns_timeout: float,
    subdomains: tuple[str, ...],
    guess_ports: tuple[int, ...],
    thunderbird_url: str,
    doh_url: str,
) -> None:
    """Validate runtime configuration and raise ConfigError on invalid values."""
    timeouts = {
        "connect_timeout": connect_timeout,
        "login_timeout": login_timeout,
        "http_connect_timeout": http_connect_timeout,
        "http_read_timeout": http_read_timeout,
        "dns_timeout": dns_timeout,
    }
    for name, value in timeouts.items():
        if value <= 0:
            raise ConfigError(f"{name} must be > 0.")
    if not subdomains:
        raise ConfigError("At least one subdomain label is required.")
    if any(not label or "." in label or label != label.strip() for label in subdomains):
        raise ConfigError("Subdomain labels must be single non-empty DNS labels.")
    if not guess_ports:
        raise ConfigError("At least one guess port is required.")
    if not all(is_valid_port(port) for port in guess_ports):
        raise ConfigError(f"Guess ports must be within 1-{MAX_PORT}.")
    if "{domain}" not in thunderbird_url or not is_supported_url(
        thunderbird_url.format(domain="example.com")
    ):
        raise ConfigError("thunderbird_url must be an HTTP(S) URL containing '{domain}'.")
    if not is_supported_url(doh_url):
        raise ConfigError("doh_url must be an absolute HTTP(S) URL.")
