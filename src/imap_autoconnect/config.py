"""Runtime configuration model."""

from __future__ import annotations

from dataclasses import dataclass

from .models import ProxySettings
from .validation import validate_runtime_constraints

DEFAULT_USER_AGENT = "imap-autoconnect/1.0"
DEFAULT_CONNECT_TIMEOUT = 60.0
DEFAULT_LOGIN_TIMEOUT = 10.0
DEFAULT_HTTP_CONNECT_TIMEOUT = 30.0
DEFAULT_HTTP_READ_TIMEOUT = 30.0
DEFAULT_DNS_TIMEOUT = 30.0
DEFAULT_SUBDOMAINS = ("mail", "imap-mail", "inbound", "in", "mx", "imap", "imaps", "m")
DEFAULT_GUESS_PORTS = (993, 143)
THUNDERBIRD_AUTOCONFIG_URL = "https://live.mozillamessaging.com/autoconfig/v1.1/{domain}"
GOOGLE_DOH_URL = "https://dns.google/resolve"


@dataclass(frozen=True)
class AutoconnectConfig:
    """Validated configuration shared by discovery and mailbox operations."""

    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    login_timeout: float = DEFAULT_LOGIN_TIMEOUT
    http_connect_timeout: float = DEFAULT_HTTP_CONNECT_TIMEOUT
    http_read_timeout: float = DEFAULT_HTTP_READ_TIMEOUT
    dns_timeout: float = DEFAULT_DNS_TIMEOUT
    subdomains: tuple[str, ...] = DEFAULT_SUBDOMAINS
    guess_ports: tuple[int, ...] = DEFAULT_GUESS_PORTS
    thunderbird_url: str = THUNDERBIRD_AUTOCONFIG_URL
    doh_url: str = GOOGLE_DOH_URL
    user_agent: str = DEFAULT_USER_AGENT
    verify_certificates: bool = False
    cache_path: str | None = None
    use_proxy: bool = True
    proxy: ProxySettings | None = None

    def __post_init__(self) -> None:
        validate_runtime_constraints(
            connect_timeout=self.connect_timeout,
            login_timeout=self.login_timeout,
            http_connect_timeout=self.http_connect_timeout,
            http_read_timeout=self.http_read_timeout,
            dns_timeout=self.dns_timeout,
            subdomains=self.subdomains,
            guess_ports=self.guess_ports,
            thunderbird_url=self.thunderbird_url,
            doh_url=self.doh_url,
        )

    @property
    def http_timeout(self) -> tuple[float, float]:
        """(connect, read) pair in the form requests expects."""
        return (self.http_connect_timeout, self.http_read_timeout)

    @property
    def effective_proxy(self) -> ProxySettings | None:
        return self.proxy if self.use_proxy else None
