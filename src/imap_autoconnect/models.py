"""Protocols and lightweight model types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Protocol
from urllib.parse import unquote, urlparse

from .errors import ConfigError, InvalidMessageIdError

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .session import Transcript


@dataclass(frozen=True)
class HostCandidate:
    """One (host, port) pair worth probing."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class ProxyType(str, Enum):
    HTTP = "http"
    SOCKS4 = "socks4"
    SOCKS4A = "socks4a"
    SOCKS5 = "socks5"


@dataclass(frozen=True)
class ProxySettings:
    """Outbound proxy assigned to an actor."""

    type: ProxyType
    host: str
    port: int
    username: str | None = None
    password: str | None = None

    @property
    def needs_authentication(self) -> bool:
        return bool(self.username)

    @classmethod
    def from_url(cls, url: str) -> ProxySettings:
        """Parse ``scheme://[user:pass@]host:port`` into proxy settings."""
        parsed = urlparse(url.strip())
        try:
            proxy_type = ProxyType(parsed.scheme.lower())
        except ValueError as exc:
            raise ConfigError(f"Unsupported proxy type in {url!r}.") from exc
        try:
            port = parsed.port
        except ValueError as exc:
            raise ConfigError(f"Invalid proxy port in {url!r}.") from exc
        if not parsed.hostname or port is None:
            raise ConfigError(f"Proxy URL must include host and port: {url!r}.")
        return cls(
            type=proxy_type,
            host=parsed.hostname,
            port=port,
            username=unquote(parsed.username) if parsed.username else None,
            password=unquote(parsed.password) if parsed.password else None,
        )

    def url(self) -> str:
        # socks5h: let the proxy resolve names, as socks4a does
        scheme = {
            ProxyType.HTTP: "http",
            ProxyType.SOCKS4: "socks4",
            ProxyType.SOCKS4A: "socks4a",
            ProxyType.SOCKS5: "socks5h",
        }[self.type]
        credentials = ""
        if self.needs_authentication:
            credentials = f"{self.username}:{self.password or ''}@"
        return f"{scheme}://{credentials}{self.host}:{self.port}"

    def requests_proxies(self) -> dict[str, str]:
        """Return the ``proxies=`` mapping understood by requests."""
        value = self.url()
        return {"http": value, "https": value}


class MessageIdKind(str, Enum):
    UID = "uid"
    SEQUENCE = "sequence"


@dataclass(frozen=True)
class MessageId:
    """A message address tagged with the kind of identifier it carries.

    UIDs stay valid across mailbox operations. Sequence numbers are zero-based
    positions in the current mailbox snapshot and may shift after an expunge.
    """

    kind: MessageIdKind
    value: int

    @classmethod
    def uid(cls, value: int) -> MessageId:
        if value < 1:
            raise InvalidMessageIdError(f"UID must be a positive integer, got {value}")
        return cls(MessageIdKind.UID, value)

    @classmethod
    def sequence(cls, index: int) -> MessageId:
        if index < 0:
            raise InvalidMessageIdError(f"Sequence index must be >= 0, got {index}")
        return cls(MessageIdKind.SEQUENCE, index)

    @classmethod
    def parse(cls, text: str, is_uid: bool = True) -> MessageId:
        """Build an identifier from its string form."""
        raw = str(text).strip()
        if not raw.isdigit():
            raise InvalidMessageIdError(f"Invalid message id: {text!r}")
        value = int(raw)
        return cls.uid(value) if is_uid else cls.sequence(value)

    @property
    def is_uid(self) -> bool:
        return self.kind is MessageIdKind.UID

    def __str__(self) -> str:
        return str(self.value)


class SearchField(str, Enum):
    SUBJECT = "subject"
    FROM = "from"
    TO = "to"
    BODY = "body"

    @property
    def imap_key(self) -> str:
        return self.name


@dataclass(frozen=True)
class TextConstraint:
    field: SearchField
    text: str


@dataclass(frozen=True)
class SearchCriteria:
    """Conjunction of text constraints bounded below by a delivery timestamp."""

    delivered_after: int = 1
    constraints: tuple[TextConstraint, ...] = ()

    @classmethod
    def build(
        cls,
        *,
        delivered_after: int = 1,
        field1: SearchField = SearchField.SUBJECT,
        text1: str = "",
        field2: SearchField = SearchField.FROM,
        text2: str = "",
    ) -> SearchCriteria:
        """Mirror the two optional field/text slots; empty text is skipped."""
        constraints = tuple(
            TextConstraint(f, t) for f, t in ((field1, text1), (field2, text2)) if t
        )
        return cls(delivered_after=delivered_after, constraints=constraints)

    @property
    def delivered_after_utc(self) -> datetime:
        return datetime.fromtimestamp(self.delivered_after, tz=timezone.utc)

    def to_imap(self) -> list[object]:
        """Render as an imapclient criteria list."""
        criteria: list[object] = ["SINCE", self.delivered_after_utc.date()]
        for constraint in self.constraints:
            criteria.extend([constraint.field.imap_key, constraint.text])
        return criteria


@dataclass
class MailboxRef:
    """A folder on the server plus the state of our view of it."""

    name: str
    delimiter: str | None = "/"
    flags: tuple[str, ...] = ()
    is_open: bool = False
    readonly: bool = True
    count: int = 0

    @property
    def is_inbox(self) -> bool:
        return self.name.upper() == "INBOX"

    @property
    def short_name(self) -> str:
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[-1]
        return self.name


@dataclass(frozen=True)
class MailContent:
    """Headline fields and the chosen body of one message."""

    sender: str
    recipient: str
    subject: str
    body: str
    is_html: bool = False

    def as_text(self) -> str:
        return (
            f"From: {self.sender}\n"
            f"To: {self.recipient}\n"
            f"Subject: {self.subject}\n"
            f"Body:\n{self.body}"
        )


@dataclass(frozen=True)
class SourceResult:
    """Candidates produced by one discovery stage, or the reason it produced none."""

    stage: str
    candidates: tuple[HostCandidate, ...] = ()
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class DiscoveryCache(Protocol):
    """Contract for the persisted map of domain -> known-good servers."""

    def lookup(self, domain: str) -> list[HostCandidate]:
        """Return previously successful candidates, most recent first."""

    def record(self, domain: str, candidate: HostCandidate) -> None:
        """Remember a candidate that accepted a connection."""


class DocumentFetcher(Protocol):
    """Contract for autoconfiguration document retrieval."""

    def fetch(self, url: str, token: CancellationToken | None = None) -> str:
        """Return the document body or raise FetchError."""


class MxResolver(Protocol):
    """Contract for MX lookups."""

    def resolve_mx(self, domain: str, token: CancellationToken | None = None) -> list[str]:
        """Return MX hostnames ordered by preference or raise ResolutionError."""


class CandidateSource(Protocol):
    """One discovery stage."""

    name: str

    def candidates(
        self, domain: str, email: str, token: CancellationToken | None = None
    ) -> SourceResult:
        """Produce candidates for the domain; never raise for network failures."""


class ImapConnection(Protocol):
    """Operations this package needs from the IMAP protocol engine."""

    host: str
    port: int

    @property
    def is_connected(self) -> bool: ...

    @property
    def is_secure(self) -> bool: ...

    @property
    def is_authenticated(self) -> bool: ...

    def login(self, username: str, password: str) -> None: ...

    def personal_namespaces(self) -> list[str]: ...

    def list_mailboxes(self, namespace: str) -> list[MailboxRef]: ...

    def select(self, name: str, readonly: bool) -> int: ...

    def unselect(self) -> None: ...

    def search(self, criteria: list[object]) -> list[int]: ...

    def fetch_message(self, message_id: MessageId) -> bytes: ...

    def mark_deleted(self, message_id: MessageId) -> None: ...

    def expunge(self) -> None: ...

    def logout(self) -> None: ...

    def abort(self) -> None: ...


class Connector(Protocol):
    """Factory that opens an IMAP connection to one candidate."""

    def connect(
        self,
        candidate: HostCandidate,
        *,
        timeout: float,
        transcript: Transcript | None = None,
        proxy: ProxySettings | None = None,
    ) -> ImapConnection:
        """Open a (possibly TLS-upgraded) connection or raise."""
