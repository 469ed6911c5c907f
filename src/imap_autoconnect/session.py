"""Per-actor session state passed by reference into every operation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from threading import Lock

from .cancellation import CancellationToken
from .config import AutoconnectConfig
from .errors import PreconditionError
from .models import HostCandidate, ImapConnection, MailboxRef, ProxySettings

_LOGIN_COMMAND = re.compile(rb"^(\S+ LOGIN) ", re.IGNORECASE)
_LITERAL_MARKER = re.compile(rb"\{\d+\+?\}\r?\n$")


class Transcript:
    """Append-only record of the raw bytes exchanged with the server.

    Client lines are prefixed ``C: `` and server lines ``S: ``. LOGIN
    arguments are masked before they are stored, including arguments sent as
    literals in later writes.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._lock = Lock()
        self._masking_literal = False
        self._literal_masked = False

    def client(self, data: bytes) -> None:
        if self._masking_literal:
            self._mask_continuation(data)
            return
        match = _LOGIN_COMMAND.match(data)
        if match:
            self._masking_literal = bool(_LITERAL_MARKER.search(data))
            self._literal_masked = False
            data = match.group(1) + b" ********\r\n"
        self._write(b"C: ", data)

    def _mask_continuation(self, data: bytes) -> None:
        # literal data and the rest of the LOGIN line, up to its final CRLF
        if not self._literal_masked:
            self._write(b"C: ", b"********\r\n")
            self._literal_masked = True
        if data.endswith(b"\r\n") and not _LITERAL_MARKER.search(data):
            self._masking_literal = False

    def server(self, data: bytes) -> None:
        self._write(b"S: ", data)

    def note(self, text: str) -> None:
        self._write(b"# ", text.encode("utf-8") + b"\r\n")

    def _write(self, prefix: bytes, data: bytes) -> None:
        if not data:
            return
        with self._lock:
            self._buffer += prefix + data

    def to_bytes(self) -> bytes:
        with self._lock:
            return bytes(self._buffer)

    def text(self) -> str:
        return self.to_bytes().decode("utf-8", errors="replace")

    def __len__(self) -> int:
        return len(self._buffer)


@dataclass
class SessionContext:
    """State of one actor: its live connection, transcript, and mailbox view.

    Exactly one connection is live per context. Operations on a context must
    not run concurrently.
    """

    config: AutoconnectConfig = field(default_factory=AutoconnectConfig)
    token: CancellationToken = field(default_factory=CancellationToken)
    connection: ImapConnection | None = None
    transcript: Transcript | None = None
    endpoint: HostCandidate | None = None
    proxy: ProxySettings | None = None
    current_mailbox: MailboxRef | None = None
    mailboxes: list[MailboxRef] | None = None

    def begin_session(self, use_proxy: bool) -> Transcript:
        """Drop any previous session state and start a fresh transcript."""
        self.transcript = Transcript()
        self.connection = None
        self.endpoint = None
        self.current_mailbox = None
        self.mailboxes = None
        self.proxy = self.config.effective_proxy if use_proxy else None
        return self.transcript

    def end_session(self) -> None:
        """Forget the connection and mailbox view; the transcript stays readable."""
        self.connection = None
        self.endpoint = None
        self.current_mailbox = None
        self.mailboxes = None

    def require_connection(self, operation: str) -> ImapConnection:
        if self.connection is None:
            raise PreconditionError(operation, "Connect the IMAP client first!")
        return self.connection

    def require_authenticated(self, operation: str) -> ImapConnection:
        connection = self.require_connection(operation)
        if not connection.is_authenticated:
            raise PreconditionError(operation, "Authenticate the IMAP client first!")
        return connection

    def require_current_mailbox(self, operation: str) -> MailboxRef:
        if self.current_mailbox is None:
            raise PreconditionError(operation, "Open folder first!")
        return self.current_mailbox

    def require_mailboxes(self, operation: str) -> list[MailboxRef]:
        if self.mailboxes is None:
            raise PreconditionError(operation, "Get folder list first!")
        return self.mailboxes

    def require_transcript(self, operation: str) -> Transcript:
        if self.transcript is None:
            raise PreconditionError(operation, "Connect the IMAP client first!")
        return self.transcript
