"""imapclient-backed protocol engine.

Adds three things imapclient does not do by itself: opportunistic STARTTLS on
non-implicit-TLS ports, tunnelling the socket through the actor's proxy, and
recording the raw exchange into a :class:`~imap_autoconnect.session.Transcript`.
"""

from __future__ import annotations

import imaplib
import logging
import socket
import ssl
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from threading import Lock
from typing import Any

import socks
from imapclient import DELETED, IMAPClient

from .cancellation import CancellationToken
from .errors import ProtocolError
from .models import HostCandidate, MailboxRef, MessageId, ProxySettings, ProxyType
from .session import Transcript

IMPLICIT_TLS_PORT = 993
# ValueError covers hostnames the IDNA codec rejects
ENGINE_ERRORS: tuple[type[BaseException], ...] = (OSError, ValueError, imaplib.IMAP4.error)

_SOCKS_TYPES = {
    ProxyType.HTTP: socks.HTTP,
    ProxyType.SOCKS4: socks.SOCKS4,
    ProxyType.SOCKS4A: socks.SOCKS4,
    ProxyType.SOCKS5: socks.SOCKS5,
}


def make_ssl_context(verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def open_socket(
    host: str, port: int, timeout: float | None, proxy: ProxySettings | None
) -> socket.socket:
    """Open a TCP connection, through ``proxy`` when one is assigned."""
    if proxy is None:
        return socket.create_connection((host, port), timeout)
    return socks.create_connection(
        (host, port),
        timeout=timeout,
        proxy_type=_SOCKS_TYPES[proxy.type],
        proxy_addr=proxy.host,
        proxy_port=proxy.port,
        # plain socks4 cannot carry hostnames
        proxy_rdns=proxy.type is not ProxyType.SOCKS4,
        proxy_username=proxy.username,
        proxy_password=proxy.password,
    )


class SocketAborter:
    """Shuts down the connections of an in-flight connect from another thread.

    TLS wrapping detaches the original socket object, so a duplicate of each
    descriptor is kept; ``shutdown`` on it wakes a ``recv`` blocked on the
    wrapped socket, where ``close`` would not.
    """

    def __init__(self) -> None:
        self._handles: list[socket.socket] = []
        self._lock = Lock()
        self._aborted = False

    def track(self, sock: socket.socket) -> None:
        handle = socket.fromfd(sock.fileno(), sock.family, sock.type)
        with self._lock:
            self._handles.append(handle)
            aborted = self._aborted
        if aborted:
            _shutdown(handle)

    def abort(self) -> None:
        with self._lock:
            self._aborted = True
            handles = list(self._handles)
        for handle in handles:
            _shutdown(handle)

    def close(self) -> None:
        with self._lock:
            handles, self._handles = self._handles, []
        for handle in handles:
            handle.close()


def _shutdown(handle: socket.socket) -> None:
    # not connected yet or already gone
    with suppress(OSError):
        handle.shutdown(socket.SHUT_RDWR)


class _TranscribingIMAP4(imaplib.IMAP4):
    """imaplib transport that tunnels, optionally wraps in TLS, and records traffic."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        timeout: float | None,
        implicit_tls: bool,
        ssl_context: ssl.SSLContext,
        proxy: ProxySettings | None,
        transcript: Transcript | None,
        aborter: SocketAborter,
    ) -> None:
        self._implicit_tls = implicit_tls
        self._ssl_context = ssl_context
        self._proxy = proxy
        self._transcript = transcript
        self._aborter = aborter
        super().__init__(host, port, timeout)

    def _create_socket(self, timeout: float | None) -> socket.socket:
        sock = open_socket(self.host, self.port, timeout, self._proxy)
        self._aborter.track(sock)
        if self._implicit_tls:
            return self._ssl_context.wrap_socket(sock, server_hostname=self.host)
        return sock

    def readline(self) -> bytes:
        line = super().readline()
        if self._transcript is not None:
            self._transcript.server(line)
        return line

    def read(self, size: int) -> bytes:
        data = super().read(size)
        if self._transcript is not None:
            self._transcript.server(data)
        return data

    def send(self, data: bytes) -> None:
        if self._transcript is not None:
            self._transcript.client(data)
        super().send(data)


class _AutoconnectIMAPClient(IMAPClient):
    """IMAPClient whose transport is a :class:`_TranscribingIMAP4`."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        implicit_tls: bool,
        ssl_context: ssl.SSLContext,
        timeout: float,
        proxy: ProxySettings | None,
        transcript: Transcript | None,
        aborter: SocketAborter,
    ) -> None:
        self._transport_options = {
            "implicit_tls": implicit_tls,
            "ssl_context": ssl_context,
            "proxy": proxy,
            "transcript": transcript,
            "aborter": aborter,
        }
        super().__init__(
            host,
            port=port,
            use_uid=True,
            ssl=implicit_tls,
            ssl_context=ssl_context,
            timeout=timeout,
        )

    def _create_IMAP4(self) -> imaplib.IMAP4:
        connect_timeout = getattr(self._timeout, "connect", None)
        return _TranscribingIMAP4(
            self.host, self.port, timeout=connect_timeout, **self._transport_options
        )


@contextmanager
def _engine_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ENGINE_ERRORS as exc:
        raise ProtocolError(f"{operation} failed: {exc}") from exc


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return "" if value is None else str(value)


class ImapClientConnection:
    """:class:`~imap_autoconnect.models.ImapConnection` over an IMAPClient."""

    def __init__(self, client: IMAPClient, candidate: HostCandidate, *, secure: bool) -> None:
        self._client = client
        self.host = candidate.host
        self.port = candidate.port
        self._secure = secure
        self._connected = True
        self._authenticated = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_secure(self) -> bool:
        return self._secure

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    def _has_capability(self, name: bytes) -> bool:
        return name in self._client.capabilities()

    def login(self, username: str, password: str) -> None:
        # plain LOGIN: no SASL negotiation, so no OAuth mechanism can be picked
        with _engine_errors("LOGIN"):
            self._client.login(username, password)
        self._authenticated = True

    def personal_namespaces(self) -> list[str]:
        with _engine_errors("NAMESPACE"):
            if not self._has_capability(b"NAMESPACE"):
                return [""]
            namespaces = self._client.namespace()
        personal = namespaces.personal or ()
        return [_decode(prefix) for prefix, _delimiter in personal] or [""]

    def list_mailboxes(self, namespace: str) -> list[MailboxRef]:
        with _engine_errors(f"LIST {namespace!r}"):
            listing = self._client.list_folders(directory=namespace, pattern="*")
        return [
            MailboxRef(
                name=_decode(name),
                delimiter=_decode(delimiter) or None,
                flags=tuple(_decode(flag) for flag in flags),
            )
            for flags, delimiter, name in listing
        ]

    def select(self, name: str, readonly: bool) -> int:
        with _engine_errors(f"SELECT {name}"):
            info = self._client.select_folder(name, readonly=readonly)
        return int(info.get(b"EXISTS", 0))

    def unselect(self) -> None:
        with _engine_errors("UNSELECT"):
            if self._has_capability(b"UNSELECT"):
                self._client.unselect_folder()
            else:
                self._client.close_folder()

    def search(self, criteria: list[object]) -> list[int]:
        with _engine_errors("SEARCH"):
            return [int(uid) for uid in self._client.search(criteria)]

    @contextmanager
    def _addressing(self, message_id: MessageId) -> Iterator[int]:
        """Yield the wire id, switching the client to sequence numbers if needed."""
        if message_id.is_uid:
            yield message_id.value
            return
        previous = self._client.use_uid
        self._client.use_uid = False
        try:
            # zero-based index to one-based IMAP sequence number
            yield message_id.value + 1
        finally:
            self._client.use_uid = previous

    def fetch_message(self, message_id: MessageId) -> bytes:
        with _engine_errors(f"FETCH {message_id}"), self._addressing(message_id) as wire_id:
            response = self._client.fetch([wire_id], ["BODY.PEEK[]"])
        data = response.get(wire_id, {})
        raw = data.get(b"BODY[]")
        if raw is None:
            raise ProtocolError(f"Message {message_id.kind.value} {message_id} not found")
        return bytes(raw)

    def mark_deleted(self, message_id: MessageId) -> None:
        with _engine_errors(f"STORE {message_id}"), self._addressing(message_id) as wire_id:
            self._client.add_flags([wire_id], [DELETED], silent=True)

    def expunge(self) -> None:
        with _engine_errors("EXPUNGE"):
            self._client.expunge()

    def logout(self) -> None:
        try:
            with _engine_errors("LOGOUT"):
                self._client.logout()
        finally:
            self._connected = False
            self._authenticated = False

    def abort(self) -> None:
        self._connected = False
        self._client.shutdown()


class ImapClientConnector:
    """Opens :class:`ImapClientConnection` objects for candidates."""

    def __init__(
        self,
        *,
        verify_certificates: bool,
        logger: logging.Logger,
        token: CancellationToken | None = None,
    ) -> None:
        self._ssl_context = make_ssl_context(verify_certificates)
        self._logger = logger
        self._token = token or CancellationToken()

    def connect(
        self,
        candidate: HostCandidate,
        *,
        timeout: float,
        transcript: Transcript | None = None,
        proxy: ProxySettings | None = None,
    ) -> ImapClientConnection:
        implicit_tls = candidate.port == IMPLICIT_TLS_PORT
        if transcript is not None:
            transcript.note(f"connect {candidate} tls={'implicit' if implicit_tls else 'auto'}")
        aborter = SocketAborter()
        try:
            with self._token.guard(f"connect to {candidate}", aborter.abort), _engine_errors(
                f"connect to {candidate}"
            ):
                client = _AutoconnectIMAPClient(
                    candidate.host,
                    candidate.port,
                    implicit_tls=implicit_tls,
                    ssl_context=self._ssl_context,
                    timeout=timeout,
                    proxy=proxy,
                    transcript=transcript,
                    aborter=aborter,
                )
                secure = implicit_tls
                try:
                    if not implicit_tls and b"STARTTLS" in client.capabilities():
                        client.starttls(self._ssl_context)
                        secure = True
                except Exception:
                    client.shutdown()
                    raise
        finally:
            aborter.close()
        return ImapClientConnection(client, candidate, secure=secure)
