import logging
import threading
from email.message import EmailMessage

import pytest

from imap_autoconnect import mailbox
from imap_autoconnect.config import AutoconnectConfig
from imap_autoconnect.errors import (
    MailboxNotFoundError,
    NamespaceError,
    OperationTimeout,
    PreconditionError,
    ProtocolError,
)
from imap_autoconnect.models import HostCandidate, MailboxRef, MessageId, SearchCriteria
from imap_autoconnect.session import SessionContext

LOGGER = logging.getLogger("test")


def _message(subject: str, plain: str | None = "plain body", html: str | None = None) -> bytes:
    message = EmailMessage()
    message["From"] = "Alice <alice@example.com>"
    message["To"] = "bob@example.com"
    message["Subject"] = subject
    if plain is not None:
        message.set_content(plain)
        if html is not None:
            message.add_alternative(html, subtype="html")
    elif html is not None:
        message.set_content(html, subtype="html")
    return message.as_bytes()


class FakeMailServer:
    """In-memory ImapConnection with one mailbox tree."""

    def __init__(self) -> None:
        self.host = "imap.example.com"
        self.port = 993
        self.is_connected = True
        self.is_secure = True
        self.is_authenticated = False
        self.folders: dict[str, list[tuple[int, bytes]]] = {
            "INBOX": [
                (11, _message("Welcome")),
                (12, _message("Newsletter", plain="text", html="<p>html</p>")),
            ],
            "INBOX.Archive": [(5, _message("Old", plain=None, html="<b>only html</b>"))],
        }
        self.namespaces = ["INBOX."]
        self.bad_namespaces: set[str] = set()
        self.namespace_error = False
        self.calls: list[tuple[object, ...]] = []
        self.deleted: set[int] = set()
        self.selected: str | None = None
        self.search_error = False
        self.block_login: threading.Event | None = None

    def login(self, username: str, password: str) -> None:
        self.calls.append(("login", username))
        if self.block_login is not None:
            self.block_login.wait(5.0)
            raise OSError("socket closed")
        if password != "secret":
            raise ProtocolError("LOGIN failed: AUTHENTICATIONFAILED")
        self.is_authenticated = True

    def personal_namespaces(self) -> list[str]:
        if self.namespace_error:
            raise ProtocolError("NAMESPACE failed: BAD")
        return list(self.namespaces)

    def list_mailboxes(self, namespace: str) -> list[MailboxRef]:
        self.calls.append(("list", namespace))
        if namespace in self.bad_namespaces:
            raise ProtocolError(f"LIST {namespace!r} failed: NO")
        return [MailboxRef(name, delimiter=".") for name in self.folders]

    def select(self, name: str, readonly: bool) -> int:
        self.calls.append(("select", name, readonly))
        self.selected = name
        return len(self.folders[name])

    def unselect(self) -> None:
        self.calls.append(("unselect",))
        self.selected = None

    def search(self, criteria: list[object]) -> list[int]:
        self.calls.append(("search", criteria))
        if self.search_error:
            raise ProtocolError("SEARCH failed: BAD")
        assert self.selected is not None
        return [uid for uid, _raw in self.folders[self.selected]]

    def _find(self, message_id: MessageId) -> tuple[int, bytes]:
        assert self.selected is not None
        messages = self.folders[self.selected]
        if message_id.is_uid:
            for uid, raw in messages:
                if uid == message_id.value:
                    return uid, raw
            raise ProtocolError(f"Message uid {message_id} not found")
        return messages[message_id.value]

    def fetch_message(self, message_id: MessageId) -> bytes:
        self.calls.append(("fetch", message_id))
        return self._find(message_id)[1]

    def mark_deleted(self, message_id: MessageId) -> None:
        self.calls.append(("store", message_id))
        self.deleted.add(self._find(message_id)[0])

    def expunge(self) -> None:
        self.calls.append(("expunge",))
        assert self.selected is not None
        self.folders[self.selected] = [
            (uid, raw) for uid, raw in self.folders[self.selected] if uid not in self.deleted
        ]

    def logout(self) -> None:
        self.calls.append(("logout",))
        self.is_connected = False
        self.is_authenticated = False

    def abort(self) -> None:
        self.is_connected = False
        if self.block_login is not None:
            self.block_login.set()


def _connected() -> tuple[SessionContext, FakeMailServer]:
    ctx = SessionContext(config=AutoconnectConfig())
    ctx.begin_session(use_proxy=False)
    server = FakeMailServer()
    ctx.connection = server  # type: ignore[assignment]
    ctx.endpoint = HostCandidate(server.host, server.port)
    return ctx, server


def _logged_in() -> tuple[SessionContext, FakeMailServer]:
    ctx, server = _connected()
    mailbox.login(ctx, "alice@example.com", "secret", logger=LOGGER)
    return ctx, server


def test_operations_require_a_connection() -> None:
    ctx = SessionContext()
    with pytest.raises(PreconditionError, match="Connect the IMAP client first!"):
        mailbox.login(ctx, "alice@example.com", "secret", logger=LOGGER)
    with pytest.raises(PreconditionError, match="Connect the IMAP client first!"):
        mailbox.disconnect(ctx, logger=LOGGER)
    with pytest.raises(PreconditionError, match="Connect the IMAP client first!"):
        mailbox.get_log(ctx, logger=LOGGER)


def test_operations_require_authentication() -> None:
    ctx, server = _connected()
    with pytest.raises(PreconditionError, match="Authenticate the IMAP client first!"):
        mailbox.list_mailboxes(ctx, logger=LOGGER)
    with pytest.raises(PreconditionError, match="Authenticate the IMAP client first!"):
        mailbox.open_inbox(ctx, logger=LOGGER)
    assert server.calls == []


def test_login_opens_inbox_read_write(caplog: pytest.LogCaptureFixture) -> None:
    ctx, server = _connected()
    with caplog.at_level(logging.INFO):
        mailbox.login(ctx, "alice@example.com", "secret", logger=LOGGER)
    assert server.calls == [("login", "alice@example.com"), ("select", "INBOX", False)]
    assert ctx.current_mailbox is not None
    assert ctx.current_mailbox.is_open and ctx.current_mailbox.count == 2
    assert ctx.current_mailbox.readonly is False
    assert "Authenticated successfully as a***@example.com" in caplog.text
    assert "there are 2 total messages" in caplog.text


def test_login_with_folder_listing_keeps_current_inbox() -> None:
    ctx, _server = _connected()
    mailbox.login(
        ctx, "alice@example.com", "secret", load_all_folders=True, logger=LOGGER
    )
    assert ctx.mailboxes is not None
    assert ctx.mailboxes[0] is ctx.current_mailbox


def test_login_failure_propagates() -> None:
    ctx, _server = _connected()
    with pytest.raises(ProtocolError, match="AUTHENTICATIONFAILED"):
        mailbox.login(ctx, "alice@example.com", "wrong", logger=LOGGER)
    assert ctx.current_mailbox is None


def test_login_timeout_aborts_the_call() -> None:
    ctx, server = _connected()
    server.block_login = threading.Event()
    with pytest.raises(OperationTimeout, match="login timed out"):
        mailbox.login(ctx, "alice@example.com", "secret", timeout=0.05, logger=LOGGER)
    assert server.is_connected is False
    assert ctx.token.cancelled is False


def test_list_mailboxes_uses_cache_until_refreshed() -> None:
    ctx, server = _logged_in()
    assert mailbox.list_mailboxes(ctx, logger=LOGGER) == ["INBOX", "INBOX.Archive"]
    assert mailbox.list_mailboxes(ctx, logger=LOGGER) == ["INBOX", "INBOX.Archive"]
    assert [call for call in server.calls if call[0] == "list"] == [("list", "INBOX.")]

    mailbox.list_mailboxes(ctx, use_cache=False, logger=LOGGER)
    assert len([call for call in server.calls if call[0] == "list"]) == 2


def test_list_mailboxes_merges_namespaces_and_puts_inbox_first() -> None:
    ctx, server = _logged_in()
    server.folders = {"Archive": [], "INBOX": [], "Sent": []}
    server.namespaces = ["", "Shared."]
    assert mailbox.list_mailboxes(ctx, logger=LOGGER) == ["INBOX", "Archive", "Sent"]
    without_inbox = mailbox.list_mailboxes(
        ctx, use_cache=False, include_inbox=False, logger=LOGGER
    )
    assert without_inbox == ["Archive", "Sent"]


def test_list_mailboxes_skips_bad_namespace_unless_strict(
    caplog: pytest.LogCaptureFixture,
) -> None:
    ctx, server = _logged_in()
    server.namespaces = ["INBOX.", "Other."]
    server.bad_namespaces = {"Other."}
    with caplog.at_level(logging.WARNING):
        assert mailbox.list_mailboxes(ctx, logger=LOGGER) == ["INBOX", "INBOX.Archive"]
    assert "Skipping personal namespace 'Other.'" in caplog.text

    with pytest.raises(NamespaceError):
        mailbox.list_mailboxes(ctx, use_cache=False, ignore_bad_namespaces=False, logger=LOGGER)


def test_list_mailboxes_namespace_failure_falls_back_to_root_unless_strict(
    caplog: pytest.LogCaptureFixture,
) -> None:
    ctx, server = _logged_in()
    server.namespace_error = True
    with caplog.at_level(logging.WARNING):
        assert mailbox.list_mailboxes(ctx, logger=LOGGER) == ["INBOX", "INBOX.Archive"]
    assert ("list", "") in server.calls
    assert "Namespace lookup failed" in caplog.text

    with pytest.raises(NamespaceError, match="Could not enumerate personal namespaces"):
        mailbox.list_mailboxes(ctx, use_cache=False, ignore_bad_namespaces=False, logger=LOGGER)


def test_open_mailbox_requires_listing_and_known_name() -> None:
    ctx, server = _logged_in()
    with pytest.raises(PreconditionError, match="Get folder list first!"):
        mailbox.open_mailbox(ctx, "INBOX.Archive", logger=LOGGER)

    mailbox.list_mailboxes(ctx, logger=LOGGER)
    before = list(server.calls)
    with pytest.raises(MailboxNotFoundError, match="Folder 'Missing' not found"):
        mailbox.open_mailbox(ctx, "Missing", logger=LOGGER)
    assert server.calls == before


def test_open_mailbox_is_case_insensitive_and_switches_current() -> None:
    ctx, server = _logged_in()
    inbox = ctx.current_mailbox
    mailbox.list_mailboxes(ctx, logger=LOGGER)
    assert mailbox.open_mailbox(ctx, "inbox.archive", logger=LOGGER) is True
    assert ctx.current_mailbox is not None
    assert ctx.current_mailbox.name == "INBOX.Archive"
    assert ctx.current_mailbox.readonly is True
    assert server.calls[-1] == ("select", "INBOX.Archive", True)
    assert inbox is not None and inbox.is_open is False


def test_close_mailbox_then_search_needs_open_folder() -> None:
    ctx, server = _logged_in()
    mailbox.close_mailbox(ctx, logger=LOGGER)
    assert server.calls[-1] == ("unselect",)
    with pytest.raises(PreconditionError, match="Open folder first!"):
        mailbox.search(ctx, SearchCriteria.build(text1="x"), logger=LOGGER)


def test_search_returns_uids() -> None:
    ctx, server = _logged_in()
    criteria = SearchCriteria.build(text1="Welcome")
    assert mailbox.search(ctx, criteria, logger=LOGGER) == [11, 12]
    assert server.calls[-1] == ("search", criteria.to_imap())


def test_search_rejected_by_server_returns_empty(caplog: pytest.LogCaptureFixture) -> None:
    ctx, server = _logged_in()
    server.search_error = True
    with caplog.at_level(logging.WARNING):
        assert mailbox.search(ctx, SearchCriteria.build(text1="x"), logger=LOGGER) == []
    assert "Search denied by the server" in caplog.text


def test_read_mail_by_uid_and_by_sequence() -> None:
    ctx, _server = _logged_in()
    by_uid = mailbox.read_mail(ctx, MessageId.uid(11), logger=LOGGER)
    by_index = mailbox.read_mail(ctx, MessageId.sequence(0), logger=LOGGER)
    assert by_uid == by_index
    assert by_uid.sender == "Alice <alice@example.com>"
    assert by_uid.recipient == "bob@example.com"
    assert by_uid.subject == "Welcome"
    assert by_uid.body.strip() == "plain body"
    assert by_uid.is_html is False


def test_read_mail_prefers_html_on_request_or_when_no_plain_part() -> None:
    ctx, _server = _logged_in()
    html = mailbox.read_mail(ctx, MessageId.uid(12), prefer_html=True, logger=LOGGER)
    assert html.body.strip() == "<p>html</p>"
    assert html.is_html is True
    plain = mailbox.read_mail(ctx, MessageId.uid(12), logger=LOGGER)
    assert plain.body.strip() == "text"

    mailbox.list_mailboxes(ctx, logger=LOGGER)
    mailbox.open_mailbox(ctx, "INBOX.Archive", logger=LOGGER)
    only_html = mailbox.read_mail(ctx, MessageId.uid(5), logger=LOGGER)
    assert only_html.body.strip() == "<b>only html</b>"
    assert only_html.is_html is True


def test_read_mail_raw_returns_message_bytes() -> None:
    ctx, server = _logged_in()
    raw = mailbox.read_mail_raw(ctx, MessageId.uid(12), logger=LOGGER)
    assert raw == server.folders["INBOX"][1][1]
    assert b"Subject: Newsletter" in raw


def test_read_mail_unknown_uid_raises() -> None:
    ctx, _server = _logged_in()
    with pytest.raises(ProtocolError):
        mailbox.read_mail(ctx, MessageId.uid(999), logger=LOGGER)


def test_delete_mail_reopens_readonly_folder_for_writing() -> None:
    ctx, server = _logged_in()
    mailbox.list_mailboxes(ctx, logger=LOGGER)
    mailbox.open_mailbox(ctx, "INBOX.Archive", logger=LOGGER)
    assert mailbox.get_mail_count(ctx, logger=LOGGER) == 1

    mailbox.delete_mail(ctx, MessageId.uid(5), logger=LOGGER)

    assert ("select", "INBOX.Archive", False) in server.calls
    assert server.calls[-2:] == [("store", MessageId.uid(5)), ("expunge",)]
    assert mailbox.get_mail_count(ctx, logger=LOGGER) == 0
    assert mailbox.get_last_message_id(ctx, logger=LOGGER) == -1


def test_get_last_message_id_is_zero_based() -> None:
    ctx, _server = _logged_in()
    assert mailbox.get_mail_count(ctx, logger=LOGGER) == 2
    assert mailbox.get_last_message_id(ctx, logger=LOGGER) == 1


def test_disconnect_keeps_the_transcript() -> None:
    ctx, server = _logged_in()
    assert ctx.transcript is not None
    ctx.transcript.note("hello")
    mailbox.disconnect(ctx, logger=LOGGER)
    assert server.calls[-1] == ("logout",)
    assert ctx.connection is None
    assert "# hello" in mailbox.get_log(ctx, logger=LOGGER)
    with pytest.raises(PreconditionError):
        mailbox.search(ctx, SearchCriteria.build(text1="x"), logger=LOGGER)


def test_disconnect_when_not_connected(caplog: pytest.LogCaptureFixture) -> None:
    ctx, server = _connected()
    server.is_connected = False
    with caplog.at_level(logging.INFO):
        mailbox.disconnect(ctx, logger=LOGGER)
    assert "The client was not connected" in caplog.text
    assert ctx.connection is None
