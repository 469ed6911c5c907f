"""Stateful operations on an established session.

Every function takes the actor's :class:`SessionContext` and checks its
preconditions before touching the network, so a call made out of order fails
with :class:`PreconditionError` instead of a protocol error.
"""

from __future__ import annotations

import email
import logging
from contextlib import AbstractContextManager
from email.message import EmailMessage
from email.policy import default as default_policy
from typing import cast

from .errors import MailboxNotFoundError, NamespaceError, PreconditionError, ProtocolError
from .logging_utils import mask_address
from .models import ImapConnection, MailboxRef, MailContent, MessageId, SearchCriteria
from .session import SessionContext

INBOX = "INBOX"


def _network(
    ctx: SessionContext, connection: ImapConnection, operation: str
) -> AbstractContextManager[None]:
    return ctx.token.guard(operation, connection.abort)


def _select(
    ctx: SessionContext, connection: ImapConnection, folder: MailboxRef, *, readonly: bool
) -> None:
    with _network(ctx, connection, f"open {folder.name}"):
        folder.count = connection.select(folder.name, readonly)
    folder.is_open = True
    folder.readonly = readonly


def _set_current(ctx: SessionContext, folder: MailboxRef | None) -> None:
    if ctx.current_mailbox is not None and ctx.current_mailbox is not folder:
        ctx.current_mailbox.is_open = False
    ctx.current_mailbox = folder


def _inbox_ref(ctx: SessionContext) -> MailboxRef:
    for folder in ctx.mailboxes or []:
        if folder.is_inbox:
            return folder
    return MailboxRef(INBOX)


def disconnect(ctx: SessionContext, *, logger: logging.Logger) -> None:
    """Log out and forget the session. The transcript stays readable."""
    connection = ctx.require_connection("disconnect")
    try:
        if connection.is_connected:
            try:
                with _network(ctx, connection, "disconnect"):
                    connection.logout()
                logger.info("Client disconnected")
            except ProtocolError as exc:
                logger.warning("Logout failed, closing the socket: %s", exc)
                connection.abort()
        else:
            logger.info("The client was not connected")
    finally:
        ctx.end_session()


def login(
    ctx: SessionContext,
    email_address: str,
    password: str,
    *,
    open_inbox: bool = True,
    load_all_folders: bool = False,
    timeout: float | None = None,
    logger: logging.Logger,
) -> None:
    """Authenticate with a password, then optionally open INBOX and/or list folders."""
    connection = ctx.require_connection("login")
    if not connection.is_connected:
        raise PreconditionError("login", "Connect the IMAP client first!")
    deadline = timeout if timeout is not None else ctx.config.login_timeout
    with ctx.token.linked(deadline, "login") as scope:
        with scope.guard("login", connection.abort):
            connection.login(email_address, password)
    logger.info("Authenticated successfully as %s", mask_address(email_address))

    if open_inbox:
        _open_inbox(ctx, logger=logger)
    if load_all_folders:
        list_mailboxes(ctx, use_cache=False, logger=logger)


def get_log(ctx: SessionContext, *, logger: logging.Logger) -> str:
    """Return the protocol transcript of the current (or last) session as text."""
    log = ctx.require_transcript("get log").text()
    logger.debug("Protocol log:\n%s", log)
    return log


def open_inbox(ctx: SessionContext, *, logger: logging.Logger) -> MailboxRef:
    return _open_inbox(ctx, logger=logger)


def _open_inbox(ctx: SessionContext, *, logger: logging.Logger) -> MailboxRef:
    connection = ctx.require_authenticated("open inbox")
    inbox = _inbox_ref(ctx)
    _select(ctx, connection, inbox, readonly=False)
    logger.info("Opened the inbox, there are %d total messages", inbox.count)
    _set_current(ctx, inbox)
    return inbox


def list_mailboxes(
    ctx: SessionContext,
    *,
    use_cache: bool = True,
    include_inbox: bool = True,
    ignore_bad_namespaces: bool = True,
    logger: logging.Logger,
) -> list[str]:
    """Return full folder names across every personal namespace.

    A failed NAMESPACE lookup falls back to the root namespace, and a namespace
    that cannot be listed is skipped, when ``ignore_bad_namespaces`` is set.
    Otherwise either failure raises NamespaceError.
    """
    if use_cache and ctx.mailboxes is not None:
        names = [folder.name for folder in ctx.mailboxes]
        logger.info("Folder count (cached): %d", len(names))
        logger.debug("Folders (cached): %s", ", ".join(names))
        return names

    connection = ctx.require_authenticated("list folders")
    folders: list[MailboxRef] = []
    with _network(ctx, connection, "list folders"):
        try:
            namespaces = connection.personal_namespaces()
        except ProtocolError as exc:
            if not ignore_bad_namespaces:
                raise NamespaceError(f"Could not enumerate personal namespaces: {exc}") from exc
            logger.warning("Namespace lookup failed, listing from the root: %s", exc)
            namespaces = [""]
        for namespace in namespaces:
            try:
                folders.extend(connection.list_mailboxes(namespace))
            except ProtocolError as exc:
                if not ignore_bad_namespaces:
                    raise NamespaceError(
                        f"Could not list personal namespace {namespace!r}: {exc}"
                    ) from exc
                logger.warning("Skipping personal namespace %r: %s", namespace, exc)

    unique: dict[str, MailboxRef] = {}
    for folder in folders:
        unique.setdefault(folder.name, folder)
    inbox = next((f for f in unique.values() if f.is_inbox), None) or _inbox_ref(ctx)
    folders = [folder for folder in unique.values() if not folder.is_inbox]
    if include_inbox:
        folders.insert(0, inbox)
    # keep state of folders we already hold so the current one stays the same object
    known = {folder.name: folder for folder in ctx.mailboxes or []}
    if ctx.current_mailbox is not None:
        known[ctx.current_mailbox.name] = ctx.current_mailbox
    folders = [known.get(folder.name, folder) for folder in folders]
    ctx.mailboxes = folders

    names = [folder.name for folder in folders]
    logger.info("Folder count: %d", len(names))
    logger.debug("Folders: %s", ", ".join(names))
    return names


def open_mailbox(
    ctx: SessionContext, name: str, *, readonly: bool = True, logger: logging.Logger
) -> bool:
    """Open a folder from the last listing by case-insensitive full name."""
    folders = ctx.require_mailboxes("open folder")
    folder = next((f for f in folders if f.name.lower() == name.lower()), None)
    if folder is None:
        raise MailboxNotFoundError(name)
    connection = ctx.require_authenticated("open folder")
    _select(ctx, connection, folder, readonly=readonly)
    logger.info("Folder '%s' is opened (messages: %d)", folder.short_name, folder.count)
    _set_current(ctx, folder)
    return folder.is_open


def close_mailbox(ctx: SessionContext, *, logger: logging.Logger) -> None:
    folder = ctx.require_current_mailbox("close folder")
    if folder.is_open:
        connection = ctx.require_authenticated("close folder")
        with _network(ctx, connection, "close folder"):
            connection.unselect()
        folder.is_open = False
    _set_current(ctx, None)
    logger.info("Folder '%s' is closed", folder.short_name)


def _current_open(
    ctx: SessionContext, operation: str, *, readonly: bool, writable: bool = False
) -> tuple[ImapConnection, MailboxRef]:
    """Return the current folder, selecting it if closed or if write access is required."""
    connection = ctx.require_authenticated(operation)
    folder = ctx.require_current_mailbox(operation)
    if not folder.is_open or (writable and folder.readonly):
        _select(ctx, connection, folder, readonly=readonly)
    return connection, folder


def search(
    ctx: SessionContext, criteria: SearchCriteria, *, logger: logging.Logger
) -> list[int]:
    """Return the UIDs in the current folder matching ``criteria``.

    A search the server rejects yields no results.
    """
    connection, _folder = _current_open(ctx, "search", readonly=False)
    try:
        with _network(ctx, connection, "search"):
            uids = connection.search(criteria.to_imap())
    except ProtocolError as exc:
        logger.warning("Search denied by the server")
        logger.debug("Search failure: %s", exc)
        return []
    logger.info("%d mails matched the search", len(uids))
    logger.debug("Matched ids: %s", uids)
    return uids


def _fetch(ctx: SessionContext, message_id: MessageId, operation: str) -> bytes:
    connection, _folder = _current_open(ctx, operation, readonly=True)
    with _network(ctx, connection, operation):
        return connection.fetch_message(message_id)


def _first_address(message: EmailMessage, header: str) -> str:
    value = message.get(header)
    if value is None:
        return ""
    addresses = getattr(value, "addresses", ())
    return str(addresses[0]) if addresses else str(value)


def _part_text(message: EmailMessage, subtype: str) -> str:
    part = message.get_body(preferencelist=(subtype,))
    if part is None:
        return ""
    try:
        return str(part.get_content())
    except (LookupError, ValueError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def parse_mail(raw: bytes, *, prefer_html: bool = False) -> MailContent:
    """Extract sender, recipient, subject, and the preferred body from a message."""
    message = cast(EmailMessage, email.message_from_bytes(raw, policy=default_policy))
    body = _part_text(message, "plain")
    is_html = False
    if prefer_html or not body:
        body = _part_text(message, "html")
        is_html = True
    return MailContent(
        sender=_first_address(message, "From"),
        recipient=_first_address(message, "To"),
        subject=str(message.get("Subject", "")),
        body=body,
        is_html=is_html,
    )


def read_mail(
    ctx: SessionContext,
    message_id: MessageId,
    *,
    prefer_html: bool = False,
    logger: logging.Logger,
) -> MailContent:
    mail = parse_mail(_fetch(ctx, message_id, "read mail"), prefer_html=prefer_html)
    logger.info("From: %s", mail.sender)
    logger.info("To: %s", mail.recipient)
    logger.info("Subject: %s", mail.subject)
    logger.debug("Body:\n%s", mail.body)
    return mail


def read_mail_raw(
    ctx: SessionContext, message_id: MessageId, *, logger: logging.Logger
) -> bytes:
    """Return the complete message as the server stores it (EML)."""
    raw = _fetch(ctx, message_id, "read raw mail")
    logger.info("Received %d bytes", len(raw))
    return raw


def delete_mail(ctx: SessionContext, message_id: MessageId, *, logger: logging.Logger) -> None:
    """Flag a message as deleted and expunge the folder."""
    connection, _folder = _current_open(ctx, "delete mail", readonly=False, writable=True)
    with _network(ctx, connection, "delete mail"):
        connection.mark_deleted(message_id)
        connection.expunge()
    logger.info("Deleted mail with id %s", message_id)


def get_mail_count(ctx: SessionContext, *, logger: logging.Logger) -> int:
    """Return a fresh message count of the current folder."""
    connection = ctx.require_authenticated("get mail count")
    folder = ctx.require_current_mailbox("get mail count")
    _select(ctx, connection, folder, readonly=folder.readonly if folder.is_open else True)
    logger.info("Mail count: %d", folder.count)
    return folder.count


def get_last_message_id(ctx: SessionContext, *, logger: logging.Logger) -> int:
    """Return the zero-based sequence index of the newest message (-1 when empty)."""
    last = get_mail_count(ctx, logger=logger) - 1
    logger.info("Last message Id: %d", last)
    return last
