"""Cooperative cancellation shared by every network-bound operation of an actor."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from .errors import OperationCancelled, OperationTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Thread-safe cancellation signal with abort callbacks.

    Blocking calls cannot be interrupted from the outside, so callers register
    an abort callback (closing a socket or an HTTP session) for the duration of
    the call; cancelling the token runs it and the call fails promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            _run_abort(callback)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            _run_abort(callback)
            return lambda: None

        def unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unregister

    def raise_if_cancelled(self, operation: str) -> None:
        if self._event.is_set():
            raise OperationCancelled(operation)

    @contextmanager
    def guard(
        self, operation: str, abort: Callable[[], None] | None = None
    ) -> Iterator[None]:
        """Run a blocking call that ``abort`` can interrupt.

        Any failure raised while the token is cancelled surfaces as
        OperationCancelled, not as the low-level socket error it caused.
        """
        self.raise_if_cancelled(operation)
        unregister = self.register(abort) if abort is not None else None
        try:
            yield
        except OperationCancelled:
            raise
        except Exception as exc:
            if self.cancelled:
                raise OperationCancelled(operation) from exc
            raise
        finally:
            if unregister is not None:
                unregister()

    def run(
        self, operation: str, func: Callable[[], T], abort: Callable[[], None] | None = None
    ) -> T:
        """Run ``func`` on a worker thread and return its result.

        For calls with no socket to shut down. Cancelling returns control at
        once with OperationCancelled; the abandoned worker ends on its own
        timeout and its outcome is discarded.
        """
        finished = threading.Event()
        outcome: dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["value"] = func()
            except Exception as exc:
                outcome["error"] = exc
            finally:
                finished.set()

        with self.guard(operation, abort):
            unregister = self.register(finished.set)
            try:
                threading.Thread(target=target, name=operation, daemon=True).start()
                finished.wait()
            finally:
                unregister()
            if "error" in outcome:
                raise outcome["error"]
            if "value" not in outcome:
                raise OperationCancelled(operation)
            return outcome["value"]

    @contextmanager
    def linked(self, timeout: float | None, operation: str) -> Iterator[CancellationToken]:
        """Yield a child token fired by this token or by ``timeout``, whichever is first."""
        child = CancellationToken()
        timed_out = threading.Event()

        def expire() -> None:
            timed_out.set()
            child.cancel()

        timer: threading.Timer | None = None
        if timeout is not None:
            timer = threading.Timer(timeout, expire)
            timer.daemon = True
            timer.start()
        unregister = self.register(child.cancel)
        try:
            yield child
        except Exception as exc:
            if timed_out.is_set() and not self.cancelled:
                raise OperationTimeout(operation, timeout or 0.0) from exc
            if isinstance(exc, OperationCancelled):
                raise
            if self.cancelled:
                raise OperationCancelled(operation) from exc
            raise
        finally:
            if timer is not None:
                timer.cancel()
            unregister()


def _run_abort(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception as exc:  # pragma: no cover - resource already closed
        logger.debug("Abort callback failed: %s", exc)
