"""Single-candidate connection attempts."""

from __future__ import annotations

import logging

from .errors import OperationCancelled, ProtocolError
from .models import Connector, DiscoveryCache, HostCandidate
from .session import SessionContext


class ConnectionProber:
    """Try one candidate once; on success store the connection and remember the server."""

    def __init__(
        self,
        *,
        connector: Connector,
        cache: DiscoveryCache | None,
        timeout: float,
        logger: logging.Logger,
    ) -> None:
        self._connector = connector
        self._cache = cache
        self._timeout = timeout
        self._logger = logger

    def probe(self, ctx: SessionContext, domain: str, candidate: HostCandidate) -> bool:
        """Return True and populate ``ctx`` if the candidate accepts a connection.

        Connection failures are logged and reported as False; cancellation
        propagates.
        """
        self._logger.info("Trying %s on port %d...", candidate.host, candidate.port)
        try:
            connection = self._connector.connect(
                candidate,
                timeout=self._timeout,
                transcript=ctx.transcript,
                proxy=ctx.proxy,
            )
        except OperationCancelled:
            raise
        except (ProtocolError, OSError, ValueError) as exc:
            self._logger.info("Failed!")
            self._logger.debug("Connection to %s failed: %s", candidate, exc)
            return False

        ctx.connection = connection
        ctx.endpoint = candidate
        self._logger.info("Connected! SSL/TLS: %s", connection.is_secure)
        if self._cache is not None:
            try:
                self._cache.record(domain, candidate)
            except OSError as exc:
                self._logger.warning("Could not cache %s for %s: %s", candidate, domain, exc)
        return True
