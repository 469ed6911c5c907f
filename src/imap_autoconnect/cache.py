"""Discovery cache: domains mapped to IMAP servers that accepted a connection before."""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock

from .models import HostCandidate
from .validation import is_valid_hostname, is_valid_port, normalize_domain


class InMemoryDiscoveryCache:
    """Append-only, thread-safe cache. Entries are hints and are never evicted."""

    def __init__(self, entries: dict[str, list[HostCandidate]] | None = None) -> None:
        self._entries: dict[str, list[HostCandidate]] = {}
        self._lock = Lock()
        for domain, candidates in (entries or {}).items():
            for candidate in candidates:
                self._append(normalize_domain(domain), candidate)

    def lookup(self, domain: str) -> list[HostCandidate]:
        key = normalize_domain(domain)
        with self._lock:
            # newest first
            return list(reversed(self._entries.get(key, [])))

    def record(self, domain: str, candidate: HostCandidate) -> None:
        key = normalize_domain(domain)
        with self._lock:
            self._append(key, candidate)

    def _append(self, key: str, candidate: HostCandidate) -> bool:
        known = self._entries.setdefault(key, [])
        if candidate in known:
            return False
        known.append(candidate)
        return True


def parse_cache_line(line: str) -> tuple[str, HostCandidate] | None:
    """Parse one ``domain:host:port`` line; return None when it is unusable."""
    parts = line.strip().split(":")
    if len(parts) != 3:
        return None
    domain, host, raw_port = (part.strip() for part in parts)
    if not domain or not host or not raw_port.isdigit():
        return None
    port = int(raw_port)
    if not is_valid_port(port) or not is_valid_hostname(normalize_domain(host)):
        return None
    return normalize_domain(domain), HostCandidate(normalize_domain(host), port)


class FileDiscoveryCache(InMemoryDiscoveryCache):
    """Cache persisted as ``domain:host:port`` lines, one entry per line."""

    def __init__(self, path: str | Path, *, logger: logging.Logger) -> None:
        super().__init__()
        self._path = Path(path)
        self._logger = logger
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        skipped = 0
        content = self._path.read_text(encoding="utf-8")
        for line in content.splitlines():
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            parsed = parse_cache_line(line)
            if parsed is None:
                skipped += 1
                continue
            self._append(*parsed)
        if skipped:
            self._logger.warning("Skipped %d malformed line(s) in %s", skipped, self._path)

    def record(self, domain: str, candidate: HostCandidate) -> None:
        key = normalize_domain(domain)
        with self._lock:
            if candidate in self._entries.get(key, []):
                return
            # memory only follows a successful write
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as file_obj:
                file_obj.write(f"{key}:{candidate.host}:{candidate.port}\n")
            self._append(key, candidate)
        self._logger.debug("Cached %s for %s", candidate, key)
