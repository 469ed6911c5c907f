"""Defensive parsing of Mozilla-style autoconfiguration documents.

The documents look like::

    <clientConfig version="1.1">
      <emailProvider id="example.com">
        <incomingServer type="imap">
          <hostname>imap.example.com</hostname>
          <port>993</port>
          ...

Only ``incomingServer`` entries of type ``imap`` are of interest. Anything
malformed yields fewer candidates, never an exception.
"""

from __future__ import annotations

import warnings

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

from .models import HostCandidate
from .validation import is_valid_hostname, is_valid_port, normalize_domain


def parse_autoconfig(document: str, domain: str = "") -> list[HostCandidate]:
    """Return the IMAP servers listed in an autoconfig document, in document order.

    ``%EMAILDOMAIN%`` placeholders in hostnames are replaced with ``domain``;
    entries still containing a placeholder afterwards are skipped.
    """
    if not document or not document.strip():
        return []
    # html.parser lowercases tag and attribute names and tolerates broken markup
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", XMLParsedAsHTMLWarning)
        soup = BeautifulSoup(document, "html.parser")
    candidates: list[HostCandidate] = []
    for server in soup.find_all("incomingserver"):
        if str(server.get("type", "")).strip().lower() != "imap":
            continue
        hostname_tag = server.find("hostname")
        port_tag = server.find("port")
        if hostname_tag is None or port_tag is None:
            continue
        hostname = hostname_tag.get_text(strip=True)
        if domain:
            hostname = hostname.replace("%EMAILDOMAIN%", domain)
        hostname = normalize_domain(hostname)
        if not is_valid_hostname(hostname):
            continue
        try:
            port = int(port_tag.get_text(strip=True))
        except ValueError:
            continue
        if not is_valid_port(port):
            continue
        candidate = HostCandidate(hostname, port)
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates
