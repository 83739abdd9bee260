"""Timestamp tokens carried in commit message trailers.

A timestamped commit ends with a trailer block such as::

    Timestamp-Version: 1
    Timestamp: https://freetsa.org/tsr
     -----BEGIN TIMESTAMP TOKEN-----
     MIIEZDADAgEAMIIEWwYJKoZIhvcNAQcCoIIETDCCBEgCAQMxDzANBglghkgBZQMEAgEF
     ...
     -----END TIMESTAMP TOKEN-----

Each ``Timestamp`` trailer holds the issuing TSA's URL followed by the
PEM-framed DER token on indented continuation lines. A commit may carry
several of them, one per TSA.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import textwrap
from typing import Optional

from .models import CommitTimestamps, TimestampToken

logger = logging.getLogger("commitstamp.trailers")

TRAILER_LABEL = "Timestamp"
VERSION_LABEL = "Timestamp-Version"
PEM_LABEL = "TIMESTAMP TOKEN"
PROTOCOL_VERSION = 1

_TRAILER_RE = re.compile(r"^([A-Za-z0-9][A-Za-z0-9-]*):\s*(.*)$")
_PEM_RE = re.compile(
    rf"-----BEGIN {PEM_LABEL}-----(.*?)-----END {PEM_LABEL}-----", re.DOTALL
)
_URL_RE = re.compile(r"^https?://\S+$")


def _trailer_block(message: str) -> list[tuple[str, str]]:
    """Return (label, value) pairs from the message's last paragraph.

    Indented lines continue the previous trailer's value.
    """
    paragraphs = [p for p in re.split(r"\n[ \t]*\n", message.strip()) if p.strip()]
    if len(paragraphs) < 2:
        return []
    trailers: list[tuple[str, str]] = []
    for line in paragraphs[-1].splitlines():
        if line[:1] in (" ", "\t") and trailers:
            label, value = trailers[-1]
            trailers[-1] = (label, value + "\n" + line.strip())
            continue
        match = _TRAILER_RE.match(line)
        if match is None:
            # Not a trailer block after all
            return []
        trailers.append((match.group(1), match.group(2).strip()))
    return trailers


def _parse_token_trailer(value: str) -> Optional[TimestampToken]:
    first, _, rest = value.partition("\n")
    url = first.strip()
    if not _URL_RE.match(url):
        logger.warning("Skipping %s trailer without a TSA URL: %r", TRAILER_LABEL, first[:60])
        return None
    match = _PEM_RE.search(rest)
    if match is None:
        logger.warning("Skipping %s trailer for %s without PEM framing", TRAILER_LABEL, url)
        return None
    body = "".join(match.group(1).split())
    try:
        der = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.warning("Skipping %s trailer for %s with bad base64: %s", TRAILER_LABEL, url, exc)
        return None
    if not der or der[0] != 0x30:
        logger.warning("Skipping %s trailer for %s: payload is not DER", TRAILER_LABEL, url)
        return None
    return TimestampToken(token_der=der, tsa_url=url)


def extract_timestamps(message: str) -> CommitTimestamps:
    """Collect every timestamp token from a commit message.

    Trailers with the timestamp label that are not token-shaped are skipped
    with a warning. The version is -1 when no token is found, else the
    declared ``Timestamp-Version`` or 0.
    """
    tokens = []
    declared = None
    for label, value in _trailer_block(message):
        if label.lower() == VERSION_LABEL.lower():
            try:
                declared = int(value)
            except ValueError:
                logger.warning("Ignoring non-numeric %s trailer: %r", VERSION_LABEL, value)
        elif label.lower() == TRAILER_LABEL.lower():
            token = _parse_token_trailer(value)
            if token is not None:
                tokens.append(token)

    if not tokens:
        return CommitTimestamps(version=-1)
    return CommitTimestamps(version=declared if declared is not None else 0, tokens=tokens)


def format_trailer(tsa_url: str, token_der: bytes) -> str:
    """Render one ``Timestamp`` trailer for appending to a commit message."""
    body = textwrap.wrap(base64.b64encode(token_der).decode("ascii"), 64)
    lines = [f"{TRAILER_LABEL}: {tsa_url}", f" -----BEGIN {PEM_LABEL}-----"]
    lines.extend(f" {line}" for line in body)
    lines.append(f" -----END {PEM_LABEL}-----")
    return "\n".join(lines)


def format_version_trailer() -> str:
    return f"{VERSION_LABEL}: {PROTOCOL_VERSION}"
