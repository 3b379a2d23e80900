"""Lightweight envelope extraction from raw RFC 822 headers.

Uses ``email.parser.BytesHeaderParser`` which parses *only* the headers
without walking the MIME body, so it works on a header-only fetch as well
as on the full source.
"""

from __future__ import annotations

import email.parser
import email.policy
import email.utils
import re

from .models import Envelope

UNKNOWN_SENDER = "unknown"

_AUTH_RESULT = re.compile(r"\b(dkim|spf|dmarc)\s*=\s*([a-z]+)", re.IGNORECASE)


def normalize_address(value: str | None) -> str:
    """Strip the display name and lower-case the address.

    ``"Alice <Alice@Example.COM>"`` becomes ``"alice@example.com"``.
    Returns an empty string when no address can be found.
    """
    if not value:
        return ""
    _, addr = email.utils.parseaddr(value)
    return addr.strip().lower()


def extract_envelope(raw_bytes: bytes) -> Envelope:
    """Extract sender, subject and Message-ID from raw header bytes."""
    parser = email.parser.BytesHeaderParser(policy=email.policy.default)
    headers = parser.parsebytes(raw_bytes)

    sender = normalize_address(str(headers.get("From", ""))) or UNKNOWN_SENDER
    message_id = headers.get("Message-ID")
    return Envelope(
        sender=sender,
        subject=str(headers.get("Subject", "") or "").strip(),
        message_id=str(message_id).strip() if message_id else None,
    )


def authentication_results(raw_bytes: bytes) -> dict[str, str]:
    """Return the dkim/spf/dmarc verdicts from ``Authentication-Results``.

    Keys are lower-case mechanism names, values the verdict (``pass``,
    ``fail``, ``none`` ...). When several headers report the same mechanism
    the first one wins, as it was added by the receiving server.
    """
    parser = email.parser.BytesHeaderParser(policy=email.policy.compat32)
    headers = parser.parsebytes(raw_bytes)

    verdicts: dict[str, str] = {}
    for header in headers.get_all("Authentication-Results") or []:
        for mechanism, verdict in _AUTH_RESULT.findall(str(header)):
            verdicts.setdefault(mechanism.lower(), verdict.lower())
    return verdicts
