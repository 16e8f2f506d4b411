"""Permissive decoding of advisory header and envelope text."""

from __future__ import annotations

import re
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.utils import quote

from mailsync.core.models import Address

# RFC 5322 specials that force a display name to be quoted
_SPECIALS = re.compile(r'[][\\()<>@,:;".]')


def decode_words(text: str) -> str:
    """Decode RFC 2047 encoded-words, returning ``text`` unchanged if invalid."""
    if "=?" not in text:
        return text
    try:
        return str(make_header(decode_header(text)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        return text


def decode_text(value: bytes | None) -> str | None:
    """Decode server bytes as UTF-8, replacing invalid sequences."""
    if value is None:
        return None
    return decode_words(value.decode("utf-8", errors="replace"))


def format_address(address: Address) -> str:
    """Render an envelope address as ``Name <mailbox@host>``.

    Names containing specials are quoted so ``parseaddr`` reads them back
    intact. Unlike ``formataddr``, non-ASCII names are kept as decoded text.
    """
    name = decode_text(address.name) or ""
    mailbox = decode_text(address.mailbox) or ""
    host = decode_text(address.host) or ""
    if _SPECIALS.search(name):
        name = f'"{quote(name)}"'
    return f"{name} <{mailbox}@{host}>".strip()
