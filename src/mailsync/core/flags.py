"""Protocol flag token classification."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable

from mailsync.core.models import Flag

logger = logging.getLogger(__name__)

RECOGNIZED_FLAGS: dict[str, Flag] = {flag.value: flag for flag in Flag}

# Keywords set by spam filters and clients that carry no state we track
IGNORED_TOKENS = frozenset({"Junk", "$Phishing", "NonJunk", "$MDNSent", "$Forwarded"})


class FlagVocabulary:
    """Maps FLAGS tokens onto the closed Flag set.

    Unknown tokens are dropped. Tokens outside both the recognized set and the
    ignore list are tallied in ``unknown_tokens`` and logged once each, since
    servers add keywords over time.
    """

    def __init__(self) -> None:
        self.unknown_tokens: Counter[str] = Counter()

    def classify(self, token: str | bytes) -> Flag | None:
        if isinstance(token, bytes):
            token = token.decode("utf-8", errors="replace")

        flag = RECOGNIZED_FLAGS.get(token)
        if flag is not None:
            return flag
        if token in IGNORED_TOKENS:
            return None

        if token not in self.unknown_tokens:
            logger.warning("Unknown flag: %s", token)
        self.unknown_tokens[token] += 1
        return None

    def classify_all(self, tokens: Iterable[str | bytes]) -> frozenset[Flag]:
        """Classify every token, keeping only recognized flags."""
        flags = (self.classify(token) for token in tokens)
        return frozenset(flag for flag in flags if flag is not None)
