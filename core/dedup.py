"""Sliding-window duplicate suppression for engine output."""
from collections import deque

from utils.config import DEDUP_PREFIX_CHARS, DEDUP_WINDOW

TERMINAL_KIND = "complete"


class OutputDeduplicator:
    """Drops fragments whose fingerprint was seen among the last `window` entries.

    A fingerprint is the entry kind plus the first `prefix_chars` characters of
    its content, so two distinct messages sharing that prefix are merged.
    Terminal entries always pass.
    """

    def __init__(self, prefix_chars=DEDUP_PREFIX_CHARS, window=DEDUP_WINDOW):
        if prefix_chars <= 0:
            raise ValueError("prefix_chars must be positive")
        if window <= 0:
            raise ValueError("window must be positive")
        self.prefix_chars = prefix_chars
        self.window = window
        self._order = deque()
        self._seen = set()
        self.suppressed = 0

    def fingerprint(self, kind, content):
        return kind, (content or "")[: self.prefix_chars]

    def admit(self, kind, content):
        """Return True if the entry should be forwarded, recording its fingerprint."""
        if kind == TERMINAL_KIND:
            return True
        key = self.fingerprint(kind, content)
        if key in self._seen:
            self.suppressed += 1
            return False
        self._order.append(key)
        self._seen.add(key)
        if len(self._order) > self.window:
            self._seen.discard(self._order.popleft())
        return True

    def __len__(self):
        return len(self._order)
