from __future__ import annotations

from threading import Lock
from typing import Protocol


class AccountTokenProvider(Protocol):
    def get_token(self) -> str: ...


class RoundRobinTokenProvider:
    """Hands out upstream account tokens in rotation; safe to share across requests."""

    def __init__(self, tokens: list[str]) -> None:
        self._tokens = [token.strip() for token in tokens if token and token.strip()]
        self._lock = Lock()
        self._next_index = 0

    def __len__(self) -> int:
        return len(self._tokens)

    def get_token(self) -> str:
        if not self._tokens:
            return ""
        with self._lock:
            token = self._tokens[self._next_index]
            self._next_index = (self._next_index + 1) % len(self._tokens)
        return token
