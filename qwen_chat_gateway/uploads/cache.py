from __future__ import annotations

import hashlib
from collections import OrderedDict
from threading import Lock


def fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ContentCache:
    """Maps asset fingerprints to the public URL of an earlier upload.

    Unbounded unless ``max_entries`` is given, in which case the oldest entry is
    evicted first. Entries are only valid for the lifetime of the process.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        self._max_entries = max(1, int(max_entries)) if max_entries is not None else None
        self._lock = Lock()
        self._data: OrderedDict[str, str] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def lookup(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def insert(self, key: str, url: str) -> None:
        with self._lock:
            is_new = key not in self._data
            self._data[key] = url
            self._data.move_to_end(key)
            if (
                is_new
                and self._max_entries is not None
                and len(self._data) > self._max_entries
            ):
                self._data.popitem(last=False)

    def to_dict(self) -> dict[str, str]:
        with self._lock:
            return dict(self._data)
