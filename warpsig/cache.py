"""LRU cache of validator signatures keyed by warp message ID."""

from __future__ import annotations

import logging
import sys
import threading
from collections import OrderedDict


class SignatureCache:
    """Maps message IDs to {public key bytes: signature bytes}, least recently used evicted."""

    def __init__(self, size: int, logger: logging.Logger | None = None):
        if size > sys.maxsize:
            raise ValueError("cache size too big")
        if size <= 0:
            raise ValueError("must provide a positive size")
        self._size = size
        self._logger = logger or logging.getLogger(__name__)
        self._entries: OrderedDict[bytes, dict[bytes, bytes]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, msg_id: bytes) -> dict[bytes, bytes] | None:
        with self._lock:
            sigs = self._entries.get(msg_id)
            if sigs is None:
                self._logger.debug("cache miss msgID=%s", msg_id.hex())
                return None
            self._entries.move_to_end(msg_id)
        self._logger.debug("cache hit msgID=%s signatureCount=%d", msg_id.hex(), len(sigs))
        return sigs

    def add(self, msg_id: bytes, public_key: bytes, signature: bytes) -> None:
        sigs = self.get(msg_id)
        if sigs is None:
            sigs = {}
        sigs[public_key] = signature
        with self._lock:
            self._entries[msg_id] = sigs
            self._entries.move_to_end(msg_id)
            while len(self._entries) > self._size:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)