"""Shared helpers: stake thresholds, retries, ID encoding, URLs, ticker and heap."""

from __future__ import annotations

import hashlib
import heapq
import logging
import queue
import random
import threading
import time
from typing import Callable, Iterable, Mapping, TypeVar
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

T = TypeVar("T")

DEFAULT_RPC_TIMEOUT = 5.0
WARP_QUORUM_DENOMINATOR = 100
HASH_LENGTH = 32
ID_LENGTH = 32

_LOG = logging.getLogger(__name__)
_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {c: i for i, c in enumerate(_B58_ALPHABET)}


class InvalidEndpointError(ValueError):
    """Raised when an RPC endpoint cannot be parsed as a request URI."""


class PermanentError(Exception):
    """Wraps an error that must stop retrying at once."""

    def __init__(self, error: BaseException):
        super().__init__(str(error))
        self.error = error


def check_stake_weight_exceeds_threshold(
    accumulated_signature_weight: int | None,
    total_weight: int,
    quorum_numerator: int,
) -> bool:
    """True if the signature weight is at least quorum/100 of the total weight."""
    if accumulated_signature_weight is None:
        return False
    scaled_total = total_weight * quorum_numerator
    scaled_sig = accumulated_signature_weight * WARP_QUORUM_DENOMINATOR
    return scaled_total <= scaled_sig


def call_with_retry(func: Callable[[], T], timeout: float | None = None) -> T:
    """Call func until it succeeds, waiting 200ms between attempts.

    Raises TimeoutError once the timeout (seconds) would be exceeded.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        try:
            return func()
        except Exception as err:
            if deadline is not None and time.monotonic() + 0.2 > deadline:
                raise TimeoutError("retry deadline exceeded") from err
        time.sleep(0.2)


def big_to_hash_safe(value: int | None) -> bytes:
    """Convert an integer to a 32-byte big-endian hash, refusing overflow."""
    if value is None:
        raise ValueError("nil input")
    magnitude = abs(value)
    length = (magnitude.bit_length() + 7) // 8
    if length > HASH_LENGTH:
        raise OverflowError("exceeds uint256 maximum value")
    return magnitude.to_bytes(HASH_LENGTH, "big")


def private_key_to_string(private_key: int) -> str:
    """Hex encode a private key scalar as 32 bytes, keeping leading zeroes."""
    return private_key.to_bytes(32, "big").hex()


def sanitize_hex_string(value: str) -> str:
    """Remove a leading "0x" if present."""
    return value[2:] if value.startswith("0x") else value


def strip_from_string(text: str, substring: str) -> str:
    """Cut text at the first occurrence of substring."""
    index = text.find(substring)
    return text if index == -1 else text[:index]


def _b58encode(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    out = []
    while number:
        number, rem = divmod(number, 58)
        out.append(_B58_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\0"))
    return "1" * pad + "".join(reversed(out))


def _b58decode(text: str) -> bytes:
    number = 0
    for ch in text:
        try:
            number = number * 58 + _B58_INDEX[ch]
        except KeyError:
            raise ValueError(f"invalid base58 character {ch!r}") from None
    pad = len(text) - len(text.lstrip("1"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\0" * pad + body


def cb58_encode(data: bytes) -> str:
    """Base58 encode data with a 4-byte SHA-256 checksum appended."""
    checksum = hashlib.sha256(data).digest()[-4:]
    return _b58encode(bytes(data) + checksum)


def cb58_decode(text: str) -> bytes:
    """Decode a checksummed base58 string."""
    raw = _b58decode(text)
    if len(raw) < 4:
        raise ValueError("cb58 input too short")
    data, checksum = raw[:-4], raw[-4:]
    if hashlib.sha256(data).digest()[-4:] != checksum:
        raise ValueError("cb58 checksum mismatch")
    return data


def hex_or_cb58_to_id(text: str) -> bytes:
    """Parse a '0x'-prefixed hex or cb58 string into a 32-byte ID."""
    if text.startswith("0x"):
        raw = bytes.fromhex(sanitize_hex_string(text))
    else:
        raw = cb58_decode(text)
    if len(raw) != ID_LENGTH:
        raise ValueError(f"expected {ID_LENGTH} bytes but got {len(raw)}")
    return raw


def id_to_string(raw_id: bytes) -> str:
    """The cb58 string form of an ID."""
    return cb58_encode(raw_id)


def is_empty_or_zeroes(data: bytes) -> bool:
    """True if data is empty or every byte is zero."""
    return not any(data)


def with_retries_timeout(
    operation: Callable[[], T],
    timeout: float,
    logger: logging.Logger | None = None,
) -> T:
    """Run operation with exponential backoff until it succeeds or timeout seconds pass.

    A PermanentError stops retrying and its wrapped error is raised.
    """
    log = logger or _LOG
    start = time.monotonic()
    interval = 0.5
    while True:
        try:
            return operation()
        except PermanentError as perm:
            raise perm.error from perm
        except Exception:
            delta = 0.5 * interval
            wait = random.uniform(interval - delta, interval + delta)
            interval = min(interval * 1.5, 60.0)
            elapsed = time.monotonic() - start
            if timeout and elapsed + wait > timeout:
                raise
            log.warning("operation failed, retrying...")
            time.sleep(wait)


def add_query_params(endpoint: str, query_params: Mapping[str, str] | None) -> str:
    """Add query parameters to a URL; keys are sorted in the result."""
    try:
        parts = urlsplit(endpoint)
    except ValueError as err:
        raise InvalidEndpointError(f"invalid rpc endpoint: {err}") from err
    if not parts.scheme and not parts.path.startswith("/"):
        raise InvalidEndpointError(f"invalid rpc endpoint: {endpoint!r}")
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    pairs.extend((query_params or {}).items())
    pairs.sort(key=lambda kv: kv[0])
    return urlunsplit(parts._replace(query=urlencode(pairs)))


def header_options(http_headers: Mapping[str, str] | None) -> list[tuple[str, str]]:
    """Header (name, value) pairs for an RPC client."""
    return list((http_headers or {}).items())


class Ticker:
    """Periodic timer whose ticks are delivered to every subscriber queue."""

    def __init__(self, interval_seconds: float):
        self.interval = interval_seconds
        self._subscriptions: list[queue.Queue] = []
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    def subscribe(self) -> queue.Queue:
        sub: queue.Queue = queue.Queue()
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def run(self) -> None:
        """Tick until stop() is called."""
        while not self._stopped.wait(self.interval):
            with self._lock:
                for sub in self._subscriptions:
                    sub.put(None)

    def stop(self) -> None:
        self._stopped.set()


class UInt64Heap:
    """Min-heap of unsigned integers."""

    def __init__(self, values: Iterable[int] | None = None):
        self._items = list(values or [])
        heapq.heapify(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def push(self, value: int) -> None:
        heapq.heappush(self._items, value)

    def pop(self) -> int:
        return heapq.heappop(self._items)

    def peek(self) -> int:
        return self._items[0]