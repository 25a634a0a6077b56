"""Collects validator signatures over warp messages and aggregates them once quorum is met."""

from __future__ import annotations

import hashlib
import logging
import queue
import random
import struct
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Protocol, Sequence

from warpsig.cache import SignatureCache
from warpsig.metrics import SignatureAggregatorMetrics
from warpsig.utils import (
    PermanentError,
    check_stake_weight_exceeds_threshold,
    id_to_string,
    is_empty_or_zeroes,
    with_retries_timeout,
)

SIGNATURE_REQUEST_TIMEOUT = 5.0
CONNECT_TO_VALIDATORS_TIMEOUT = 5.0
SIGNATURE_REQUEST_HANDLER_ID = 2
BIT_SET_SIGNATURE_TYPE_ID = 0
EMPTY_ID = bytes(32)


class NotEnoughSignaturesError(Exception):
    """A threshold of signatures could not be collected."""


class NotEnoughConnectedStakeError(Exception):
    """Connected validators do not hold a threshold of stake."""


class NoSignaturesError(Exception):
    """Aggregation was attempted with no signatures at all."""


class _UnsignedMessage(Protocol):
    source_chain_id: bytes

    def to_bytes(self) -> bytes: ...


@dataclass
class Validator:
    """A canonical validator: one BLS public key, its weight and the nodes behind it."""

    public_key: bytes
    weight: int
    node_ids: list = field(default_factory=list)


@dataclass
class ConnectedValidators:
    """The canonical validator set of a subnet together with the connected stake."""

    connected_weight: int
    total_validator_weight: int
    validator_set: list = field(default_factory=list)
    node_validator_index_map: dict = field(default_factory=dict)

    def get_validator(self, node_id) -> tuple[Validator, int]:
        """The validator a node belongs to and its canonical index."""
        index = self.node_validator_index_map[node_id]
        return self.validator_set[index], index


@dataclass(frozen=True)
class AppResponse:
    """A node's reply to a signature request."""

    node_id: object
    request_id: int
    app_bytes: bytes


@dataclass(frozen=True)
class AppError:
    """A failed or timed-out signature request."""

    node_id: object
    request_id: int
    error_code: int = 0
    error_message: str = ""


@dataclass(frozen=True)
class BitSetSignature:
    """An aggregate signature plus the bit set of canonical signer indices."""

    signers: bytes
    signature: bytes


@dataclass(frozen=True)
class SignedMessage:
    """An unsigned warp message with its aggregate signature."""

    unsigned_message_bytes: bytes
    signature: BitSetSignature

    def to_bytes(self) -> bytes:
        sig = self.signature
        return (
            self.unsigned_message_bytes
            + struct.pack(">II", BIT_SET_SIGNATURE_TYPE_ID, len(sig.signers))
            + sig.signers
            + sig.signature
        )


class SignatureScheme(ABC):
    """Verification and aggregation of validator signatures."""

    signature_length = 96

    @abstractmethod
    def verify(self, public_key: bytes, signature: bytes, message: bytes) -> bool:
        """True if signature is valid for message under public_key."""

    @abstractmethod
    def aggregate(self, signatures: Sequence[bytes]) -> bytes:
        """Combine signatures into a single aggregate signature."""


class AppRequestNetwork(ABC):
    """The peer network used to reach validators."""

    @abstractmethod
    def track_subnet(self, subnet_id: bytes) -> None: ...

    @abstractmethod
    def get_connected_canonical_validators(self, subnet_id: bytes) -> ConnectedValidators: ...

    @abstractmethod
    def get_subnet_id(self, blockchain_id: bytes) -> bytes: ...

    @abstractmethod
    def register_app_request(self, node_id, chain_id: bytes, request_id: int) -> None: ...

    @abstractmethod
    def register_request_id(self, request_id: int, expected_responses: int) -> queue.Queue:
        """A queue receiving responses; None in the queue marks its end."""

    @abstractmethod
    def send(self, chain_id: bytes, request_id: int, request_bytes: bytes,
             node_ids: set, subnet_id: bytes) -> set:
        """Send the request; returns the node IDs it was sent to."""

    @abstractmethod
    def shutdown(self) -> None: ...


def _uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    result = shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if byte < 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint overflow")


def _bytes_field(number: int, value: bytes) -> bytes:
    if not value:
        return b""
    return _uvarint(number << 3 | 2) + _uvarint(len(value)) + value


def _marshal_request(message: bytes, justification: bytes) -> bytes:
    body = _bytes_field(1, message) + _bytes_field(2, justification)
    return _uvarint(SIGNATURE_REQUEST_HANDLER_ID) + body


def _unmarshal_response(data: bytes) -> bytes:
    signature = b""
    pos = 0
    while pos < len(data):
        key, pos = _read_uvarint(data, pos)
        number, wire = key >> 3, key & 7
        if wire == 0:
            _, pos = _read_uvarint(data, pos)
        elif wire == 1:
            pos += 8
        elif wire == 5:
            pos += 4
        elif wire == 2:
            length, pos = _read_uvarint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated field")
            if number == 1:
                signature = data[pos:pos + length]
            pos += length
        else:
            raise ValueError(f"unsupported wire type {wire}")
        if pos > len(data):
            raise ValueError("truncated field")
    return bytes(signature)


def _bitset_bytes(indices: Iterable[int]) -> bytes:
    bits = 0
    for i in indices:
        bits |= 1 << i
    return bits.to_bytes((bits.bit_length() + 7) // 8, "big")


@dataclass
class _Accumulation:
    signatures: dict = field(default_factory=dict)
    weight: int = 0


class SignatureAggregator:
    """Requests signatures from a subnet's validators and aggregates them."""

    def __init__(self, network: AppRequestNetwork, scheme: SignatureScheme,
                 signature_cache_size: int,
                 metrics: SignatureAggregatorMetrics | None = None,
                 logger: logging.Logger | None = None):
        self._logger = logger or logging.getLogger(__name__)
        try:
            self._cache = SignatureCache(signature_cache_size, self._logger)
        except ValueError as err:
            raise ValueError(f"failed to create signature cache: {err}") from err
        self._network = network
        self._scheme = scheme
        self._metrics = metrics or SignatureAggregatorMetrics()
        self._subnet_ids: dict[bytes, bytes] = {}
        self._subnets_lock = threading.Lock()
        self._request_id = random.getrandbits(32)
        self._request_lock = threading.Lock()
        self.signature_request_timeout = SIGNATURE_REQUEST_TIMEOUT
        self.connect_to_validators_timeout = CONNECT_TO_VALIDATORS_TIMEOUT

    def shutdown(self) -> None:
        self._network.shutdown()

    def _next_request_id(self) -> int:
        with self._request_lock:
            self._request_id = (self._request_id + 1) & 0xFFFFFFFF
            return self._request_id

    def _get_subnet_id(self, blockchain_id: bytes) -> bytes:
        with self._subnets_lock:
            cached = self._subnet_ids.get(blockchain_id)
        if cached is not None:
            return cached
        self._logger.info("Signing subnet not found, requesting from PChain")
        try:
            subnet_id = self._network.get_subnet_id(blockchain_id)
        except Exception as err:
            raise LookupError(
                f"source blockchain not found for chain ID {id_to_string(blockchain_id)}"
            ) from err
        with self._subnets_lock:
            self._subnet_ids[blockchain_id] = subnet_id
        return subnet_id

    def _connect_to_quorum_validators(self, subnet_id: bytes,
                                      quorum_percentage: int) -> ConnectedValidators:
        self._network.track_subnet(subnet_id)

        def connect() -> ConnectedValidators:
            try:
                connected = self._network.get_connected_canonical_validators(subnet_id)
            except Exception as err:
                self._logger.error("Failed to fetch connected canonical validators: %s", err)
                self._metrics.failures_to_get_validator_set.inc()
                raise RuntimeError(
                    f"Failed to fetch connected canonical validators: {err}") from err
            total = connected.total_validator_weight
            percentage = (connected.connected_weight / total * 100) if total else float("nan")
            self._metrics.connected_stake_weight_percentage.labels(
                id_to_string(subnet_id)).set(percentage)
            if not check_stake_weight_exceeds_threshold(
                    connected.connected_weight, total, quorum_percentage):
                self._logger.warning(
                    "Failed to connect to a threshold of stake connectedWeight=%d "
                    "totalValidatorWeight=%d quorumPercentage=%d",
                    connected.connected_weight, total, quorum_percentage)
                self._metrics.failures_to_connect_to_sufficient_stake.inc()
                raise NotEnoughConnectedStakeError("failed to connect to a threshold of stake")
            return connected

        return with_retries_timeout(connect, self.connect_to_validators_timeout, self._logger)

    def create_signed_message(self, unsigned_message: _UnsignedMessage, justification,
                              signing_subnet, quorum_percentage) -> SignedMessage:
        """Collect a quorum of signatures over unsigned_message and aggregate them."""
        msg_bytes = unsigned_message.to_bytes()
        msg_id = hashlib.sha256(msg_bytes).digest()
        chain_id = bytes(unsigned_message.source_chain_id)
        justification = bytes(justification or b"")
        self._logger.debug("Creating signed message warpMessageID=%s", msg_id.hex())

        try:
            source_subnet = self._get_subnet_id(chain_id)
        except LookupError as err:
            raise LookupError(
                f"source message subnet not found for chainID {id_to_string(chain_id)}"
            ) from err
        if signing_subnet is None or signing_subnet == EMPTY_ID:
            signing_subnet = source_subnet

        connected = self._connect_to_quorum_validators(signing_subnet, quorum_percentage)
        validators = connected.validator_set

        acc = _Accumulation()
        cached = self._cache.get(msg_id)
        if cached is not None:
            for i, validator in enumerate(validators):
                signature = cached.get(bytes(validator.public_key))
                if signature is not None:
                    acc.signatures[i] = signature
                    acc.weight += validator.weight
            self._metrics.signature_cache_hits.inc(len(acc.signatures))

        signed = self._aggregate_if_sufficient_weight(msg_bytes, acc, connected,
                                                      quorum_percentage)
        if signed is not None:
            return signed
        if acc.signatures:
            self._metrics.signature_cache_misses.inc(len(validators) - len(acc.signatures))

        request_bytes = _marshal_request(msg_bytes, justification)
        request_id = self._next_request_id()

        def operation() -> SignedMessage:
            responses_expected = len(validators) - len(acc.signatures)
            node_ids = set()
            for i, validator in enumerate(validators):
                if i in acc.signatures:
                    continue
                node_id = validator.node_ids[0]
                node_ids.add(node_id)
                self._network.register_app_request(node_id, chain_id, request_id)
            responses = self._network.register_request_id(request_id, len(node_ids))
            sent_to = set(self._network.send(chain_id, request_id, request_bytes,
                                             node_ids, source_subnet) or ())
            self._metrics.app_request_count.inc()
            for node_id in node_ids - sent_to:
                self._logger.warning("Failed to make async request to node %s", node_id)
                responses_expected -= 1
                self._metrics.failures_sending_to_node.inc()

            response_count = 0
            if responses_expected > 0:
                while True:
                    response = responses.get()
                    if response is None:
                        break
                    try:
                        signed_msg, relevant = self._handle_response(
                            response, sent_to, request_id, connected, msg_id, msg_bytes,
                            acc, quorum_percentage)
                    except Exception as err:
                        raise PermanentError(
                            RuntimeError(f"failed to handle response: {err}")) from err
                    if relevant:
                        response_count += 1
                    if signed_msg is not None:
                        self._logger.info("Created signed message warpMessageID=%s "
                                          "signatureWeight=%d", msg_id.hex(), acc.weight)
                        return signed_msg
                    if response_count == responses_expected:
                        break
            raise NotEnoughSignaturesError("failed to collect a threshold of signatures")

        try:
            return with_retries_timeout(operation, self.signature_request_timeout, self._logger)
        except Exception as err:
            self._logger.warning(
                "Failed to collect a threshold of signatures warpMessageID=%s "
                "accumulatedWeight=%d", msg_id.hex(), acc.weight)
            raise NotEnoughSignaturesError(
                "failed to collect a threshold of signatures") from err

    def _handle_response(self, response, sent_to: set, request_id: int,
                         connected: ConnectedValidators, msg_id: bytes, msg_bytes: bytes,
                         acc: _Accumulation, quorum_percentage: int
                         ) -> tuple[SignedMessage | None, bool]:
        if response.node_id not in sent_to or response.request_id != request_id:
            self._logger.debug("Skipping irrelevant app response")
            return None, False
        if isinstance(response, AppError):
            self._logger.debug("Request timed out")
            self._metrics.validator_timeouts.inc()
            return None, True

        validator, index = connected.get_validator(response.node_id)
        signature = self._valid_signature(msg_bytes, response, validator.public_key)
        if signature is None:
            self._logger.debug("Got invalid signature response nodeID=%s", response.node_id)
            self._metrics.invalid_signature_responses.inc()
            return None, True

        acc.signatures[index] = signature
        self._cache.add(msg_id, bytes(validator.public_key), signature)
        acc.weight += validator.weight
        signed = self._aggregate_if_sufficient_weight(msg_bytes, acc, connected,
                                                      quorum_percentage)
        return signed, True

    def _valid_signature(self, msg_bytes: bytes, response, public_key: bytes) -> bytes | None:
        if not isinstance(response, AppResponse):
            return None
        try:
            signature = _unmarshal_response(response.app_bytes)
        except ValueError as err:
            self._logger.error("Error unmarshaling signature response: %s", err)
            signature = b""
        if is_empty_or_zeroes(signature):
            self._logger.debug("Response contained an empty signature")
            return None
        if len(signature) != self._scheme.signature_length:
            self._logger.debug("Response signature has incorrect length %d", len(signature))
            return None
        try:
            valid = self._scheme.verify(public_key, signature, msg_bytes)
        except Exception:
            valid = False
        if not valid:
            self._logger.debug("Failed verification for signature pubKey=%s",
                               bytes(public_key).hex())
            return None
        return signature

    def _aggregate_if_sufficient_weight(self, msg_bytes: bytes, acc: _Accumulation,
                                        connected: ConnectedValidators,
                                        quorum_percentage: int) -> SignedMessage | None:
        if not check_stake_weight_exceeds_threshold(
                acc.weight, connected.total_validator_weight, quorum_percentage):
            return None
        if not acc.signatures:
            raise NoSignaturesError("Failed to aggregate signatures: no signatures")
        indices = sorted(acc.signatures)
        try:
            aggregate = bytes(self._scheme.aggregate([acc.signatures[i] for i in indices]))
        except Exception as err:
            raise RuntimeError(f"Failed to aggregate signatures: {err}") from err
        if len(aggregate) != self._scheme.signature_length:
            raise ValueError("Failed to create new signed message: bad signature length")
        return SignedMessage(msg_bytes, BitSetSignature(_bitset_bytes(indices), aggregate))