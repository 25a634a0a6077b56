import io
import json
import queue
from dataclasses import dataclass
from http import HTTPStatus

import pytest

from warpsig.aggregator import (
    AppRequestNetwork,
    AppResponse,
    ConnectedValidators,
    SignatureAggregator,
    SignatureScheme,
    Validator,
)
from warpsig.api import (
    AggregateSignatureRequest,
    ApiResponse,
    handle_aggregate_signatures,
    handle_health_check,
    make_wsgi_app,
)
from warpsig.metrics import SignatureAggregatorMetrics

SUBNET_CB58 = "yH8D7ThNJkxmtkuv2jgBa4P1Rn3Qpr4pPr7QYNfcdoS6k6HWp"
SUBNET_HEX = "0x7fc93d85c6d62c5b2ac0b519c87010ea5294012d1e407030d6acd0021cac10d5"


@dataclass
class FakeMessage:
    raw: bytes
    source_chain_id: bytes = bytes(32)

    def to_bytes(self):
        return self.raw


@dataclass
class SignedBlob:
    raw: bytes

    def to_bytes(self):
        return self.raw


class RecordingAggregator:
    def __init__(self, result=b"\xaa\xbb", error=None):
        self.result = result
        self.error = error
        self.calls = []

    def create_signed_message(self, unsigned_message, justification, signing_subnet,
                              quorum_percentage):
        self.calls.append((unsigned_message, justification, signing_subnet, quorum_percentage))
        if self.error is not None:
            raise self.error
        return SignedBlob(self.result)


def failing_parse(raw):
    raise ValueError("cannot parse")


def post(aggregator, metrics, payload, parse=FakeMessage):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return handle_aggregate_signatures(aggregator, metrics, "POST", body, parse)


@pytest.fixture
def metrics():
    return SignatureAggregatorMetrics()


def test_options_returns_cors_headers(metrics):
    resp = handle_aggregate_signatures(RecordingAggregator(), metrics, "OPTIONS", b"", FakeMessage)
    assert resp.status == HTTPStatus.OK
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert resp.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"
    assert resp.body == b""


def test_get_not_allowed(metrics):
    resp = handle_aggregate_signatures(RecordingAggregator(), metrics, "GET", b"", FakeMessage)
    assert resp.status == HTTPStatus.METHOD_NOT_ALLOWED
    assert resp.json() == {"error": "Method not allowed"}
    assert metrics.aggregate_signatures_request_count.value == 0


def test_invalid_body(metrics):
    resp = post(RecordingAggregator(), metrics, b"{not json")
    assert resp.status == HTTPStatus.BAD_REQUEST
    assert resp.json() == {"error": "Could not decode request body"}
    assert metrics.aggregate_signatures_request_count.value == 1


def test_bad_message_hex(metrics):
    resp = post(RecordingAggregator(), metrics, {"message": "0xzz"})
    assert resp.status == HTTPStatus.BAD_REQUEST
    assert resp.json()["error"] == "Could not decode message"


def test_unparsable_message(metrics):
    resp = post(RecordingAggregator(), metrics, {"message": "0x0102"}, parse=failing_parse)
    assert resp.status == HTTPStatus.BAD_REQUEST
    assert resp.json()["error"] == "Error unpacking warp message"


def test_bad_justification(metrics):
    resp = post(RecordingAggregator(), metrics, {"message": "0102", "justification": "0x1"})
    assert resp.status == HTTPStatus.BAD_REQUEST
    assert resp.json()["error"] == "Could not decode justification"


def test_requires_message_or_justification(metrics):
    agg = RecordingAggregator()
    resp = post(agg, metrics, {"message": "0000", "justification": ""})
    assert resp.status == HTTPStatus.BAD_REQUEST
    assert resp.json()["error"] == "Must provide either message or justification"
    assert agg.calls == []


def test_invalid_quorum(metrics):
    resp = post(RecordingAggregator(), metrics, {"message": "0x0102", "quorum-percentage": 101})
    assert resp.status == HTTPStatus.BAD_REQUEST
    assert resp.json()["error"] == "Invalid quorum number"


def test_default_quorum_and_empty_subnet(metrics):
    agg = RecordingAggregator()
    resp = post(agg, metrics, {"message": "0x0102", "justification": "0xabcd"})
    assert resp.status == HTTPStatus.OK
    message, justification, subnet, quorum = agg.calls[0]
    assert message.raw == b"\x01\x02"
    assert justification == b"\xab\xcd"
    assert subnet == bytes(32)
    assert quorum == 67


@pytest.mark.parametrize("subnet", [SUBNET_CB58, SUBNET_HEX])
def test_signing_subnet_parsed(metrics, subnet):
    agg = RecordingAggregator()
    resp = post(agg, metrics, {"message": "0102", "signing-subnet-id": subnet,
                               "quorum-percentage": 80})
    assert resp.status == HTTPStatus.OK
    assert agg.calls[0][2] == bytes.fromhex(SUBNET_HEX[2:])
    assert agg.calls[0][3] == 80


def test_bad_signing_subnet(metrics):
    resp = post(RecordingAggregator(), metrics,
                {"message": "0102", "signing-subnet-id": SUBNET_HEX[2:]})
    assert resp.status == HTTPStatus.BAD_REQUEST
    assert resp.json()["error"] == "Error parsing signing subnet ID"


def test_aggregation_failure(metrics):
    agg = RecordingAggregator(error=RuntimeError("no quorum"))
    resp = post(agg, metrics, {"message": "0102"})
    assert resp.status == HTTPStatus.INTERNAL_SERVER_ERROR
    assert resp.json() == {"error": "Failed to aggregate signatures"}


def test_success_returns_signed_message_hex(metrics):
    agg = RecordingAggregator(result=b"\xaa\xbb")
    resp = post(agg, metrics, {"message": "0x0102"})
    assert resp.status == HTTPStatus.OK
    assert resp.json() == {"signed-message": "aabb"}
    assert resp.headers["Content-Type"] == "application/json"
    assert metrics.aggregate_signatures_latency_ms.value >= 0


def test_request_from_json_fields():
    req = AggregateSignatureRequest.from_json(
        b'{"message": "0x01", "signing-subnet-id": "abc", "quorum-percentage": 50, "x": 1}')
    assert req == AggregateSignatureRequest("0x01", "", "abc", 50)
    assert AggregateSignatureRequest.from_json("null") == AggregateSignatureRequest()


@pytest.mark.parametrize("body", [
    '{"quorum-percentage": 67.5}',
    '{"quorum-percentage": -1}',
    '{"quorum-percentage": true}',
    '{"message": 5}',
    '[1, 2]',
    '',
])
def test_request_from_json_rejects(body):
    with pytest.raises(ValueError):
        AggregateSignatureRequest.from_json(body)


def test_health_up():
    resp = handle_health_check(lambda: None)
    assert resp.status == HTTPStatus.OK
    assert resp.json() == {"status": "up"}


def test_health_down():
    def check():
        raise RuntimeError("not connected")

    resp = handle_health_check(check)
    assert resp.status == HTTPStatus.SERVICE_UNAVAILABLE
    data = resp.json()
    assert data["status"] == "down"
    assert data["details"]["signature-aggregator-health"]["error"] == "not connected"


def call_app(app, method, path, body=b"", host="localhost"):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "CONTENT_LENGTH": str(len(body)),
        "wsgi.input": io.BytesIO(body),
        "HTTP_HOST": host,
    }
    out = b"".join(app(environ, start_response))
    return captured["status"], captured["headers"], out


def test_wsgi_routes(metrics):
    agg = RecordingAggregator(result=b"\x10")
    app = make_wsgi_app(agg, metrics, FakeMessage, lambda: None)

    status, headers, body = call_app(app, "POST", "/aggregate-signatures",
                                     json.dumps({"message": "0x01"}).encode())
    assert status.startswith("200")
    assert json.loads(body) == {"signed-message": "10"}
    assert headers["Content-Length"] == str(len(body))

    status, _, body = call_app(app, "GET", "/health")
    assert status.startswith("200")
    assert json.loads(body) == {"status": "up"}

    status, _, body = call_app(app, "GET", "/metrics")
    assert "agg_sigs_req_count" in body.decode()

    status, headers, body = call_app(app, "GET", "/", host="agg.example.com")
    assert status.startswith("200")
    assert "https://agg.example.com/aggregate-signatures" in body.decode()
    assert headers["Access-Control-Allow-Methods"] == "GET, OPTIONS"


SIGNATURE = bytes([1]) * 96


class AcceptingScheme(SignatureScheme):
    def verify(self, public_key, signature, message):
        return signature == SIGNATURE

    def aggregate(self, signatures):
        return signatures[0]


class OneValidatorNetwork(AppRequestNetwork):
    def __init__(self):
        self.validators = ConnectedValidators(
            1, 1, [Validator(b"\x02" * 48, 1, ["node-1"])], {"node-1": 0})

    def track_subnet(self, subnet_id):
        pass

    def get_connected_canonical_validators(self, subnet_id):
        return self.validators

    def get_subnet_id(self, blockchain_id):
        return b"\x05" * 32

    def register_app_request(self, node_id, chain_id, request_id):
        pass

    def register_request_id(self, request_id, expected_responses):
        responses = queue.Queue()
        responses.put(AppResponse("node-1", request_id, b"\x0a\x60" + SIGNATURE))
        return responses

    def send(self, chain_id, request_id, request_bytes, node_ids, subnet_id):
        return set(node_ids)

    def shutdown(self):
        pass


def test_end_to_end_with_real_aggregator(metrics):
    agg = SignatureAggregator(OneValidatorNetwork(), AcceptingScheme(), 16, metrics)
    resp = post(agg, metrics, {"message": "0x0a0b0c"})
    assert resp.status == HTTPStatus.OK
    signed = resp.json()["signed-message"]
    assert signed.startswith("0a0b0c")
    assert signed.endswith(SIGNATURE.hex())
    assert metrics.app_request_count.value == 1


def test_api_response_json_roundtrip():
    resp = ApiResponse(200, {}, b'{"a": [1, 2]}')
    assert resp.json() == {"a": [1, 2]}