"""HTTP interface of the signature aggregator: aggregation, health and metrics endpoints."""

from __future__ import annotations

import binascii
import json
import logging
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Mapping

from warpsig.metrics import SignatureAggregatorMetrics
from warpsig.utils import hex_or_cb58_to_id, is_empty_or_zeroes, sanitize_hex_string

API_PATH = "/aggregate-signatures"
HEALTH_PATH = "/health"
METRICS_PATH = "/metrics"
DEFAULT_QUORUM_PERCENTAGE = 67
HEALTH_CHECK_NAME = "signature-aggregator-health"
EMPTY_ID = bytes(32)

_MAX_UINT64 = 2**64 - 1
_JSON_CONTENT_TYPE = "application/json"
_HEALTH_CONTENT_TYPE = "application/json; charset=utf-8"
_METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_LOG = logging.getLogger(__name__)


def _cors_headers(methods: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type",
    }


@dataclass
class ApiResponse:
    """Status code, headers and body of an HTTP response."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> Any:
        return json.loads(self.body)


def _string_field(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected a string")
    return value


def _uint64_field(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key}: expected an unsigned integer")
    if not 0 <= value <= _MAX_UINT64:
        raise ValueError(f"{key}: value {value} out of range")
    return value


@dataclass
class AggregateSignatureRequest:
    """A request to aggregate signatures over a raw unsigned warp message."""

    message: str = ""
    justification: str = ""
    signing_subnet_id: str = ""
    quorum_percentage: int = 0

    @classmethod
    def from_json(cls, body: bytes | str) -> "AggregateSignatureRequest":
        """Decode the first JSON value of body; unknown keys are ignored."""
        text = bytes(body).decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
        try:
            data, _ = json.JSONDecoder().raw_decode(text.lstrip())
        except json.JSONDecodeError as err:
            raise ValueError(f"invalid JSON: {err}") from err
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("request body must be a JSON object")
        return cls(
            message=_string_field(data, "message"),
            justification=_string_field(data, "justification"),
            signing_subnet_id=_string_field(data, "signing-subnet-id"),
            quorum_percentage=_uint64_field(data, "quorum-percentage"),
        )


def _json_body(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _error(headers: dict[str, str], status: HTTPStatus, message: str) -> ApiResponse:
    headers["Content-Type"] = _JSON_CONTENT_TYPE
    return ApiResponse(int(status), headers, _json_body({"error": message}))


def handle_aggregate_signatures(
    aggregator,
    metrics: SignatureAggregatorMetrics,
    method: str,
    body: bytes,
    parse_message: Callable[[bytes], Any],
) -> ApiResponse:
    """Serve one request to the aggregation endpoint."""
    headers = _cors_headers("POST, OPTIONS")
    if method == "OPTIONS":
        return ApiResponse(int(HTTPStatus.OK), headers)
    if method != "POST":
        return _error(headers, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")

    metrics.aggregate_signatures_request_count.inc()
    start = time.monotonic()

    try:
        request = AggregateSignatureRequest.from_json(body)
    except ValueError as err:
        msg = "Could not decode request body"
        _LOG.warning("%s: %s", msg, err)
        return _error(headers, HTTPStatus.BAD_REQUEST, msg)

    try:
        decoded_message = binascii.unhexlify(request.message.removeprefix("0x"))
    except (binascii.Error, ValueError) as err:
        msg = "Could not decode message"
        _LOG.warning("%s msg=%s: %s", msg, request.message, err)
        return _error(headers, HTTPStatus.BAD_REQUEST, msg)

    try:
        message = parse_message(decoded_message)
    except Exception as err:
        msg = "Error unpacking warp message"
        _LOG.warning("%s: %s", msg, err)
        return _error(headers, HTTPStatus.BAD_REQUEST, msg)

    try:
        justification = binascii.unhexlify(sanitize_hex_string(request.justification))
    except (binascii.Error, ValueError) as err:
        msg = "Could not decode justification"
        _LOG.warning("%s justification=%s: %s", msg, request.justification, err)
        return _error(headers, HTTPStatus.BAD_REQUEST, msg)

    if is_empty_or_zeroes(message.to_bytes()) and is_empty_or_zeroes(justification):
        return _error(
            headers, HTTPStatus.BAD_REQUEST, "Must provide either message or justification"
        )

    quorum_percentage = request.quorum_percentage
    if quorum_percentage == 0:
        quorum_percentage = DEFAULT_QUORUM_PERCENTAGE
    elif quorum_percentage > 100:
        msg = "Invalid quorum number"
        _LOG.warning("%s quorum-num=%d", msg, quorum_percentage)
        return _error(headers, HTTPStatus.BAD_REQUEST, msg)

    signing_subnet = EMPTY_ID
    if request.signing_subnet_id:
        try:
            signing_subnet = hex_or_cb58_to_id(request.signing_subnet_id)
        except ValueError as err:
            msg = "Error parsing signing subnet ID"
            _LOG.warning("%s input=%s: %s", msg, request.signing_subnet_id, err)
            return _error(headers, HTTPStatus.BAD_REQUEST, msg)

    try:
        signed = aggregator.create_signed_message(
            message, justification, signing_subnet, quorum_percentage
        )
    except Exception as err:
        msg = "Failed to aggregate signatures"
        _LOG.warning("%s: %s", msg, err)
        return _error(headers, HTTPStatus.INTERNAL_SERVER_ERROR, msg)

    headers["Content-Type"] = _JSON_CONTENT_TYPE
    response = ApiResponse(
        int(HTTPStatus.OK), headers, _json_body({"signed-message": signed.to_bytes().hex()})
    )
    metrics.aggregate_signatures_latency_ms.set(int((time.monotonic() - start) * 1000))
    return response


def handle_health_check(check: Callable[[], Any]) -> ApiResponse:
    """Run the health check; a raised exception reports the service as down."""
    try:
        check()
    except Exception as err:
        payload = {
            "status": "down",
            "details": {HEALTH_CHECK_NAME: {"status": "down", "error": str(err)}},
        }
        return ApiResponse(
            int(HTTPStatus.SERVICE_UNAVAILABLE),
            {"Content-Type": _HEALTH_CONTENT_TYPE},
            _json_body(payload),
        )
    return ApiResponse(
        int(HTTPStatus.OK), {"Content-Type": _HEALTH_CONTENT_TYPE}, _json_body({"status": "up"})
    )


def _root_page(method: str, host: str) -> ApiResponse:
    headers = _cors_headers("GET, OPTIONS")
    if method == "OPTIONS":
        return ApiResponse(int(HTTPStatus.OK), headers)
    example = (
        "curl --location 'https://" + host + "/aggregate-signatures' \\\n"
        "\t--header 'Content-Type: application/json' \\\n"
        "\t--data '{\n"
        '\t\t"message": "[Message in hex]", \n'
        '\t\t"signing-subnet-id": "[Signing Subnet ID in base58, optional]", \n'
        '\t\t"justification": "[Justification in hex, optional]"\n'
        "\t}'"
    )
    text = (
        "This is a Fuji signature aggregator. Please use the following request format: \n\n"
        + example
    )
    headers["Content-Type"] = "text/plain; charset=utf-8"
    return ApiResponse(int(HTTPStatus.OK), headers, text.encode("utf-8"))


def _read_body(environ: Mapping[str, Any]) -> bytes:
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    stream = environ.get("wsgi.input")
    if stream is None or length <= 0:
        return b""
    return stream.read(length)


def make_wsgi_app(
    aggregator,
    metrics: SignatureAggregatorMetrics,
    parse_message: Callable[[bytes], Any],
    health_check: Callable[[], Any] | None = None,
):
    """A WSGI application serving the aggregation, health, metrics and index pages."""

    def app(environ, start_response):
        path = environ.get("PATH_INFO") or "/"
        method = environ.get("REQUEST_METHOD", "GET")
        if path == API_PATH:
            response = handle_aggregate_signatures(
                aggregator, metrics, method, _read_body(environ), parse_message
            )
        elif path == HEALTH_PATH and health_check is not None:
            response = handle_health_check(health_check)
        elif path == METRICS_PATH:
            response = ApiResponse(
                int(HTTPStatus.OK),
                {"Content-Type": _METRICS_CONTENT_TYPE},
                metrics.render().encode("utf-8"),
            )
        else:
            host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")
            response = _root_page(method, host)
        status = HTTPStatus(response.status)
        headers = dict(response.headers)
        headers["Content-Length"] = str(len(response.body))
        start_response(f"{status.value} {status.phrase}", list(headers.items()))
        return [response.body]

    return app