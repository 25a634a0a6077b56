# warpsig

`warpsig` collects signatures from a subnet's validators over an unsigned
Warp message and, once enough stake weight has signed, aggregates them into
a signed message. Around that core it offers a signature cache, metrics in
the Prometheus text format, a JSON configuration loader and a WSGI
application exposing the aggregation endpoint.

It uses only the standard library and needs Python 3.10 or later.

## Modules

- `warpsig.aggregator` – `SignatureAggregator`, the abstract
  `AppRequestNetwork` and `SignatureScheme`, and the data classes
  `Validator`, `ConnectedValidators`, `AppResponse`, `AppError`,
  `BitSetSignature` and `SignedMessage`.
- `warpsig.cache` – `SignatureCache`, a bounded LRU cache mapping a message
  ID to `{public key bytes: signature bytes}`.
- `warpsig.metrics` – `Counter`, `Gauge`, `GaugeVec` and
  `SignatureAggregatorMetrics`.
- `warpsig.config` – `Config`, `build_config`, `new_config`, `load_config`,
  `display_usage_text` and `ConfigError`.
- `warpsig.api` – `AggregateSignatureRequest`, `ApiResponse`,
  `handle_aggregate_signatures`, `handle_health_check` and `make_wsgi_app`.
- `warpsig.utils` – quorum checks, CB58 and hex ID parsing, retry helpers,
  URL query handling, a subscribable `Ticker` and a `UInt64Heap`.

## What you supply

The package does not talk to a peer network and does not implement BLS
cryptography. `SignatureAggregator` works against two abstract classes that
you implement:

- `AppRequestNetwork`: `track_subnet`, `get_connected_canonical_validators`
  (returning `ConnectedValidators`), `get_subnet_id`, `register_app_request`,
  `register_request_id` (returning a `queue.Queue` that receives
  `AppResponse` / `AppError` items, with `None` marking the end), `send`
  (returning the set of node IDs the request went to) and `shutdown`.
- `SignatureScheme`: `verify(public_key, signature, message)` and
  `aggregate(signatures)`; `signature_length` defaults to 96.

Unsigned messages passed to the aggregator need a `source_chain_id`
attribute (32 bytes) and a `to_bytes()` method. The HTTP layer takes a
`parse_message` callable that turns the decoded request bytes into such an
object.

## Aggregating signatures

```python
from warpsig.aggregator import SignatureAggregator
from warpsig.metrics import SignatureAggregatorMetrics

metrics = SignatureAggregatorMetrics()
aggregator = SignatureAggregator(network, scheme, 1024, metrics)
signed = aggregator.create_signed_message(message, b"", None, 67)
signed.to_bytes()
```

`create_signed_message` looks up (and remembers) the subnet of the message's
source chain, uses it as the signing subnet when none is given (or the
all-zero ID is given), retries until a quorum of stake is connected, reuses
cached signatures, then asks the remaining validators (the first node of
each) with exponential-backoff retries. Valid signatures are cached. Errors
raised:

- `NotEnoughConnectedStakeError` when connected stake stays below quorum;
- `NoSignaturesError` when quorum is met with no signatures (e.g. an empty,
  zero-weight validator set);
- `NotEnoughSignaturesError` when a quorum of signatures is not collected
  in time;
- `LookupError` when the source chain's subnet cannot be found.

The result is a `SignedMessage` whose `BitSetSignature` holds the aggregate
signature and a bit set of the canonical validator indices that signed.

## Quorum checks

A signature set is sufficient when the signed weight is at least
`quorum_numerator / 100` of the total weight:

```python
from warpsig.utils import check_stake_weight_exceeds_threshold

check_stake_weight_exceeds_threshold(67_000_000, 100_000_000, 67)  # True
check_stake_weight_exceeds_threshold(66_999_999, 100_000_000, 67)  # False
```

## IDs

IDs are accepted either as `0x`-prefixed hex or as CB58 text:

```python
from warpsig.utils import hex_or_cb58_to_id, id_to_string

raw = hex_or_cb58_to_id(
    "0x7fc93d85c6d62c5b2ac0b519c87010ea5294012d1e407030d6acd0021cac10d5"
)
id_to_string(raw)  # 'yH8D7ThNJkxmtkuv2jgBa4P1Rn3Qpr4pPr7QYNfcdoS6k6HWp'
```

Hex without the `0x` prefix is parsed as CB58, so it is normally rejected
with `ValueError`. Anything that does not decode to 32 bytes is rejected too.

## Configuration

`load_config(path)` reads a JSON file, lets environment variables override
its keys (the key upper-cased with `-` replaced by `_`, e.g. `API_PORT`),
fills in defaults and validates the result. `build_config(mapping)` and
`new_config(mapping)` do the same from a mapping without and with
validation.

| key                    | default   |
|------------------------|-----------|
| `log-level`            | `info`    |
| `p-chain-api`          | required  |
| `info-api`             | required  |
| `api-port`             | `8080`    |
| `metrics-port`         | `8081`    |
| `signature-cache-size` | `1048576` |
| `allow-private-ips`    | `false`   |
| `tracked-subnet-ids`   | `[]`      |

Tracked subnet IDs are CB58 strings; `Config.tracked_subnets()` returns
their raw bytes after validation. Any invalid value raises `ConfigError`.

## The HTTP API

`make_wsgi_app(aggregator, metrics, parse_message, health_check=None)`
returns a WSGI application; serve it with any WSGI server, for example:

```python
from wsgiref.simple_server import make_server

from warpsig.api import make_wsgi_app

app = make_wsgi_app(aggregator, metrics, parse_message, health_check)
make_server("", config.api_port, app).serve_forever()
```

Routes:

- `POST /aggregate-signatures` with a JSON body:

  ```json
  {
    "message": "0x…hex of the unsigned message…",
    "justification": "0x…optional hex…",
    "signing-subnet-id": "optional hex or CB58 subnet ID",
    "quorum-percentage": 67
  }
  ```

  Either `message` or `justification` must be non-empty and not all zeroes.
  `quorum-percentage` defaults to 67 when omitted or zero and must not exceed
  100. Success replies `{"signed-message": "<hex>"}`; failures reply
  `{"error": "<reason>"}` with 400 for bad input, 405 for methods other than
  `POST` and `OPTIONS`, and 500 when aggregation fails. CORS headers are set
  on every reply.
- `GET /health` (only when `health_check` is given) calls it; a raised
  exception gives 503 with `"status": "down"`, otherwise 200 with
  `"status": "up"`.
- `GET /metrics` returns `metrics.render()`.
- Any other path returns a plain-text page describing the request format.

`handle_aggregate_signatures` and `handle_health_check` can also be called
directly and return an `ApiResponse` (`status`, `headers`, `body`, `json()`).

## Metrics

```python
from warpsig.metrics import SignatureAggregatorMetrics

metrics = SignatureAggregatorMetrics()
metrics.app_request_count.inc()
print(metrics.render())
```

Names carry the prefix `signature_aggregator_` by default. The set covers
request count and latency, AppRequests sent, failures to fetch the validator
set or to connect to enough stake, send failures, validator timeouts,
invalid signature responses, cache hits and misses, and the connected stake
percentage per subnet.

## Utilities

- `with_retries_timeout(operation, timeout, logger=None)` retries with
  exponential backoff; wrap an error in `PermanentError` to stop at once.
- `call_with_retry(func, timeout=None)` retries every 200 ms and raises
  `TimeoutError` past the timeout.
- `add_query_params(endpoint, params)` appends query parameters (sorted by
  key) and raises `InvalidEndpointError` for an unparsable endpoint.
- `Ticker(interval_seconds)` delivers a tick to each `subscribe()` queue
  while `run()` runs, until `stop()`.
- `UInt64Heap` is a min-heap with `push`, `pop` and `peek`.

## What is not included

There is no command-line program: starting a service means building the
network, signature scheme, aggregator and WSGI app in your own code. No peer
network client, BLS implementation or Warp message parser is provided.

## Running the tests

Install the `test` extra and run `pytest` from the project root.