"""Signature aggregator metrics rendered in the Prometheus text format."""

from __future__ import annotations

import threading


def _fmt(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class _Metric:
    kind = ""

    def __init__(self, name: str, help_text: str):
        self.name = name
        self.help_text = help_text
        self.value = 0.0
        self._lock = threading.Lock()

    def _header(self) -> str:
        return f"# HELP {self.name} {self.help_text}\n# TYPE {self.name} {self.kind}\n"

    def render(self) -> str:
        return f"{self._header()}{self.name} {_fmt(self.value)}\n"


class Counter(_Metric):
    """Monotonically increasing value."""

    kind = "counter"

    def __init__(self, name: str, help_text: str):
        super().__init__(name, help_text)

    def inc(self, amount: float = 1) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self.value += amount

    def render(self) -> str:
        return super().render()


class Gauge(_Metric):
    """Value that can be set arbitrarily."""

    kind = "gauge"

    def __init__(self, name: str, help_text: str):
        super().__init__(name, help_text)

    def set(self, value: float) -> None:
        with self._lock:
            self.value = float(value)

    def render(self) -> str:
        return super().render()


class GaugeVec:
    """A family of gauges distinguished by label values."""

    def __init__(self, name: str, help_text: str, label_names):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._children: dict[tuple[str, ...], Gauge] = {}
        self._lock = threading.Lock()

    def labels(self, *args: str) -> Gauge:
        if len(args) != len(self.label_names):
            raise ValueError(
                f"expected {len(self.label_names)} label values but got {len(args)}"
            )
        key = tuple(str(a) for a in args)
        with self._lock:
            return self._children.setdefault(key, Gauge(self.name, self.help_text))

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} gauge"]
        for key in sorted(self._children):
            labels = ",".join(
                f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key)
            )
            lines.append(f"{self.name}{{{labels}}} {_fmt(self._children[key].value)}")
        return "\n".join(lines) + "\n"


class SignatureAggregatorMetrics:
    """All metrics the signature aggregator records."""

    def __init__(self, prefix: str = "signature_aggregator"):
        def n(name: str) -> str:
            return f"{prefix}_{name}" if prefix else name

        self.aggregate_signatures_latency_ms = Gauge(
            n("agg_sigs_latency_ms"), "Latency of requests for aggregate signatures")
        self.aggregate_signatures_request_count = Counter(
            n("agg_sigs_req_count"), "Number of requests for aggregate signatures")
        self.app_request_count = Counter(
            n("app_request_count"),
            "Number of AppRequests that have been submitted to the network")
        self.failures_to_get_validator_set = Counter(
            n("failures_to_get_validator_set"),
            "Number of failed attempts to retrieve the validator set")
        self.failures_to_connect_to_sufficient_stake = Counter(
            n("failures_to_connect_to_sufficient_stake"),
            "Number of incidents of connecting to some validators but not enough stake weight")
        self.failures_sending_to_node = Counter(
            n("failures_sending_to_node"),
            "Number of failures to send a request to a validator node")
        self.validator_timeouts = Counter(
            n("validator_timeouts"),
            "Number of timeouts while waiting for a validator to respond to a request")
        self.invalid_signature_responses = Counter(
            n("invalid_signature_responses"),
            "Number of responses from validators that were not valid signatures")
        self.signature_cache_hits = Counter(
            n("signature_cache_hits"), "Number of signatures that were found in the cache")
        self.signature_cache_misses = Counter(
            n("signature_cache_misses"),
            "Number of signatures that were not found in the cache")
        self.connected_stake_weight_percentage = GaugeVec(
            n("connected_stake_weight_percentage"),
            "The percentage of connected stake weight for a specific subnet",
            ["subnetID"])

    def render(self) -> str:
        metrics = [
            self.aggregate_signatures_latency_ms,
            self.aggregate_signatures_request_count,
            self.app_request_count,
            self.failures_to_get_validator_set,
            self.failures_to_connect_to_sufficient_stake,
            self.failures_sending_to_node,
            self.validator_timeouts,
            self.invalid_signature_responses,
            self.signature_cache_hits,
            self.signature_cache_misses,
            self.connected_stake_weight_percentage,
        ]
        return "".join(m.render() for m in metrics)