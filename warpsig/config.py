"""Signature aggregator configuration: defaults, parsing and validation."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Mapping

from warpsig.utils import cb58_decode, ID_LENGTH

DEFAULT_API_PORT = 8080
DEFAULT_METRICS_PORT = 8081
DEFAULT_SIGNATURE_CACHE_SIZE = 1024 * 1024
DEFAULT_LOG_LEVEL = "info"

USAGE_TEXT = """
Usage:
signature-aggregator --config-file path-to-config            Specifies the config file and start the signing service.
signature-aggregator --version                               Display signature-aggregator version and exit.
signature-aggregator --help                                  Display signature-aggregator usage and exit.
"""


class ConfigError(ValueError):
    """Raised for a configuration that cannot be built or is invalid."""


@dataclass
class Config:
    """Signature aggregator settings, keyed as in the JSON config file."""

    log_level: str = DEFAULT_LOG_LEVEL
    p_chain_api: dict | None = None
    info_api: dict | None = None
    api_port: int = DEFAULT_API_PORT
    metrics_port: int = DEFAULT_METRICS_PORT
    signature_cache_size: int = DEFAULT_SIGNATURE_CACHE_SIZE
    allow_private_ips: bool = False
    tracked_subnet_ids: list[str] = field(default_factory=list)
    _tracked_subnets: frozenset = field(default=frozenset(), init=False, repr=False)

    def validate(self) -> None:
        """Check the configuration and derive the tracked subnet set."""
        if self.p_chain_api is None:
            raise ConfigError("p-chain-api must be set")
        if self.info_api is None:
            raise ConfigError("info-api must be set")
        subnets = set()
        for text in self.tracked_subnet_ids:
            try:
                raw = cb58_decode(text)
            except ValueError as err:
                raise ConfigError(f"invalid tracked subnet ID {text!r}: {err}") from err
            if len(raw) != ID_LENGTH:
                raise ConfigError(f"invalid tracked subnet ID {text!r}: wrong length")
            subnets.add(raw)
        self._tracked_subnets = frozenset(subnets)

    def tracked_subnets(self) -> frozenset:
        """Return the raw subnet IDs derived by validate()."""
        return self._tracked_subnets


def _as_int(key: str, value: Any, upper: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"{key}: expected an integer") from err
    if number < 0 or (upper is not None and number > upper):
        raise ConfigError(f"{key}: value {number} out of range")
    return number


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
        return value.lower() in ("true", "1")
    raise ConfigError(f"{key}: expected a boolean")


def _as_list(key: str, value: Any) -> list[str]:
    if isinstance(value, str):
        return [v for v in value.replace(",", " ").split() if v]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    raise ConfigError(f"{key}: expected a list")


def _as_api(key: str, value: Any) -> dict | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key}: expected an object")
    return dict(value)


_KEYS = (
    "log-level", "p-chain-api", "info-api", "api-port", "metrics-port",
    "signature-cache-size", "allow-private-ips", "tracked-subnet-ids",
)


def build_config(values: Mapping[str, Any]) -> Config:
    """Build a Config from hyphenated keys, filling in defaults. Unknown keys are ignored."""
    return Config(
        log_level=str(values.get("log-level", DEFAULT_LOG_LEVEL)),
        p_chain_api=_as_api("p-chain-api", values.get("p-chain-api")),
        info_api=_as_api("info-api", values.get("info-api")),
        api_port=_as_int("api-port", values.get("api-port", DEFAULT_API_PORT), 65535),
        metrics_port=_as_int(
            "metrics-port", values.get("metrics-port", DEFAULT_METRICS_PORT), 65535),
        signature_cache_size=_as_int(
            "signature-cache-size",
            values.get("signature-cache-size", DEFAULT_SIGNATURE_CACHE_SIZE)),
        allow_private_ips=_as_bool("allow-private-ips", values.get("allow-private-ips", False)),
        tracked_subnet_ids=_as_list("tracked-subnet-ids", values.get("tracked-subnet-ids", [])),
    )


def new_config(values: Mapping[str, Any]) -> Config:
    """Build and validate a Config."""
    cfg = build_config(values)
    try:
        cfg.validate()
    except ConfigError as err:
        raise ConfigError(f"failed to validate configuration: {err}") from err
    return cfg


def load_config(path: str | os.PathLike) -> Config:
    """Read a JSON config file; environment variables (e.g. API_PORT) override its keys."""
    try:
        with open(path, encoding="utf-8") as fh:
            values = json.load(fh)
    except (OSError, json.JSONDecodeError) as err:
        raise ConfigError(f"cannot read config file {path}: {err}") from err
    if not isinstance(values, dict):
        raise ConfigError("config file must hold a JSON object")
    for key in _KEYS:
        env = os.environ.get(key.upper().replace("-", "_"))
        if env is not None:
            if key in ("p-chain-api", "info-api"):
                try:
                    values[key] = json.loads(env)
                except json.JSONDecodeError as err:
                    raise ConfigError(f"{key}: invalid JSON in environment") from err
            else:
                values[key] = env
    return new_config(values)


def display_usage_text() -> str:
    """Write the usage text to standard output and return what was written."""
    text = f"{USAGE_TEXT}\n"
    sys.stdout.write(text)
    sys.stdout.flush()
    return text