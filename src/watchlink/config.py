"""Session configuration.

All timeouts are in seconds. ``from_dict`` accepts the JSON layout written
by ``to_dict``; integer fields may be given as decimal or "0x" hex strings.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from .policies import ReconnectPolicy
from .protocol.services import DEFAULT_BINDINGS, DEFAULT_CHUNK_SIZE, Service, merge_bindings
from .streams import DEFAULT_BUFFER_SIZE


def _parse_int(value: str | int) -> int:
    """Parse integer from string (handles "0x" hex or decimal)."""
    if isinstance(value, int):
        return value
    value = str(value).strip()
    if value.startswith("0x") or value.startswith("0X"):
        return int(value, 16)
    return int(value)


@dataclass(frozen=True)
class SessionConfig:
    """Tunables for one device session."""

    # Connection
    connect_timeout: float = 10.0
    operation_timeout: float = 5.0
    max_connect_attempts: int = 4
    use_services_cache: bool = True
    scan_timeout: float = 10.0
    sync_time_on_connect: bool = True

    # Reconnection backoff (unbounded attempts)
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_backoff: float = 2.0
    reconnect_jitter_ratio: float = 0.1

    # Update transfer
    chunk_size: int = DEFAULT_CHUNK_SIZE
    ack_timeout: float = 5.0
    max_chunk_retries: int = 3
    control_timeout: float = 10.0
    verify_timeout: float = 30.0
    resume_timeout: float = 60.0

    # Telemetry
    telemetry_buffer_size: int = DEFAULT_BUFFER_SIZE

    bindings: Mapping[Service, str] = field(default_factory=lambda: dict(DEFAULT_BINDINGS))

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be > 0, got {self.chunk_size}")
        if self.max_chunk_retries < 0:
            raise ValueError(f"max_chunk_retries must be >= 0, got {self.max_chunk_retries}")
        if self.telemetry_buffer_size < 1:
            raise ValueError(
                f"telemetry_buffer_size must be >= 1, got {self.telemetry_buffer_size}"
            )
        for name in ("connect_timeout", "operation_timeout", "ack_timeout",
                     "control_timeout", "verify_timeout", "resume_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")

    def reconnect_policy(self) -> ReconnectPolicy:
        """Build the backoff policy for the reconnect loop."""
        return ReconnectPolicy(
            initial_delay=self.reconnect_initial_delay,
            max_delay=self.reconnect_max_delay,
            backoff=self.reconnect_backoff,
            jitter_ratio=self.reconnect_jitter_ratio,
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> SessionConfig:
        """Build a config from a JSON-compatible dict.

        Unknown keys are rejected so typos do not silently fall back to defaults.

        Raises:
            ValueError: If a key is unknown or a value is invalid
        """
        known = {f.name: f for f in fields(cls)}
        unknown = set(raw) - known.keys()
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        for name, value in raw.items():
            if name == "bindings":
                values[name] = merge_bindings(value)
            elif known[name].type in ("int", int):
                values[name] = _parse_int(value)
            elif known[name].type in ("float", float):
                values[name] = float(value)
            elif known[name].type in ("bool", bool):
                values[name] = bool(value)
            else:
                values[name] = value
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Export to a JSON-serializable dict."""
        raw = asdict(self)
        raw["bindings"] = {service.value: uuid for service, uuid in self.bindings.items()}
        return raw


def load_config(path: str | Path) -> SessionConfig:
    """Load a SessionConfig from a JSON file."""
    with open(path, encoding="utf-8") as f:
        return SessionConfig.from_dict(json.load(f))
