"""Data model shared by the supervisor, orchestrator and network client."""

from __future__ import annotations

import asyncio
import base64
import enum
import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any


class FailureKind(enum.Enum):
    NETWORK = "network"
    PROXY = "proxy"
    AUTHENTICATE = "authenticate"
    MALFORMED_RESPONSE = "malformed_response"
    UNKNOWN = "unknown"


class Phase(enum.Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    SESSION_STARTING = "session_starting"
    HEARTBEATING = "heartbeating"
    FAULT_HANDLING = "fault_handling"
    RESTARTING = "restarting"


class IdentityStrategy(enum.Enum):
    """How a node's outbound identity is chosen at startup."""

    NONE = "none"  # direct connection, IP looked up once per node
    PROXY = "proxy"  # one proxy per node, IP looked up through it
    SYNTHETIC = "synthetic"  # fixed synthetic address, no lookup


@dataclass(frozen=True)
class NodeDescriptor:
    """A node to supervise. Immutable once loaded."""

    node_id: str
    hardware_id: str
    auth_token: str = field(repr=False)
    proxy: str | None = None
    ip: str | None = None

    @property
    def label(self) -> str:
        """Short identifier used in log lines."""
        return self.node_id[:12] if len(self.node_id) > 12 else self.node_id


@dataclass
class SupervisionState:
    """Mutable per-node supervision bookkeeping.

    Owned by :class:`nodefleet.active.ActiveRegistry`; only touched under the
    node's lock.
    """

    node_id: str
    phase: Phase = Phase.IDLE
    failures: int = 0
    restarts: int = 0
    last_error: FailureKind | None = None
    timer: asyncio.Task | None = None
    owner: int | None = None  # claim token of the owning supervisor


@dataclass(frozen=True)
class HardwareFingerprint:
    """Synthetic hardware description reported on registration."""

    cpu_architecture: str
    cpu_model: str
    num_of_processors: int
    total_memory: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpuArchitecture": self.cpu_architecture,
            "cpuModel": self.cpu_model,
            "numOfProcessors": self.num_of_processors,
            "totalMemory": self.total_memory,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HardwareFingerprint:
        return cls(
            cpu_architecture=data["cpuArchitecture"],
            cpu_model=data["cpuModel"],
            num_of_processors=int(data["numOfProcessors"]),
            total_memory=int(data["totalMemory"]),
        )

    def encoded(self) -> str:
        """Base64 of the compact JSON form."""
        raw = json.dumps(self.to_dict(), separators=(",", ":"))
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def device_identifier(self) -> str:
        """sha256 hex digest identifying a device with this hardware."""
        payload = json.dumps({"hardware": self.encoded()}, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class RegistrationResult:
    node_id: str
    raw: dict = field(default_factory=dict)


@dataclass
class SessionResult:
    node_id: str
    session_id: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class PingResult:
    node_id: str
    status: str | None = None
    last_ping: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class HealthResult:
    status: str
    raw: dict = field(default_factory=dict)


@dataclass
class FleetReport:
    """Outcome of one orchestrator startup pass."""

    started: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    already_running: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.started)
            + len(self.deferred)
            + len(self.skipped)
            + len(self.already_running)
        )

    def to_dict(self) -> dict[str, list[str]]:
        return asdict(self)
