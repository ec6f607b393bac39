"""Configuration for the node fleet: loaded from config.json.

Values come from, in increasing priority: dataclass defaults, the JSON file,
``NODEFLEET_*`` environment variables, and CLI flags (applied by
``nodefleet.__main__``).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import MISSING, dataclass, field, fields
from pathlib import Path

from nodefleet.client import (
    DEFAULT_API_BASE_URL,
    DEFAULT_HEALTH_URL,
    DEFAULT_IP_SERVICE_URL,
)
from nodefleet.models import IdentityStrategy

logger = logging.getLogger(__name__)

ENV_PREFIX = "NODEFLEET_"


@dataclass
class FleetConfig:
    """Fleet configuration."""

    # Gateway
    api_base_url: str = DEFAULT_API_BASE_URL
    ip_service_url: str = DEFAULT_IP_SERVICE_URL
    health_url: str = DEFAULT_HEALTH_URL
    extension_version: str = "0.1.7"
    request_timeout: float = 30.0

    # Supervision
    heartbeat_interval: float = 120.0
    failure_threshold: int = 3
    short_backoff_min: float = 30.0
    short_backoff_max: float = 150.0
    long_backoff: float = 900.0  # proxy / auth faults
    restart_delay: float = 30.0  # after an orchestrator startup crash
    stop_sessions_on_exit: bool = False

    # Outbound identity: none | proxy | synthetic
    strategy: str = IdentityStrategy.NONE.value

    # Files
    data_dir: str = "./data"
    ids_file: str = "id.txt"
    token_file: str = "user.txt"
    proxy_file: str = "proxy.txt"

    # Inline alternative to the text files (see nodefleet.registry)
    accounts: list = field(default_factory=list)

    @classmethod
    def load(cls, path: str | Path | None = None, env: dict | None = None) -> FleetConfig:
        """Load from *path* (if it exists), then apply environment overrides."""
        config = cls()
        if path is not None:
            path = Path(path)
            if path.exists():
                with open(path) as f:
                    data = json.load(f)
                known = {k for k in cls.__dataclass_fields__}
                unknown = set(data) - known
                if unknown:
                    logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
                config = cls(**{k: v for k, v in data.items() if k in known})
            else:
                logger.warning("Config not found at %s, using defaults", path)
        config.apply_env(os.environ if env is None else env)
        return config

    def apply_env(self, env) -> None:
        """Override scalar fields from ``NODEFLEET_<FIELD>`` variables."""
        for f in fields(self):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or f.name == "accounts":
                continue
            # Convert by the field default's type, not the loaded value's.
            kind = type(f.default) if f.default is not MISSING else str
            try:
                if kind is bool:
                    value = raw.strip().lower() in ("1", "true", "yes", "on")
                elif kind is int:
                    value = int(raw)
                elif kind is float:
                    value = float(raw)
                else:
                    value = raw
            except ValueError as exc:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from exc
            setattr(self, f.name, value)

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dict(self.__dict__), f, indent=2)

    def validate(self) -> None:
        """Raise ``ValueError`` on settings the supervisor cannot run with."""
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.short_backoff_min < 0 or self.short_backoff_max < self.short_backoff_min:
            raise ValueError("short backoff window is invalid")
        if self.long_backoff < 0 or self.restart_delay < 0:
            raise ValueError("delays must not be negative")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        self.identity_strategy  # raises on unknown strategy

    @property
    def identity_strategy(self) -> IdentityStrategy:
        try:
            return IdentityStrategy(self.strategy)
        except ValueError:
            choices = ", ".join(s.value for s in IdentityStrategy)
            raise ValueError(f"Unknown strategy {self.strategy!r} (choose {choices})") from None

    @property
    def identity_db_path(self) -> Path:
        return Path(self.data_dir) / "identity.db"
