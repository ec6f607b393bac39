"""Identity store: one persisted synthetic hardware fingerprint per node.

Fingerprints are generated the first time a node is seen and stored in a
small SQLite database so a node reports the same hardware across restarts.

Usage::

    store = IdentityStore("data/identity.db")
    fp = store.get_or_create_fingerprint(node_id)   # idempotent
"""

from __future__ import annotations

import json
import logging
import random
import sqlite3
import string
import threading
from pathlib import Path

from nodefleet.models import HardwareFingerprint

logger = logging.getLogger(__name__)

PUB_KEY_PREFIX = "12D3KooW"
_PUB_KEY_ALPHABET = string.ascii_uppercase + string.digits

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS fingerprints (
    node_id        TEXT PRIMARY KEY,
    hardware_info  TEXT NOT NULL,
    created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def generate_fingerprint(rng: random.Random | None = None) -> HardwareFingerprint:
    """Build a random but plausible hardware description."""
    rng = rng or random.Random()
    return HardwareFingerprint(
        cpu_architecture="x64" if rng.random() > 0.5 else "x86",
        cpu_model=f"Fake CPU Model {rng.randrange(1000)}",
        num_of_processors=rng.randrange(8) + 1,
        total_memory=(rng.randrange(16) + 1) * 1024 * 1024 * 1024,
    )


def generate_device_identifier(rng: random.Random | None = None) -> str:
    """Return a sha256 device identifier for freshly generated hardware."""
    return generate_fingerprint(rng).device_identifier()


def generate_pub_key(length: int = 52, rng: random.Random | None = None) -> str:
    """Return a peer-style public key: fixed prefix plus random alphanumerics."""
    if length <= len(PUB_KEY_PREFIX):
        raise ValueError(f"Key length must exceed {len(PUB_KEY_PREFIX)}")
    rng = rng or random.Random()
    tail = "".join(rng.choice(_PUB_KEY_ALPHABET) for _ in range(length - len(PUB_KEY_PREFIX)))
    return PUB_KEY_PREFIX + tail


class IdentityStore:
    """SQLite-backed map of node identifier → :class:`HardwareFingerprint`."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            if str(self.path) != ":memory:":
                self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
            self._conn = conn
        return self._conn

    def get_or_create_fingerprint(self, node_id: str) -> HardwareFingerprint:
        """Return the stored fingerprint for *node_id*, creating it on first use."""
        with self._lock:
            conn = self._connect()
            row = conn.execute(
                "SELECT hardware_info FROM fingerprints WHERE node_id = ?", (node_id,)
            ).fetchone()
            if row is not None:
                return HardwareFingerprint.from_dict(json.loads(row["hardware_info"]))

            fingerprint = generate_fingerprint()
            conn.execute(
                "INSERT INTO fingerprints (node_id, hardware_info) VALUES (?, ?)",
                (node_id, json.dumps(fingerprint.to_dict())),
            )
            conn.commit()
            logger.info("Generated hardware fingerprint for node %s", node_id)
            return fingerprint

    def known_nodes(self) -> list[str]:
        with self._lock:
            rows = self._connect().execute(
                "SELECT node_id FROM fingerprints ORDER BY created_at, node_id"
            ).fetchall()
        return [r["node_id"] for r in rows]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
