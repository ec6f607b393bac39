"""nodefleet.generate: fresh node identifiers for ``id.txt``.

Produces ``pubKey:deviceIdentifier`` pairs in the format read from ``id.txt``.
"""

from __future__ import annotations

import random
from pathlib import Path

from nodefleet.identity import generate_device_identifier, generate_pub_key


def generate_identifiers(count: int, rng: random.Random | None = None) -> list[tuple[str, str]]:
    """Return *count* fresh ``(pub_key, device_identifier)`` pairs."""
    if count < 1:
        raise ValueError("count must be at least 1")
    rng = rng or random.Random()
    return [(generate_pub_key(rng=rng), generate_device_identifier(rng)) for _ in range(count)]


def write_identifiers(pairs: list[tuple[str, str]], path: str | Path, append: bool = False) -> Path:
    path = Path(path)
    with open(path, "a" if append else "w", encoding="utf-8") as f:
        for pub_key, device_id in pairs:
            f.write(f"{pub_key}:{device_id}\n")
    return path


__all__ = ["generate_identifiers", "write_identifiers"]
