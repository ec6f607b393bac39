"""Node registry: the set of nodes to supervise, loaded from configuration.

Two sources are supported:

* Text files: ``id.txt`` with one ``nodeId:hardwareId`` per line and
  ``user.txt`` holding the account auth token(s).
* The ``accounts`` list of the JSON config::

      [{"token": "...", "nodes": [{"node_id": "...", "hardware_id": "...",
                                   "proxy": "host:port"}]}]

Proxy lists live in ``proxy.txt`` (one per line).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Iterator

from nodefleet.models import NodeDescriptor

logger = logging.getLogger(__name__)

_PROXY_SCHEMES = ("http://", "https://", "socks4://", "socks5://", "socks5h://")


class RegistryError(ValueError):
    """Raised when node or proxy configuration cannot be parsed."""


def _read_lines(path: str | Path) -> list[str]:
    """Return non-empty, non-comment lines of *path*."""
    path = Path(path)
    if not path.exists():
        raise RegistryError(f"File not found: {path}")
    lines = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if line and not line.startswith("#"):
            lines.append(line)
    return lines


def normalize_proxy(value: str) -> str:
    """Turn the accepted proxy notations into a proxy URL.

    Accepts ``scheme://[user:pass@]host:port``, ``user:pass@host:port``,
    ``host:port`` and ``host:port:user:pass``. Bare forms default to http.
    """
    value = value.strip()
    if not value:
        raise RegistryError("Empty proxy entry")
    if value.lower().startswith(_PROXY_SCHEMES):
        return value
    if "://" in value:
        raise RegistryError(f"Unsupported proxy scheme: {value}")
    if "@" in value:
        return f"http://{value}"
    parts = value.split(":")
    if len(parts) == 2:
        return f"http://{value}"
    if len(parts) == 4:
        host, port, user, password = parts
        return f"http://{user}:{password}@{host}:{port}"
    raise RegistryError(f"Unrecognised proxy format: {value}")


def load_proxies(path: str | Path) -> list[str]:
    """Read and normalise a proxy list file."""
    proxies = [normalize_proxy(line) for line in _read_lines(path)]
    logger.info("Loaded %d proxies from %s", len(proxies), path)
    return proxies


class NodeRegistry:
    """Ordered, duplicate-free collection of :class:`NodeDescriptor`."""

    def __init__(self, nodes: Iterable[NodeDescriptor] = ()) -> None:
        self._nodes: dict[str, NodeDescriptor] = {}
        for node in nodes:
            self.add(node)

    def add(self, node: NodeDescriptor) -> bool:
        """Add *node*; a duplicate identifier is logged and dropped."""
        if not node.node_id:
            raise RegistryError("Node identifier must not be empty")
        if node.node_id in self._nodes:
            logger.warning("Duplicate node %s ignored", node.node_id)
            return False
        self._nodes[node.node_id] = node
        return True

    def get(self, node_id: str) -> NodeDescriptor | None:
        return self._nodes.get(node_id)

    def __iter__(self) -> Iterator[NodeDescriptor]:
        return iter(list(self._nodes.values()))

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    @property
    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def assign_proxies(self, proxies: list[str]) -> NodeRegistry:
        """Return a registry with one proxy bound per node, in order.

        Nodes that already carry a proxy keep it. When there are fewer
        proxies than nodes the list wraps around.
        """
        if not proxies:
            raise RegistryError("Proxy strategy selected but no proxies are available")
        needing = [n for n in self if n.proxy is None]
        if len(needing) > len(proxies):
            logger.warning(
                "Only %d proxies for %d nodes; some proxies will be shared",
                len(proxies), len(needing),
            )
        bound = []
        index = 0
        for node in self:
            if node.proxy is None:
                node = replace(node, proxy=proxies[index % len(proxies)])
                index += 1
            bound.append(node)
        return NodeRegistry(bound)

    # ── Loaders ────────────────────────────────────────────────────

    @classmethod
    def from_files(
        cls,
        ids_path: str | Path,
        token_path: str | Path,
        proxy_path: str | Path | None = None,
    ) -> NodeRegistry:
        """Load nodes from ``nodeId:hardwareId`` lines and a token file.

        A single token applies to every node; otherwise tokens pair with node
        lines by position. A proxy file, when given, binds proxies in order and
        must exist.
        """
        tokens = _read_lines(token_path)
        if not tokens:
            raise RegistryError(f"No auth token in {token_path}")
        entries = _read_lines(ids_path)
        if len(tokens) > 1 and len(tokens) != len(entries):
            raise RegistryError(
                f"{token_path} has {len(tokens)} tokens for {len(entries)} nodes"
            )

        registry = cls()
        for i, line in enumerate(entries):
            node_id, sep, hardware_id = line.partition(":")
            if not sep or not node_id.strip() or not hardware_id.strip():
                raise RegistryError(f"{ids_path}:{i + 1}: expected nodeId:hardwareId")
            token = tokens[0] if len(tokens) == 1 else tokens[i]
            registry.add(NodeDescriptor(
                node_id=node_id.strip(),
                hardware_id=hardware_id.strip(),
                auth_token=token,
            ))

        if proxy_path is not None:
            registry = registry.assign_proxies(load_proxies(proxy_path))
        logger.info("Loaded %d nodes from %s", len(registry), ids_path)
        return registry

    @classmethod
    def from_accounts(cls, accounts: list[dict]) -> NodeRegistry:
        """Load nodes from the ``accounts`` section of the JSON config."""
        registry = cls()
        for a, account in enumerate(accounts):
            token = account.get("token", "")
            if not token:
                raise RegistryError(f"Account #{a + 1} has no token")
            for entry in account.get("nodes", []):
                try:
                    node_id = entry["node_id"]
                    hardware_id = entry["hardware_id"]
                except KeyError as exc:
                    raise RegistryError(f"Account #{a + 1}: node entry missing {exc}") from exc
                proxy = entry.get("proxy")
                registry.add(NodeDescriptor(
                    node_id=node_id,
                    hardware_id=hardware_id,
                    auth_token=token,
                    proxy=normalize_proxy(proxy) if proxy else None,
                ))
        logger.info("Loaded %d nodes from %d accounts", len(registry), len(accounts))
        return registry
