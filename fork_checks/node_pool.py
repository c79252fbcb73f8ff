"""Node probing for the fork checker.

`NodePool` is the interface the driving loop depends on. `RestNodePool` is a
concrete pool that probes every configured node over its REST API: it keeps
the set of nodes that answered the last `connect_to_nodes` call and reads
heights and block hashes from those.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import httpx
import structlog

from fork_checks.chain_client import parse_height
from fork_checks.nodes import NodeInfo, default_rest_url


logger = structlog.get_logger(__name__)


class NodePoolError(RuntimeError):
    pass


class NoConnectedPeersError(NodePoolError):
    def __init__(self, message: str = "no connected peers") -> None:
        super().__init__(message)


class HashesAreNotTheSameError(NodePoolError):
    def __init__(self, height: int, hashes: dict[str, str]) -> None:
        super().__init__(f"hashes are not the same at height {height}")
        self.height = int(height)
        self.hashes = dict(hashes)


class NodePool(Protocol):
    async def connect_to_nodes(self, nodes: list[NodeInfo], discover: bool) -> dict[str, NodeInfo]:
        ...

    async def wait_height(self, height: int) -> tuple[dict[NodeInfo, int], dict[NodeInfo, int]]:
        ...

    async def compare_hashes(self, height: int) -> dict[str, str]:
        ...


def _parse_block_hash(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    meta = data.get("meta")
    if isinstance(meta, dict):
        h = meta.get("hash")
        if isinstance(h, str) and h.strip():
            return h.strip().upper()
    h = data.get("hash")
    if isinstance(h, str) and h.strip():
        return h.strip().upper()
    return None


class RestNodePool:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 10.0,
        concurrency: int = 25,
    ) -> None:
        self.client = client
        self.timeout_seconds = max(0.5, float(timeout_seconds))
        self._sem = asyncio.Semaphore(max(1, int(concurrency)))
        self.connected: dict[str, NodeInfo] = {}

    @staticmethod
    def rest_url(node: NodeInfo) -> str:
        return (node.rest_url or default_rest_url(node.endpoint)).rstrip("/")

    async def _get_json(self, node: NodeInfo, path: str) -> Any:
        async with self._sem:
            resp = await self.client.get(f"{self.rest_url(node)}{path}", timeout=self.timeout_seconds)
        resp.raise_for_status()
        return resp.json()

    async def _get_height(self, node: NodeInfo) -> int:
        data = await self._get_json(node, "/chain/height")
        return parse_height(data.get("height") if isinstance(data, dict) else data)

    async def connect_to_nodes(self, nodes: list[NodeInfo], discover: bool) -> dict[str, NodeInfo]:
        if discover:
            logger.debug("Peer discovery is not supported by the REST pool; probing configured nodes only")

        async def _probe(node: NodeInfo) -> tuple[NodeInfo, bool]:
            try:
                await self._get_height(node)
            except (httpx.HTTPError, ValueError) as exc:
                logger.info("Node unreachable", endpoint=node.endpoint, identity_key=node.identity_key, error=str(exc))
                return node, False
            return node, True

        results = await asyncio.gather(*(_probe(n) for n in nodes))
        self.connected = {n.identity_key: n for n, ok in results if ok}
        return {n.identity_key: n for n, ok in results if not ok}

    async def wait_height(self, height: int) -> tuple[dict[NodeInfo, int], dict[NodeInfo, int]]:
        """
        Read the current height of every connected node and split the nodes
        into (not_reached, reached) relative to `height`.
        """
        if not self.connected:
            raise NoConnectedPeersError()

        async def _read(node: NodeInfo) -> tuple[NodeInfo, int | None]:
            try:
                return node, await self._get_height(node)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Failed to read height", endpoint=node.endpoint, error=str(exc))
                return node, None

        results = await asyncio.gather(*(_read(n) for n in self.connected.values()))
        not_reached: dict[NodeInfo, int] = {}
        reached: dict[NodeInfo, int] = {}
        for node, observed in results:
            if observed is None:
                continue
            if observed >= int(height):
                reached[node] = observed
            else:
                not_reached[node] = observed
        return not_reached, reached

    async def compare_hashes(self, height: int) -> dict[str, str]:
        if not self.connected:
            raise NoConnectedPeersError()

        async def _read(node: NodeInfo) -> tuple[NodeInfo, str | None]:
            try:
                data = await self._get_json(node, f"/block/{int(height)}")
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Failed to read block hash", endpoint=node.endpoint, height=height, error=str(exc))
                return node, None
            return node, _parse_block_hash(data)

        results = await asyncio.gather(*(_read(n) for n in self.connected.values()))
        hashes = {node.endpoint: h for node, h in results if h}
        if not hashes:
            raise NoConnectedPeersError(f"no connected peer returned a block hash at height {height}")
        if len(set(hashes.values())) > 1:
            raise HashesAreNotTheSameError(height, hashes)
        return hashes
