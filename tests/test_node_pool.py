from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import httpx
import pytest

from fork_checks.chain_client import ChainClient, parse_height
from fork_checks.node_pool import HashesAreNotTheSameError, NoConnectedPeersError, RestNodePool
from fork_checks.nodes import NodeInfo


# Per-node REST state served under /<node>/..., heights in the different encodings the gateway may use.
NODE_STATE: dict[str, dict] = {
    "n1": {"height": [1000, 0], "hashes": {1000: "aa" * 32}},
    "n2": {"height": 1005, "hashes": {1000: "AA" * 32}},
    "n3": {"height": "990", "hashes": {1000: "BB" * 32}},
}


class _FakeRestHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send_json(self, status: int, obj) -> None:
        body = json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        parts = [p for p in self.path.split("/") if p]
        if len(parts) < 2 or parts[0] not in NODE_STATE:
            self.send_error(404)
            return
        state = NODE_STATE[parts[0]]
        if parts[1:] == ["chain", "height"]:
            self._send_json(200, {"height": state["height"]})
            return
        if len(parts) == 3 and parts[1] == "block":
            block_hash = state["hashes"].get(int(parts[2]))
            if block_hash is None:
                self._send_json(404, {"code": "ResourceNotFound"})
                return
            self._send_json(200, {"meta": {"hash": block_hash}, "block": {"height": [int(parts[2]), 0]}})
            return
        self.send_error(404)


@pytest.fixture(scope="module")
def fake_rest_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _FakeRestHandler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


def _node(i: int, base_url: str, name: str) -> NodeInfo:
    return NodeInfo(
        identity_key=f"{i:064X}",
        endpoint=f"{name}.example.io:7900",
        friendly_name=name,
        rest_url=f"{base_url}/{name}",
    )


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ([1000, 0], 1000),
        ([5, 1], (1 << 32) + 5),
        (42, 42),
        (" 77 ", 77),
    ],
)
def test_parse_height(value, expected: int) -> None:
    assert parse_height(value) == expected


@pytest.mark.parametrize("value", [None, True, "abc", [1], [1, None], [-1, 0], -5])
def test_parse_height_rejects_garbage(value) -> None:
    with pytest.raises(ValueError):
        parse_height(value)


@pytest.mark.asyncio
async def test_rest_pool_splits_heights_and_reports_unreachable(fake_rest_base_url: str) -> None:
    n1, n2, n3 = (_node(i + 1, fake_rest_base_url, f"n{i + 1}") for i in range(3))
    dead = NodeInfo(identity_key=f"{9:064X}", endpoint="dead.example.io:7900", rest_url="http://127.0.0.1:1")

    async with httpx.AsyncClient() as client:
        pool = RestNodePool(client, timeout_seconds=2.0)
        failed = await pool.connect_to_nodes([n1, n2, n3, dead], discover=True)
        assert failed == {dead.identity_key: dead}

        not_reached, reached = await pool.wait_height(1000)

    assert reached == {n1: 1000, n2: 1005}
    assert not_reached == {n3: 990}


@pytest.mark.asyncio
async def test_rest_pool_detects_divergent_hashes(fake_rest_base_url: str) -> None:
    nodes = [_node(i + 1, fake_rest_base_url, f"n{i + 1}") for i in range(3)]

    async with httpx.AsyncClient() as client:
        pool = RestNodePool(client, timeout_seconds=2.0)
        await pool.connect_to_nodes(nodes, discover=False)

        with pytest.raises(HashesAreNotTheSameError) as excinfo:
            await pool.compare_hashes(1000)

    assert excinfo.value.height == 1000
    assert excinfo.value.hashes == {
        "n1.example.io:7900": "AA" * 32,
        "n2.example.io:7900": "AA" * 32,
        "n3.example.io:7900": "BB" * 32,
    }


@pytest.mark.asyncio
async def test_rest_pool_consistent_hashes(fake_rest_base_url: str) -> None:
    nodes = [_node(i + 1, fake_rest_base_url, f"n{i + 1}") for i in range(2)]

    async with httpx.AsyncClient() as client:
        pool = RestNodePool(client, timeout_seconds=2.0)
        await pool.connect_to_nodes(nodes, discover=False)
        hashes = await pool.compare_hashes(1000)

    assert set(hashes.values()) == {"AA" * 32}


@pytest.mark.asyncio
async def test_rest_pool_without_connected_nodes() -> None:
    dead = NodeInfo(identity_key=f"{9:064X}", endpoint="dead.example.io:7900", rest_url="http://127.0.0.1:1")

    async with httpx.AsyncClient() as client:
        pool = RestNodePool(client, timeout_seconds=1.0)
        await pool.connect_to_nodes([dead], discover=False)
        with pytest.raises(NoConnectedPeersError):
            await pool.wait_height(1000)
        with pytest.raises(NoConnectedPeersError):
            await pool.compare_hashes(1000)


@pytest.mark.asyncio
async def test_chain_client_falls_back_to_next_url(fake_rest_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        chain = ChainClient(client, ["http://127.0.0.1:1", f"{fake_rest_base_url}/missing", f"{fake_rest_base_url}/n2"])
        assert await chain.get_blockchain_height() == 1005

        with pytest.raises(RuntimeError, match="all provided URLs failed"):
            await ChainClient(client, ["http://127.0.0.1:1"]).get_blockchain_height()
