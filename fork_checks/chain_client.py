from __future__ import annotations

from typing import Any

import httpx
import structlog


logger = structlog.get_logger(__name__)


def parse_height(value: Any) -> int:
    """
    Decode a REST height value.

    The REST gateway encodes uint64 values as a [lower, higher] pair of uint32;
    plain integers and decimal strings are accepted as well.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid height {value!r}")
    if isinstance(value, int):
        height = value
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            lower, higher = (int(v) for v in value)
        except TypeError as exc:
            raise ValueError(f"Invalid height {value!r}") from exc
        if not (0 <= lower < 2**32 and 0 <= higher < 2**32):
            raise ValueError(f"Invalid height {value!r}")
        height = (higher << 32) | lower
    elif isinstance(value, str) and value.strip().isdigit():
        height = int(value.strip())
    else:
        raise ValueError(f"Invalid height {value!r}")
    if height < 0:
        raise ValueError(f"Invalid height {value!r}")
    return height


class ChainClient:
    """Reads chain-level data from the first reachable REST API URL."""

    def __init__(self, client: httpx.AsyncClient, api_urls: list[str], *, timeout_seconds: float = 10.0) -> None:
        self.client = client
        self.api_urls = [u.strip().rstrip("/") for u in api_urls if u and u.strip()]
        self.timeout_seconds = float(timeout_seconds)

    async def get_blockchain_height(self) -> int:
        last_error: Exception | None = None
        for url in self.api_urls:
            try:
                resp = await self.client.get(f"{url}/chain/height", timeout=self.timeout_seconds)
                resp.raise_for_status()
                data = resp.json()
                height = parse_height(data.get("height") if isinstance(data, dict) else data)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("API URL failed", url=url, error=str(exc))
                last_error = exc
                continue
            logger.info("Read blockchain height", url=url, height=height)
            return height
        raise RuntimeError(f"all provided URLs failed: {last_error}")
