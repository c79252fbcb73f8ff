from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Iterator

import httpx
import structlog


logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900
TELEGRAM_API_BASE_URL = "https://api.telegram.org"
TELEGRAM_SEND_TIMEOUT_SECONDS = 15.0

_PRE_OPEN = "<pre>"
_PRE_CLOSE = "</pre>"


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str
    api_base_url: str = TELEGRAM_API_BASE_URL

    @property
    def send_message_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/bot{self.bot_token}/sendMessage"

    def redact(self, text: str) -> str:
        if self.bot_token:
            return text.replace(self.bot_token, "<redacted>")
        return text


def _pre_is_open(text: str) -> bool:
    return text.count(_PRE_OPEN) > text.count(_PRE_CLOSE)


def _safe_cut(line: str, width: int) -> int:
    cut = width
    space = line.rfind(" ", 0, width + 1)
    if space > width // 2:
        cut = space
    # Never end a piece inside an HTML tag or entity.
    tag = line.rfind("<", 0, cut)
    if tag > line.rfind(">", 0, cut):
        cut = tag
    entity = line.rfind("&", 0, cut)
    if entity > line.rfind(";", 0, cut):
        cut = entity
    return cut if cut > 0 else width


def _hard_wrap(line: str, width: int) -> Iterator[str]:
    while len(line) > width:
        cut = _safe_cut(line, width)
        yield line[:cut]
        line = line[cut:]
    yield line


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """
    Split an HTML message into chunks of at most `max_len` characters, on line
    boundaries where possible. A `<pre>` block crossing a chunk boundary is
    closed at the end of one chunk and reopened at the start of the next.
    """
    s = (text or "").strip()
    if not s:
        return [""]

    reserve = len(_PRE_OPEN) + len(_PRE_CLOSE)
    max_len = max(reserve + 1, int(max_len))

    parts: list[str] = []
    current = ""
    for line in s.split("\n"):
        for i, piece in enumerate(_hard_wrap(line, max_len - reserve)):
            # Pieces of one wrapped line are rejoined without a newline.
            sep = "\n" if i == 0 else ""
            candidate = f"{current}{sep}{piece}" if current else piece
            needed = len(candidate) + (len(_PRE_CLOSE) if _pre_is_open(candidate) else 0)
            if needed <= max_len or not current:
                current = candidate
                continue

            carry_pre = _pre_is_open(current)
            parts.append(current + _PRE_CLOSE if carry_pre else current)
            current = _PRE_OPEN + piece if carry_pre else piece
    if current:
        parts.append(current)
    return parts


async def send_telegram_message(
    client: httpx.AsyncClient, config: TelegramConfig, text: str, *, parse_mode: str | None = "HTML"
) -> tuple[bool, dict]:
    payload: dict = {"chat_id": config.chat_id, "text": text, "disable_web_page_preview": True}
    if parse_mode:
        payload["parse_mode"] = parse_mode
    try:
        resp = await client.post(config.send_message_url, json=payload, timeout=TELEGRAM_SEND_TIMEOUT_SECONDS)
        data = resp.json()
    except Exception as e:
        return False, {"ok": False, "error": config.redact(f"{type(e).__name__}: {e}")}
    if not isinstance(data, dict):
        return False, {"ok": False, "error": f"unexpected response status={resp.status_code}"}
    return bool(data.get("ok")), data


async def send_telegram_message_chunked(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    max_len: int = TELEGRAM_MAX_MESSAGE_LEN,
) -> tuple[bool, list[dict]]:
    responses: list[dict] = []
    for part in split_telegram_message(text, max_len=max_len):
        ok, resp = await send_telegram_message(client, config, part)
        responses.append(resp)
        # Later chunks are meaningless without the earlier ones.
        if not ok:
            return False, responses
    return True, responses


def redact_telegram_response(data: dict) -> str:
    """Keep only the fields of a Telegram response that are safe to log."""
    safe: dict = {"ok": data.get("ok")}
    result = data.get("result")
    if isinstance(result, dict):
        safe["result"] = {"message_id": result.get("message_id")}
    for key in ("error_code", "description", "error"):
        if data.get(key):
            safe[key] = data[key]
    return json.dumps(safe, ensure_ascii=False)


class TelegramNotifier:
    """Delivers rendered alert messages to one Telegram chat."""

    def __init__(self, client: httpx.AsyncClient, config: TelegramConfig, *, enabled: bool = True) -> None:
        self.client = client
        self.config = config
        self.enabled = bool(enabled)

    async def send(self, text: str) -> bool:
        ok, responses = await send_telegram_message_chunked(self.client, self.config, text)
        last = responses[-1] if responses else {}
        if ok:
            logger.info("Alerted Telegram", chunks=len(responses), telegram=redact_telegram_response(last))
        else:
            logger.warning(
                "Failed to send message to Telegram",
                chunks_sent=len(responses) - 1,
                telegram=redact_telegram_response(last),
            )
        return ok
