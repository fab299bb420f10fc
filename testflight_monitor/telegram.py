from __future__ import annotations

from dataclasses import dataclass

import httpx

from .errors import NotificationError


TELEGRAM_API_BASE_URL = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LEN = 4096


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str
    api_base_url: str = TELEGRAM_API_BASE_URL
    timeout_seconds: float = 15.0


def message_parts(text: str, *, limit: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Pack whole lines into messages of at most ``limit`` characters.

    A single line longer than ``limit`` is hard-wrapped.
    """
    limit = max(1, int(limit))
    parts: list[str] = []
    current = ""
    for line in (text or "").strip().splitlines():
        while len(line) > limit:
            if current.strip():
                parts.append(current.rstrip())
            current = ""
            parts.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            parts.append(current.rstrip())
            current = line
        else:
            current = candidate
    if current.strip():
        parts.append(current.rstrip())
    return parts


def _redact(config: TelegramConfig, text: str) -> str:
    if config.bot_token:
        return text.replace(config.bot_token, "<redacted>")
    return text


async def send_telegram_message(client: httpx.AsyncClient, config: TelegramConfig, text: str) -> list[int]:
    """Send ``text`` to the configured chat, split across messages when needed.

    Returns the Telegram message ids. Raises NotificationError on the first part
    Telegram does not accept; later parts are not sent.
    """
    if not config.bot_token or not config.chat_id:
        raise NotificationError("telegram not configured")
    parts = message_parts(text)
    if not parts:
        raise NotificationError("telegram message is empty")

    url = f"{config.api_base_url.rstrip('/')}/bot{config.bot_token}/sendMessage"
    message_ids: list[int] = []
    for part in parts:
        payload = {"chat_id": config.chat_id, "text": part, "disable_web_page_preview": True}
        try:
            resp = await client.post(url, json=payload, timeout=config.timeout_seconds)
        except httpx.HTTPError as e:
            raise NotificationError(_redact(config, f"telegram request failed: {type(e).__name__}: {e}")) from e
        try:
            data = resp.json()
        except ValueError as e:
            raise NotificationError(f"telegram returned a non-JSON reply: HTTP {resp.status_code}") from e
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description", "") if isinstance(data, dict) else ""
            raise NotificationError(_redact(config, f"telegram rejected message: HTTP {resp.status_code} {description}".rstrip()))
        result = data.get("result")
        if isinstance(result, dict) and isinstance(result.get("message_id"), int):
            message_ids.append(result["message_id"])
    return message_ids
