from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from .errors import NotificationError


DISCORD_API_BASE_URL = "https://discord.com/api/v10"


@dataclass(frozen=True)
class DiscordConfig:
    """Either a bot token plus channel id, or an incoming webhook URL."""

    bot_token: str = ""
    channel_id: str = ""
    webhook_url: str = ""
    api_base_url: str = DISCORD_API_BASE_URL
    timeout_seconds: float = 15.0


def _redact(config: DiscordConfig, text: str) -> str:
    out = text
    for secret in (config.bot_token, config.webhook_url):
        if secret:
            out = out.replace(secret, "<redacted>")
    return out


async def send_discord_embed(client: httpx.AsyncClient, config: DiscordConfig, embed: dict[str, Any]) -> dict[str, Any]:
    """Post one embed. Raises NotificationError when Discord does not accept it."""
    payload = {"embeds": [embed]}
    if config.webhook_url:
        url = config.webhook_url
        headers: dict[str, str] = {}
        params = {"wait": "true"}
    else:
        if not config.bot_token or not config.channel_id:
            raise NotificationError("discord not configured")
        url = f"{config.api_base_url.rstrip('/')}/channels/{config.channel_id}/messages"
        headers = {"Authorization": f"Bot {config.bot_token}"}
        params = {}

    try:
        resp = await client.post(url, json=payload, headers=headers, params=params, timeout=config.timeout_seconds)
    except httpx.HTTPError as e:
        raise NotificationError(_redact(config, f"discord request failed: {type(e).__name__}: {e}")) from e

    if resp.status_code == 404:
        raise NotificationError(f"discord channel not found (channel_id={config.channel_id or 'webhook'})")
    if resp.status_code >= 400:
        raise NotificationError(f"discord rejected message: HTTP {resp.status_code} {resp.text[:300]}")
    try:
        data = resp.json()
    except ValueError:
        data = {}
    return data if isinstance(data, dict) else {}
