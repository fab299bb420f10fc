"""Status-change events and their delivery to notification sinks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

import httpx
import structlog

from .discord_client import DiscordConfig, send_discord_embed
from .errors import NotificationError
from .models import STATUS_COLORS, Build, BuildStatus, status_label
from .settings import MonitorSettings
from .telegram import TelegramConfig, send_telegram_message


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StatusChangeEvent:
    build: Build
    previous_status: BuildStatus
    new_status: BuildStatus
    message: str
    checked_at_ts: float

    @property
    def became_active(self) -> bool:
        return self.new_status is BuildStatus.ACTIVE and self.previous_status is not BuildStatus.ACTIVE

    @property
    def expired(self) -> bool:
        return self.new_status is BuildStatus.EXPIRED


class NotificationSink(Protocol):
    name: str

    async def send(self, event: StatusChangeEvent) -> None: ...


def _headline(event: StatusChangeEvent) -> str | None:
    if event.became_active:
        return f"🎉 {event.build.name} is now available for testing!"
    if event.expired:
        return f"⏰ {event.build.name} has expired and is no longer available."
    return None


def build_status_change_text(event: StatusChangeEvent) -> str:
    b = event.build
    lines = [f"{status_label(event.new_status).split(' ', 1)[0]} TestFlight Status Update"]
    headline = _headline(event)
    if headline:
        lines.append(headline)
    lines.extend(
        [
            f"App: {b.name}",
            f"Version: {b.version} ({b.build_number})",
            f"Status: {status_label(event.previous_status)} → {status_label(event.new_status)}",
            f"Details: {event.message}",
        ]
    )
    if event.became_active:
        lines.append(f"TestFlight URL: {b.url}")
    lines.append(f"Build ID: {b.id}")
    return "\n".join(lines).strip()


EMBED_FIELD_MAX_CHARS = 1024


def _field_value(text: str) -> str:
    text = text or "-"
    if len(text) <= EMBED_FIELD_MAX_CHARS:
        return text
    return text[: EMBED_FIELD_MAX_CHARS - 1] + "…"


def build_status_change_embed(event: StatusChangeEvent) -> dict[str, Any]:
    b = event.build
    embed: dict[str, Any] = {
        "title": f"{status_label(event.new_status).split(' ', 1)[0]} TestFlight Status Update",
        "color": STATUS_COLORS.get(event.new_status, 0x808080),
        "fields": [
            {"name": "App", "value": b.name, "inline": True},
            {"name": "Version", "value": f"{b.version} ({b.build_number})", "inline": True},
            {
                "name": "Status Change",
                "value": f"{status_label(event.previous_status)} → {status_label(event.new_status)}",
                "inline": False,
            },
            {"name": "Details", "value": _field_value(event.message), "inline": False},
        ],
        "footer": {"text": f"Build ID: {b.id}"},
        "timestamp": datetime.fromtimestamp(event.checked_at_ts, tz=timezone.utc).isoformat(),
    }
    headline = _headline(event)
    if headline:
        # Discord renders **bold** in descriptions.
        embed["description"] = headline.replace(b.name, f"**{b.name}**", 1)
    if event.became_active:
        embed["fields"].append({"name": "TestFlight URL", "value": _field_value(b.url), "inline": False})
    return embed


class DiscordNotifier:
    name = "discord"

    def __init__(self, client: httpx.AsyncClient, config: DiscordConfig) -> None:
        self.client = client
        self.config = config

    async def send(self, event: StatusChangeEvent) -> None:
        await send_discord_embed(self.client, self.config, build_status_change_embed(event))
        logger.info("Discord notification sent", build_id=event.build.id, status=event.new_status.value)


class TelegramNotifier:
    name = "telegram"

    def __init__(self, client: httpx.AsyncClient, config: TelegramConfig) -> None:
        self.client = client
        self.config = config

    async def send(self, event: StatusChangeEvent) -> None:
        await send_telegram_message(self.client, self.config, build_status_change_text(event))
        logger.info("Telegram notification sent", build_id=event.build.id, status=event.new_status.value)


class NotificationDispatcher:
    """Fans one event out to every sink. A failing sink never affects the caller or the other sinks."""

    def __init__(self, sinks: Iterable[NotificationSink] = ()) -> None:
        self.sinks: list[NotificationSink] = list(sinks)

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    async def emit(self, event: StatusChangeEvent) -> int:
        """Deliver to all sinks; returns how many accepted the event."""
        logger.info(
            "Build status changed",
            build_id=event.build.id,
            build=event.build.name,
            previous=event.previous_status.value,
            new=event.new_status.value,
            detail=event.message,
        )
        delivered = 0
        for sink in self.sinks:
            try:
                await sink.send(event)
                delivered += 1
            except NotificationError as e:
                logger.error("Notification delivery failed", sink=sink.name, build_id=event.build.id, error=str(e))
            except Exception as e:
                logger.error(
                    "Unexpected notification sink error",
                    sink=getattr(sink, "name", type(sink).__name__),
                    build_id=event.build.id,
                    error=f"{type(e).__name__}: {e}",
                )
        return delivered


def build_dispatcher(settings: MonitorSettings, client: httpx.AsyncClient) -> NotificationDispatcher:
    dispatcher = NotificationDispatcher()
    if not settings.notifications_enabled:
        logger.info("Notifications disabled")
        return dispatcher
    if settings.discord_configured:
        dispatcher.add_sink(
            DiscordNotifier(
                client,
                DiscordConfig(
                    bot_token=settings.discord_bot_token,
                    channel_id=settings.discord_channel_id,
                    webhook_url=settings.discord_webhook_url,
                ),
            )
        )
    else:
        logger.warning("Discord not configured; status changes will not be posted to Discord")
    if settings.telegram_configured:
        dispatcher.add_sink(
            TelegramNotifier(client, TelegramConfig(bot_token=settings.telegram_bot_token, chat_id=settings.telegram_chat_id))
        )
    return dispatcher
