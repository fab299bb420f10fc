from __future__ import annotations

import dataclasses
import json
from typing import Any

import httpx
import pytest

from testflight_monitor.discord_client import DiscordConfig
from testflight_monitor.errors import NotificationError
from testflight_monitor.models import Build, BuildStatus
from testflight_monitor.notifier import (
    DiscordNotifier,
    NotificationDispatcher,
    StatusChangeEvent,
    TelegramNotifier,
    build_dispatcher,
    build_status_change_embed,
    build_status_change_text,
)
from testflight_monitor.settings import MonitorSettings
from testflight_monitor.telegram import TelegramConfig

from conftest import RecordingSink


BUILD = Build(
    id="b-1",
    name="Pitch App",
    version="1.4.0",
    build_number="88",
    url="https://testflight.apple.com/join/PITCH88",
    status=BuildStatus.ACTIVE,
    created_at_ts=1_700_000_000.0,
)


def _event(prev: BuildStatus, new: BuildStatus, message: str = "Build is available for testing (210ms)") -> StatusChangeEvent:
    return StatusChangeEvent(build=BUILD, previous_status=prev, new_status=new, message=message, checked_at_ts=1_700_000_300.0)


def _fields(embed: dict[str, Any]) -> dict[str, str]:
    return {f["name"]: f["value"] for f in embed["fields"]}


def test_embed_for_build_becoming_active() -> None:
    embed = build_status_change_embed(_event(BuildStatus.PENDING, BuildStatus.ACTIVE))
    assert embed["title"] == "✅ TestFlight Status Update"
    assert embed["color"] == 0x00FF00
    assert embed["description"] == "🎉 **Pitch App** is now available for testing!"
    fields = _fields(embed)
    assert fields["App"] == "Pitch App"
    assert fields["Version"] == "1.4.0 (88)"
    assert fields["Status Change"] == "⏳ PENDING → ✅ ACTIVE"
    assert fields["Details"] == "Build is available for testing (210ms)"
    assert fields["TestFlight URL"] == BUILD.url
    assert embed["footer"] == {"text": "Build ID: b-1"}
    assert embed["timestamp"].startswith("2023-11-14T22:")


def test_embed_for_expired_build() -> None:
    embed = build_status_change_embed(_event(BuildStatus.ACTIVE, BuildStatus.EXPIRED, "Build has expired (90ms)"))
    assert embed["title"] == "❌ TestFlight Status Update"
    assert embed["color"] == 0xFF0000
    assert embed["description"] == "⏰ **Pitch App** has expired and is no longer available."
    assert "TestFlight URL" not in _fields(embed)


def test_embed_for_plain_regression() -> None:
    embed = build_status_change_embed(_event(BuildStatus.ACTIVE, BuildStatus.ERROR, "Network error: timeout (30001ms)"))
    assert "description" not in embed
    assert _fields(embed)["Status Change"] == "✅ ACTIVE → ⚠️ ERROR"
    assert "TestFlight URL" not in _fields(embed)


def test_embed_fields_stay_within_discord_limits() -> None:
    long_url = "https://testflight.apple.com/join/" + "Q" * 1500
    event = StatusChangeEvent(
        build=dataclasses.replace(BUILD, url=long_url),
        previous_status=BuildStatus.PENDING,
        new_status=BuildStatus.ACTIVE,
        message="m" * 3000,
        checked_at_ts=1_700_000_300.0,
    )
    fields = _fields(build_status_change_embed(event))
    assert len(fields["TestFlight URL"]) == 1024
    assert fields["TestFlight URL"].startswith("https://testflight.apple.com/join/QQQ")
    assert len(fields["Details"]) == 1024
    assert fields["Details"].endswith("…")
    assert _fields(build_status_change_embed(_event(BuildStatus.ACTIVE, BuildStatus.ERROR, "")))["Details"] == "-"

def test_text_message_carries_the_same_content() -> None:
    text = build_status_change_text(_event(BuildStatus.PENDING, BuildStatus.ACTIVE))
    assert "Pitch App" in text
    assert "1.4.0 (88)" in text
    assert "⏳ PENDING → ✅ ACTIVE" in text
    assert "Build is available for testing (210ms)" in text
    assert BUILD.url in text
    assert "🎉" in text


@pytest.mark.asyncio
async def test_discord_bot_delivery() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg-1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = DiscordNotifier(client, DiscordConfig(bot_token="tok", channel_id="123"))
        await sink.send(_event(BuildStatus.PENDING, BuildStatus.ACTIVE))

    (req,) = seen
    assert req.url.path == "/api/v10/channels/123/messages"
    assert req.headers["authorization"] == "Bot tok"
    payload = json.loads(req.content)
    assert payload["embeds"][0]["title"] == "✅ TestFlight Status Update"


@pytest.mark.asyncio
async def test_discord_webhook_delivery() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg-2"})

    webhook = "https://discord.com/api/webhooks/1/secret"
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await DiscordNotifier(client, DiscordConfig(webhook_url=webhook)).send(_event(BuildStatus.ACTIVE, BuildStatus.EXPIRED))

    (req,) = seen
    assert str(req.url).startswith(webhook)
    assert req.url.params["wait"] == "true"
    assert "authorization" not in req.headers


@pytest.mark.asyncio
async def test_discord_missing_channel_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Unknown Channel"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = DiscordNotifier(client, DiscordConfig(bot_token="tok", channel_id="404"))
        with pytest.raises(NotificationError, match="discord channel not found"):
            await sink.send(_event(BuildStatus.PENDING, BuildStatus.ACTIVE))


@pytest.mark.asyncio
async def test_discord_transport_error_redacts_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("cannot reach discord with sekrit-token", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = DiscordNotifier(client, DiscordConfig(bot_token="sekrit-token", channel_id="1"))
        with pytest.raises(NotificationError) as excinfo:
            await sink.send(_event(BuildStatus.PENDING, BuildStatus.ACTIVE))
    assert "sekrit-token" not in str(excinfo.value)


@pytest.mark.asyncio
async def test_telegram_delivery_and_failure() -> None:
    replies = [{"ok": True, "result": {"message_id": 7}}, {"ok": False, "description": "Bad Request: chat not found"}]
    seen: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=replies[len(seen) - 1])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = TelegramNotifier(client, TelegramConfig(bot_token="123:abc", chat_id="42"))
        await sink.send(_event(BuildStatus.PENDING, BuildStatus.ACTIVE))
        with pytest.raises(NotificationError, match="chat not found"):
            await sink.send(_event(BuildStatus.ACTIVE, BuildStatus.EXPIRED))

    assert seen[0]["chat_id"] == "42"
    assert "Pitch App" in seen[0]["text"]


@pytest.mark.asyncio
async def test_dispatcher_isolates_failing_sinks(log_events: list[dict[str, Any]]) -> None:
    broken = RecordingSink("broken", fail=True)
    healthy = RecordingSink("healthy")
    dispatcher = NotificationDispatcher([broken, healthy])

    delivered = await dispatcher.emit(_event(BuildStatus.PENDING, BuildStatus.ACTIVE))

    assert delivered == 1
    assert len(healthy.events) == 1
    failures = [e for e in log_events if e["event"] == "Notification delivery failed"]
    assert failures and failures[0]["sink"] == "broken"


@pytest.mark.asyncio
async def test_dispatcher_swallows_unexpected_sink_errors() -> None:
    class Exploding:
        name = "exploding"

        async def send(self, event: StatusChangeEvent) -> None:
            raise RuntimeError("boom")

    assert await NotificationDispatcher([Exploding()]).emit(_event(BuildStatus.ACTIVE, BuildStatus.ERROR)) == 0


@pytest.mark.asyncio
async def test_build_dispatcher_only_wires_configured_sinks(tmp_path) -> None:
    base = dict(
        db_path=str(tmp_path / "x.db"),
        discord_bot_token="",
        discord_channel_id="",
        discord_webhook_url="",
        telegram_bot_token="",
        telegram_chat_id="",
    )
    async with httpx.AsyncClient() as client:
        assert build_dispatcher(MonitorSettings(**base), client).sinks == []

        both = MonitorSettings(**{**base, "discord_webhook_url": "https://discord.test/hook", "telegram_bot_token": "t", "telegram_chat_id": "1"})
        assert [s.name for s in build_dispatcher(both, client).sinks] == ["discord", "telegram"]

        disabled = MonitorSettings(**{**base, "discord_bot_token": "t", "discord_channel_id": "1", "notifications_enabled": False})
        assert build_dispatcher(disabled, client).sinks == []
