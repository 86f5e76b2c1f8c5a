from __future__ import annotations

import asyncio
import io
import json
import time
import urllib.error

from fakes import make_relevant

from milesguard.adapters import telegram_bot_channel
from milesguard.adapters.telegram_bot_channel import TelegramBotChannel
from milesguard.core.models import CONFIG_ERROR, SERVICE_DISABLED


class DummyResponse:
    def __enter__(self) -> "DummyResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        "https://api.telegram.org",
        code,
        "error",
        {},
        io.BytesIO(b'{"ok":false,"description":"nope"}'),
    )


def _patch_urlopen(monkeypatch, outcome=None) -> list:
    requests = []

    def fake_urlopen(request, timeout=None):
        requests.append(request)
        if outcome is not None:
            raise outcome
        return DummyResponse()

    monkeypatch.setattr(telegram_bot_channel.urllib.request, "urlopen", fake_urlopen)
    return requests


def test_sends_html_message_to_configured_chat(monkeypatch) -> None:
    requests = _patch_urlopen(monkeypatch)
    channel = TelegramBotChannel("123:abc", "999")

    result = asyncio.run(channel.send_notification(make_relevant()))

    assert result.success
    assert requests[0].full_url == "https://api.telegram.org/bot123:abc/sendMessage"
    payload = json.loads(requests[0].data.decode("utf-8"))
    assert payload["chat_id"] == "999"
    assert payload["parse_mode"] == "HTML"
    assert "Southern Flights" in payload["text"]


def test_missing_token_or_chat_disables_channel(monkeypatch) -> None:
    requests = _patch_urlopen(monkeypatch)

    no_token = asyncio.run(TelegramBotChannel(None, "999").send_notification(make_relevant()))
    no_chat = asyncio.run(TelegramBotChannel("123:abc", None).send_notification(make_relevant()))

    assert no_token.reason == SERVICE_DISABLED
    assert no_chat.reason == SERVICE_DISABLED
    assert not no_token.retryable
    assert requests == []


def test_client_errors_are_config_errors(monkeypatch) -> None:
    _patch_urlopen(monkeypatch, _http_error(403))

    result = asyncio.run(TelegramBotChannel("123:abc", "999").send_notification(make_relevant()))

    assert result.reason == CONFIG_ERROR
    assert "403" in result.error
    assert not result.retryable


def test_server_and_rate_limit_errors_are_retryable(monkeypatch) -> None:
    for code in (429, 502):
        _patch_urlopen(monkeypatch, _http_error(code))
        result = asyncio.run(TelegramBotChannel("123:abc", "999").send_notification(make_relevant()))
        assert not result.success
        assert result.retryable


def test_network_errors_are_retryable(monkeypatch) -> None:
    _patch_urlopen(monkeypatch, urllib.error.URLError("connection refused"))

    result = asyncio.run(TelegramBotChannel("123:abc", "999").send_notification(make_relevant()))

    assert result.retryable
    assert "unreachable" in result.error


def test_rate_limit_spaces_consecutive_messages(monkeypatch) -> None:
    waits = []

    async def fake_sleep(delay: float) -> None:
        waits.append(delay)

    channel = TelegramBotChannel("123:abc", "999", rate_limit_per_minute=30)
    channel._last_sent = time.monotonic()
    monkeypatch.setattr(telegram_bot_channel.asyncio, "sleep", fake_sleep)

    asyncio.run(channel._wait_for_slot())

    assert len(waits) == 1
    assert 0 < waits[0] <= 2.0
