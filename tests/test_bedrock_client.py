"""Tests for the Bedrock Claude streaming client against a fake SDK stream."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from lark_bot.ai.bedrock import BEDROCK_METRICS_KEY, BedrockClaudeClient
from lark_bot.config import PrimaryModelConfig
from lark_bot.errors import BackendStreamError, MessengerError


class FixedRng:
    def randint(self, low, high):
        return 10


class FakeStream:
    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for event in self._events:
            yield event


def stream_events(deltas, stop_extra=None, with_stop=True):
    events = [
        SimpleNamespace(
            type="message_start",
            message=SimpleNamespace(role="assistant", usage=SimpleNamespace(input_tokens=12)),
        )
    ]
    events += [
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(text=d)) for d in deltas
    ]
    events.append(SimpleNamespace(type="message_delta", usage=SimpleNamespace(output_tokens=30)))
    if with_stop:
        events.append(SimpleNamespace(type="message_stop", model_extra=stop_extra or {}))
    return events


def make_client(events=None, error=None):
    sdk = MagicMock()
    sdk.messages.create = AsyncMock(return_value=FakeStream(events or []), side_effect=error)
    config = PrimaryModelConfig(
        region="us-east-1", access_key_id="ak", secret_access_key="sk", model_id="claude-test"
    )
    return BedrockClaudeClient(config, client=sdk, rng=FixedRng()), sdk


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, text, end_note, is_final):
        self.calls.append((text, end_note, is_final))


MESSAGES = [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_flushes_periodically_and_finishes_with_usage():
    deltas = [f"t{i} " for i in range(12)]
    client, sdk = make_client(stream_events(deltas))
    recorder = Recorder()

    result = await client.invoke_stream(MESSAGES, "", recorder)

    full = "".join(deltas)
    assert recorder.calls[0] == ("t0 ", "", False)
    assert recorder.calls[1] == ("".join(deltas[:11]), "", False)
    assert recorder.calls[-1] == (full, "input:12 output:30 ", True)
    assert len(recorder.calls) == 3
    assert result.text == full
    assert (result.usage.input_tokens, result.usage.output_tokens) == (12, 30)
    assert "system" not in sdk.messages.create.call_args.kwargs


@pytest.mark.asyncio
async def test_invocation_metrics_take_precedence():
    metrics = {BEDROCK_METRICS_KEY: {"inputTokenCount": 100, "outputTokenCount": 200}}
    client, sdk = make_client(stream_events(["hello"], stop_extra=metrics))
    recorder = Recorder()

    result = await client.invoke_stream(MESSAGES, "be brief", recorder)

    assert recorder.calls[-1] == ("hello", "input:100 output:200 ", True)
    assert result.usage.output_tokens == 200
    kwargs = sdk.messages.create.call_args.kwargs
    assert kwargs["system"] == "be brief"
    assert kwargs["stream"] is True
    assert kwargs["model"] == "claude-test"


@pytest.mark.asyncio
async def test_access_denied_returns_none_without_final_callback():
    response = httpx.Response(403, request=httpx.Request("POST", "https://bedrock.test"))
    error = anthropic.PermissionDeniedError("denied", response=response, body=None)
    client, _ = make_client(error=error)
    recorder = Recorder()

    result = await client.invoke_stream(MESSAGES, "", recorder)

    assert result is None
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_stream_without_stop_event_fails():
    client, _ = make_client(stream_events(["partial"], with_stop=False))
    recorder = Recorder()

    with pytest.raises(BackendStreamError):
        await client.invoke_stream(MESSAGES, "", recorder)

    assert not any(final for _, _, final in recorder.calls)


@pytest.mark.asyncio
async def test_stream_is_closed_when_the_callback_fails():
    client, sdk = make_client(stream_events(["a", "b"]))
    stream = sdk.messages.create.return_value

    async def failing_edit(text, end_note, is_final):
        raise MessengerError("card patch failed", code=230002)

    with pytest.raises(MessengerError):
        await client.invoke_stream(MESSAGES, "", failing_edit)

    assert stream.closed is True


@pytest.mark.asyncio
async def test_stream_is_closed_after_success():
    client, sdk = make_client(stream_events(["done"]))

    await client.invoke_stream(MESSAGES, "", Recorder())

    assert sdk.messages.create.return_value.closed is True
