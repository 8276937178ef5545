"""Tests for the conversation reducer: commands, bounds and prompt selection."""

import base64
import json

import pytest

from lark_bot.ai.conversation import (
    EMPTY_REPLY,
    QUOTA_REPLY,
    RESET_REPLY,
    SYSTEM_PROMPT_REPLY,
    ChatTurn,
    ConversationReducer,
    Reply,
    append_turn,
    strip_mentions,
    trim_history,
)
from lark_bot.config import ChatConfig
from lark_bot.errors import QuotaExceededError
from lark_bot.log import is_debug_mode, set_debug_mode
from lark_bot.messenger.models import IncomingMessage
from lark_bot.storage.models import TokenUsage


def text(body, chat_id="oc_1"):
    return IncomingMessage(chat_id=chat_id, message_id="om_1", message_type="text", text=body)


def history(n):
    roles = ("user", "assistant")
    return [{"role": roles[i % 2], "content": f"m{i}"} for i in range(n)]


@pytest.fixture
def reducer(store, usage, chat_config):
    return ConversationReducer(store, usage, chat_config, "cli_app")


def test_trim_history_keeps_newest():
    assert trim_history(history(4), 2) == history(4)[2:]
    assert trim_history(history(2), 5) == history(2)


def test_append_turn_quota_boundary():
    message = {"role": "user", "content": "next"}

    assert len(append_turn("c", history(6), message, quota=6, max_len=100)) == 7
    with pytest.raises(QuotaExceededError):
        append_turn("c", history(7), message, quota=6, max_len=100)


def test_strip_mentions():
    assert strip_mentions("@_user_1 hello @_user_22 there") == "hello there"


@pytest.mark.asyncio
async def test_first_text_message_builds_single_turn(reducer):
    outcome = await reducer.reduce(text("@_user_1 hi"))

    assert outcome == ChatTurn(
        chat_id="oc_1",
        messages=[{"role": "user", "content": "hi"}],
        system_prompt="be brief",
    )


@pytest.mark.asyncio
async def test_history_is_trimmed_to_retained_length(reducer, store, chat_config):
    await store.save("oc_1", history(5), None)

    outcome = await reducer.reduce(text("latest"))

    assert isinstance(outcome, ChatTurn)
    assert len(outcome.messages) == chat_config.max_retained_messages == 5
    assert outcome.messages[-1] == {"role": "user", "content": "latest"}
    assert outcome.messages[0] == {"role": "assistant", "content": "m1"}


@pytest.mark.asyncio
async def test_quota_exceeded_replies_without_touching_state(reducer, store):
    await store.save("oc_1", history(7), None)
    saves = store.saves

    outcome = await reducer.reduce(text("one more"))

    assert outcome == Reply(QUOTA_REPLY)
    assert store.saves == saves
    assert len(store.records["oc_1"].messages) == 7


@pytest.mark.asyncio
async def test_history_at_quota_is_still_allowed(reducer, store):
    await store.save("oc_1", history(6), None)

    outcome = await reducer.reduce(text("ok"))

    assert isinstance(outcome, ChatTurn)


@pytest.mark.asyncio
async def test_reset_clears_history_and_prompt(reducer, store):
    await store.save("oc_1", history(4), "pirate")

    outcome = await reducer.reduce(text("/rs"))

    assert outcome == Reply(RESET_REPLY)
    record = store.records["oc_1"]
    assert record.messages == []
    assert record.system_prompt is None


@pytest.mark.asyncio
async def test_reset_requires_exact_match(reducer):
    outcome = await reducer.reduce(text("/rs please"))

    assert isinstance(outcome, ChatTurn)


@pytest.mark.asyncio
async def test_system_prompt_override_keeps_history(reducer, store):
    await store.save("oc_1", history(2), None)

    outcome = await reducer.reduce(text("/sp talk like a pirate"))

    assert outcome == Reply(SYSTEM_PROMPT_REPLY)
    assert store.records["oc_1"].messages == history(2)
    assert store.records["oc_1"].system_prompt == "talk like a pirate"

    turn = await reducer.reduce(text("hello"))
    assert turn.system_prompt == "talk like a pirate"


@pytest.mark.asyncio
async def test_system_prompt_without_text_shows_current(reducer, store):
    outcome = await reducer.reduce(text("/sp"))

    assert outcome == Reply("Current system prompt: be brief")
    assert store.saves == 0


@pytest.mark.asyncio
async def test_token_count_reports_usage(reducer, usage):
    await usage.put("cli_app", TokenUsage(input_tokens=15, output_tokens=25))

    outcome = await reducer.reduce(text("/tc"))

    assert isinstance(outcome, Reply)
    assert json.loads(outcome.text) == {"input_tokens": 15, "output_tokens": 25}


@pytest.mark.asyncio
async def test_debug_command_toggles_debug_mode(reducer):
    try:
        outcome = await reducer.reduce(text("/debug on"))
        assert is_debug_mode()
        assert "enabled" in outcome.text

        outcome = await reducer.reduce(text("/debug off"))
        assert not is_debug_mode()
        assert "disabled" in outcome.text
    finally:
        set_debug_mode(False)


@pytest.mark.asyncio
async def test_empty_text_after_mentions(reducer):
    assert await reducer.reduce(text("@_user_1 ")) == Reply(EMPTY_REPLY)


@pytest.mark.asyncio
async def test_unsupported_message_type(reducer, store):
    incoming = IncomingMessage(chat_id="oc_1", message_id="om_1", message_type="file")

    outcome = await reducer.reduce(incoming)

    assert outcome == Reply("'file' format is unsupported.")
    assert store.saves == 0


@pytest.mark.asyncio
async def test_image_message_uses_description_prompt(store, usage, chat_config):
    async def loader(message_id, image_key):
        assert (message_id, image_key) == ("om_1", "img_v2_1")
        return b"\x89PNG"

    reducer = ConversationReducer(store, usage, chat_config, "cli_app", image_loader=loader)
    incoming = IncomingMessage(
        chat_id="oc_1", message_id="om_1", message_type="image", image_key="img_v2_1"
    )

    outcome = await reducer.reduce(incoming)

    assert isinstance(outcome, ChatTurn)
    image_block, prompt_block = outcome.messages[-1]["content"]
    assert image_block["source"]["data"] == base64.b64encode(b"\x89PNG").decode()
    assert prompt_block == {"type": "text", "text": chat_config.image_prompt}


@pytest.mark.asyncio
async def test_commit_appends_reply_and_persists_prompt(reducer, store):
    turn = await reducer.reduce(text("hi"))

    messages = await reducer.commit(turn, "  hello there")

    assert messages[-1] == {"role": "assistant", "content": "hello there"}
    record = store.records["oc_1"]
    assert record.messages == messages
    assert record.system_prompt == "be brief"


@pytest.fixture
def roomy_reducer(store, usage):
    config = ChatConfig(max_seq=2, max_chat_quota=100)
    return ConversationReducer(store, usage, config, "cli_app")


@pytest.mark.asyncio
async def test_prompt_sequence_is_capped_at_retained_messages(roomy_reducer):
    for i in range(6):
        turn = await roomy_reducer.reduce(text(f"q{i}"))
        await roomy_reducer.commit(turn, f"a{i}")

    turn = await roomy_reducer.reduce(text("latest"))

    assert len(turn.messages) == 2 * 2 + 1
    assert turn.messages[0]["role"] == "user"
    assert turn.messages[-1] == {"role": "user", "content": "latest"}


@pytest.mark.asyncio
async def test_stored_history_holds_at_most_one_reply_past_the_cap(roomy_reducer, store):
    for i in range(10):
        turn = await roomy_reducer.reduce(text(f"q{i}"))
        await roomy_reducer.commit(turn, f"a{i}")
        assert len(store.records["oc_1"].messages) <= 2 * 2 + 2

    stored = store.records["oc_1"].messages
    assert len(stored) == 2 * 2 + 2
    assert stored[0]["role"] == "user"
    assert stored[-1] == {"role": "assistant", "content": "a9"}
