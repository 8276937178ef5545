"""Tests for the Lark Open API adapter and the console adapter."""

import io
import json

import httpx
import pytest

from lark_bot.config import LarkConfig
from lark_bot.errors import MessengerError
from lark_bot.messenger.card import build_card
from lark_bot.messenger.console import ConsoleAdapter
from lark_bot.messenger.lark import LarkAdapter


class FakeLark:
    def __init__(self, send_code=0):
        self.requests = []
        self.token_calls = 0
        self.send_code = send_code

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/tenant_access_token/internal"):
            self.token_calls += 1
            return httpx.Response(200, json={"code": 0, "tenant_access_token": "t-1", "expire": 7200})
        if path.endswith("/reply"):
            return httpx.Response(200, json={"code": 0, "data": {"message_id": "om_card"}})
        if "/resources/" in path:
            return httpx.Response(200, content=b"image-bytes")
        return httpx.Response(200, json={"code": self.send_code, "msg": "ok" if not self.send_code else "bad"})


def make_adapter(fake):
    http = httpx.AsyncClient(base_url="https://open.test", transport=httpx.MockTransport(fake))
    return LarkAdapter(LarkConfig(app_id="cli_app", app_secret="secret"), http=http)


@pytest.mark.asyncio
async def test_lark_send_text_caches_token():
    fake = FakeLark()
    adapter = make_adapter(fake)

    await adapter.send_text("oc_1", "hello")
    await adapter.send_text("oc_1", "again")

    assert fake.token_calls == 1
    send = fake.requests[1]
    assert send.headers["Authorization"] == "Bearer t-1"
    assert send.url.params["receive_id_type"] == "chat_id"
    body = json.loads(send.content)
    assert body["receive_id"] == "oc_1"
    assert json.loads(body["content"]) == {"text": "hello"}


@pytest.mark.asyncio
async def test_lark_reply_and_patch_card():
    fake = FakeLark()
    adapter = make_adapter(fake)
    card = build_card("Pending", "t", "...", "", False)

    response = await adapter.reply_card("om_1", card)
    await adapter.patch_card("om_card", card)

    assert response["data"]["message_id"] == "om_card"
    reply, patch = fake.requests[1], fake.requests[2]
    assert reply.url.path == "/open-apis/im/v1/messages/om_1/reply"
    assert json.loads(reply.content)["msg_type"] == "interactive"
    assert patch.method == "PATCH"
    assert patch.url.path == "/open-apis/im/v1/messages/om_card"


@pytest.mark.asyncio
async def test_lark_get_image():
    adapter = make_adapter(FakeLark())

    assert await adapter.get_image("om_1", "img_1") == b"image-bytes"


@pytest.mark.asyncio
async def test_lark_error_code_raises():
    adapter = make_adapter(FakeLark(send_code=230002))

    with pytest.raises(MessengerError) as exc_info:
        await adapter.send_text("oc_1", "hello")

    assert exc_info.value.code == 230002


@pytest.mark.asyncio
async def test_console_prints_only_final_card():
    out = io.StringIO()
    console = ConsoleAdapter(out=out)

    response = await console.reply_card("local-1", "{}")
    await console.patch_card("console-1", build_card("R", "t", "partial", "", False))
    await console.patch_card("console-1", build_card("R", "12:00", "done", "input:1 output:1 ", True))

    assert response["data"]["message_id"] == "console-1"
    assert out.getvalue() == ".done\n  -- input:1 output:1 12:00\n"
