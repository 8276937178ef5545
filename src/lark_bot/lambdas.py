"""Serverless entry points: webhook (API Gateway proxy) and chat (SNS subscriber)."""

from __future__ import annotations

import asyncio
import base64
import os
from typing import Any

from lark_bot.app import LarkBotApp
from lark_bot.config import AppConfig, config_from_env, load_config
from lark_bot.log import get_logger, setup_logging
from lark_bot.messenger.models import FanoutMessage

logger = get_logger(__name__)

CONFIG_PATH_ENV = "LARK_BOT_CONFIG"


def _load() -> AppConfig:
    path = os.environ.get(CONFIG_PATH_ENV)
    config = load_config(path) if path else config_from_env()
    setup_logging(config.log_level, json_output=True, debug=config.debug_mode)
    return config


def _request_body(event: dict[str, Any]) -> str | None:
    body = event.get("body")
    if body and event.get("isBase64Encoded"):
        return base64.b64decode(body).decode("utf-8")
    return body


async def _handle_callback(config: AppConfig, body: str | None) -> dict[str, Any]:
    app = LarkBotApp(config)
    await app.start()
    try:
        response = await app.callback.handle(body)
    finally:
        await app.close()
    return response.to_lambda()


async def _handle_chat(config: AppConfig, messages: list[FanoutMessage]) -> list[bool]:
    app = LarkBotApp(config)
    await app.start()
    try:
        return [await app.chat.handle(message) for message in messages]
    finally:
        await app.close()


def callback_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    config = _load()
    logger.debug("callback_invoked", request_id=getattr(context, "aws_request_id", None))
    return asyncio.run(_handle_callback(config, _request_body(event)))


def chat_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    config = _load()
    messages = [
        FanoutMessage.from_json(record["Sns"]["Message"])
        for record in event.get("Records", [])
        if record.get("Sns", {}).get("Message")
    ]
    logger.info(
        "chat_invoked",
        records=len(messages),
        request_id=getattr(context, "aws_request_id", None),
    )
    results = asyncio.run(_handle_chat(config, messages))
    return {"processed": len(results), "succeeded": sum(results)}
