"""Lark / Feishu messenger adapter over the Open API (httpx)."""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

import httpx

from lark_bot.config import LarkConfig
from lark_bot.errors import MessengerError
from lark_bot.log import get_logger
from lark_bot.messenger.base import MessengerAdapter

logger = get_logger(__name__)

# Refresh the tenant token this many seconds before it expires.
TOKEN_REFRESH_MARGIN = 60


class LarkAdapter(MessengerAdapter):
    """Sends, replies to and edits messages for a self-built Lark app."""

    def __init__(self, config: LarkConfig, http: httpx.AsyncClient | None = None):
        self._config = config
        self._http = http or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"), timeout=config.timeout
        )
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def platform_name(self) -> str:
        return "lark"

    async def close(self) -> None:
        await self._http.aclose()

    async def _tenant_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = await self._http.post(
            "/open-apis/auth/v3/tenant_access_token/internal",
            json={"app_id": self._config.app_id, "app_secret": self._config.app_secret},
        )
        data = self._check(response, "tenant_access_token")
        self._token = data["tenant_access_token"]
        self._token_expires_at = time.monotonic() + int(data.get("expire", 0)) - TOKEN_REFRESH_MARGIN
        logger.debug("lark_token_refreshed", expires_in=data.get("expire"))
        return self._token

    @staticmethod
    def _check(response: httpx.Response, action: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise MessengerError(f"Lark {action} returned HTTP {response.status_code}") from None
        code = body.get("code", -1)
        if response.status_code >= 400 or code != 0:
            logger.error("lark_api_error", action=action, code=code, msg=body.get("msg"))
            raise MessengerError(f"Lark {action} failed: {body.get('msg')}", code=code)
        return body

    async def _request(self, method: str, url: str, action: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {await self._tenant_token()}"}
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise MessengerError(f"Lark {action} failed: {e}") from e
        return self._check(response, action)

    async def send_text(self, chat_id: str, text: str) -> None:
        await self._request(
            "POST",
            "/open-apis/im/v1/messages",
            "send_text",
            params={"receive_id_type": "chat_id"},
            json={
                "receive_id": chat_id,
                "msg_type": "text",
                "content": json.dumps({"text": text}, ensure_ascii=False),
            },
        )

    async def reply_card(self, message_id: str, card: str) -> dict[str, Any]:
        body = await self._request(
            "POST",
            f"/open-apis/im/v1/messages/{message_id}/reply",
            "reply_card",
            json={
                "content": card,
                "msg_type": "interactive",
                "reply_in_thread": False,
                "uuid": str(uuid.uuid4()),
            },
        )
        logger.debug("lark_card_replied", message_id=message_id)
        return body

    async def patch_card(self, message_id: str, card: str) -> None:
        await self._request(
            "PATCH",
            f"/open-apis/im/v1/messages/{message_id}",
            "patch_card",
            json={"content": card},
        )

    async def get_image(self, message_id: str, image_key: str) -> bytes:
        headers = {"Authorization": f"Bearer {await self._tenant_token()}"}
        try:
            response = await self._http.get(
                f"/open-apis/im/v1/messages/{message_id}/resources/{image_key}",
                params={"type": "image"},
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise MessengerError(f"Lark get_image failed: {e}") from e
        return response.content
