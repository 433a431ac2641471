"""Telegram Bot API sender."""

from __future__ import annotations

from typing import Any

import aiohttp

from wakeline.delivery import DeliveryError
from wakeline.types import SendResult

API_BASE = "https://api.telegram.org"


class TelegramSender:
    name = "telegram"

    def __init__(self, token: str, *, api_base: str = API_BASE, timeout: float = 30.0) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def send_message(
        self, to: str, text: str, *, media_url: str | None = None
    ) -> SendResult:
        """Send text, or a photo captioned with *text* when *media_url* is set."""
        chat_id = to.strip()
        if not chat_id:
            raise DeliveryError("Telegram recipient is empty")
        if media_url:
            method = "sendPhoto"
            body: dict[str, Any] = {"chat_id": chat_id, "photo": media_url}
            if text:
                body["caption"] = text
        else:
            method = "sendMessage"
            body = {"chat_id": chat_id, "text": text}

        data = await self._call(method, body)
        result = data.get("result") or {}
        chat = result.get("chat") or {}
        return SendResult(
            message_id=str(result.get("message_id", "unknown")),
            channel_id=str(chat.get("id", chat_id)),
        )

    async def _call(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._api_base}/bot{self._token}/{method}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(url, json=body) as resp:
                    try:
                        data = await resp.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        data = {"ok": False, "description": (await resp.text())[:500]}
        except (aiohttp.ClientError, OSError) as exc:
            raise DeliveryError(f"Telegram {method} failed: {exc}") from exc

        if resp.status >= 400 or not data.get("ok"):
            detail = data.get("description") or f"HTTP {resp.status}"
            raise DeliveryError(f"Telegram {method} failed: {detail}")
        return data
