"""Discord REST sender.

Recipients are ``channel:<id>``, ``user:<id>`` (sent as a DM), a mention
``<@id>``, or a bare id, which is treated as a channel. A ``discord:``
prefix is accepted and stripped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal

import aiohttp

from wakeline.delivery import DeliveryError
from wakeline.types import SendResult
from wakeline.utils import chunk_text

API_BASE = "https://discord.com/api/v10"
DISCORD_TEXT_LIMIT = 2000

_MENTION_RE = re.compile(r"^<@!?(\d+)>$")


@dataclass(frozen=True)
class DiscordRecipient:
    kind: Literal["user", "channel"]
    id: str


def parse_recipient(raw: str) -> DiscordRecipient:
    value = raw.strip()
    if value.lower().startswith("discord:"):
        value = value[len("discord:") :].strip()
    if not value:
        raise DeliveryError("Discord recipient is empty")
    if m := _MENTION_RE.match(value):
        return DiscordRecipient("user", m.group(1))
    if value.startswith("user:"):
        return DiscordRecipient("user", value[len("user:") :].strip())
    if value.startswith("channel:"):
        return DiscordRecipient("channel", value[len("channel:") :].strip())
    if value.startswith("@"):
        return DiscordRecipient("user", value[1:].strip())
    return DiscordRecipient("channel", value)


class DiscordSender:
    name = "discord"

    def __init__(self, token: str, *, api_base: str = API_BASE, timeout: float = 30.0) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def send_message(
        self, to: str, text: str, *, media_url: str | None = None
    ) -> SendResult:
        """Post *text* in 2000-character chunks; a media URL rides on the last one."""
        recipient = parse_recipient(to)
        async with aiohttp.ClientSession(
            timeout=self._timeout,
            headers={"Authorization": f"Bot {self._token}"},
        ) as session:
            channel_id = recipient.id
            if recipient.kind == "user":
                dm = await self._request(
                    session, "POST", "/users/@me/channels", {"recipient_id": recipient.id}
                )
                channel_id = str(dm["id"])

            chunks = chunk_text(text, DISCORD_TEXT_LIMIT) if text else []
            if media_url:
                if chunks:
                    chunks[-1] = f"{chunks[-1]}\n{media_url}"
                else:
                    chunks = [media_url]
            if not chunks:
                raise DeliveryError("Discord message is empty")

            last: dict[str, Any] = {}
            for chunk in chunks:
                last = await self._request(
                    session, "POST", f"/channels/{channel_id}/messages", {"content": chunk}
                )
        return SendResult(message_id=str(last.get("id", "unknown")), channel_id=channel_id)

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        path: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            async with session.request(method, f"{self._api_base}{path}", json=body) as resp:
                if resp.status >= 400:
                    detail = (await resp.text())[:500]
                    raise DeliveryError(f"Discord {method} {path} failed ({resp.status}): {detail}")
                try:
                    return await resp.json()
                except (aiohttp.ContentTypeError, ValueError):
                    return {}
        except (aiohttp.ClientError, OSError) as exc:
            raise DeliveryError(f"Discord {method} {path} failed: {exc}") from exc
