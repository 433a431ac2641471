"""Delivery target resolution and per-surface fan-out of agent replies."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from wakeline.logger import logger
from wakeline.types import (
    PRIMARY_SURFACE,
    SURFACES,
    WEB_SURFACE,
    ReplyPayload,
    SendResult,
    SessionEntry,
)
from wakeline.utils import chunk_text, normalize_e164

TELEGRAM_TEXT_LIMIT = 4000

_SURFACE_LABELS = {
    "whatsapp": "WhatsApp",
    "telegram": "Telegram",
    "discord": "Discord",
}

_MISSING_RECIPIENT_ERRORS = {
    "whatsapp": "Cron delivery to WhatsApp requires a recipient.",
    "telegram": "Cron delivery to Telegram requires a chatId.",
    "discord": (
        "Cron delivery to Discord requires --channel discord and --to <channelId|user:ID>"
    ),
}

_SKIPPED_SUMMARIES = {
    "whatsapp": "Delivery skipped (no WhatsApp recipient).",
    "telegram": "Delivery skipped (no Telegram chatId).",
    "discord": "Delivery skipped (no Discord destination).",
}


class DeliveryError(Exception):
    """Sending a reply to a messaging surface failed."""


@runtime_checkable
class MessageSender(Protocol):
    """Outbound half of a messaging surface."""

    name: str

    async def send_message(
        self, to: str, text: str, *, media_url: str | None = None
    ) -> SendResult: ...


@dataclass(frozen=True)
class DeliveryTarget:
    channel: str
    to: str | None


def missing_recipient_error(channel: str) -> str:
    label = _SURFACE_LABELS.get(channel, channel)
    return _MISSING_RECIPIENT_ERRORS.get(channel, f"Cron delivery to {label} requires a recipient.")


def skipped_summary(channel: str) -> str:
    label = _SURFACE_LABELS.get(channel, channel)
    return _SKIPPED_SUMMARIES.get(channel, f"Delivery skipped (no {label} recipient).")


def sanitize_primary_recipient(to: str | None, allow_from: Sequence[str]) -> str | None:
    """Clamp a WhatsApp recipient to the allowlist.

    ``"*"`` passes anything through, and so does an allowlist with no usable
    numbers. Otherwise an unlisted (or missing) recipient is replaced by the
    first allowlisted number; we never deliver to an unlisted party.
    """
    if "*" in allow_from:
        return to
    allowed = [n for n in (normalize_e164(v) for v in allow_from) if len(n) > 1]
    if not allowed:
        return to
    if not to:
        return allowed[0]
    normalized = normalize_e164(to)
    if normalized in allowed:
        return normalized
    return allowed[0]


def resolve_delivery_target(
    requested_channel: str | None,
    explicit_to: str | None,
    last_route: SessionEntry | None,
    *,
    allow_from: Sequence[str] = (),
) -> DeliveryTarget:
    """Pick the surface and recipient for a job's result.

    An explicit ``to`` wins over the session's last recipient. A known
    surface wins over the session's last channel, which in turn wins over
    the primary surface unless it was the undeliverable web surface.
    """
    to = explicit_to.strip() if explicit_to and explicit_to.strip() else None
    if to is None and last_route is not None and last_route.last_to:
        to = last_route.last_to.strip() or None

    if requested_channel in SURFACES:
        channel = requested_channel
    elif last_route is not None and last_route.last_channel and last_route.last_channel != WEB_SURFACE:
        channel = last_route.last_channel
    else:
        channel = PRIMARY_SURFACE

    if channel == PRIMARY_SURFACE:
        to = sanitize_primary_recipient(to, allow_from)

    return DeliveryTarget(channel=channel, to=to)


async def deliver_payloads(
    target: DeliveryTarget,
    payloads: Sequence[ReplyPayload],
    senders: Mapping[str, MessageSender],
) -> list[SendResult]:
    """Send every payload to *target*; any failure raises DeliveryError."""
    if not target.to:
        raise DeliveryError(missing_recipient_error(target.channel))
    sender = senders.get(target.channel)
    if sender is None:
        raise DeliveryError(f"No sender configured for {target.channel}")

    results: list[SendResult] = []
    try:
        match target.channel:
            case "whatsapp":
                to = normalize_e164(target.to)
                for payload in payloads:
                    media = payload.media
                    results.append(
                        await sender.send_message(
                            to, payload.text or "", media_url=media[0] if media else None
                        )
                    )
                    for extra in media[1:]:
                        results.append(await sender.send_message(to, "", media_url=extra))
            case "telegram":
                for payload in payloads:
                    media = payload.media
                    if not media:
                        for chunk in chunk_text(payload.text or "", TELEGRAM_TEXT_LIMIT):
                            results.append(await sender.send_message(target.to, chunk))
                        continue
                    results.extend(await _send_captioned(sender, target.to, payload.text, media))
            case _:
                for payload in payloads:
                    media = payload.media
                    if not media:
                        results.append(await sender.send_message(target.to, payload.text or ""))
                        continue
                    results.extend(await _send_captioned(sender, target.to, payload.text, media))
    except DeliveryError:
        raise
    except Exception as exc:
        raise DeliveryError(str(exc)) from exc

    logger.info(
        "Delivered cron output",
        channel=target.channel,
        to=target.to,
        messages=len(results),
    )
    return results


async def _send_captioned(
    sender: MessageSender, to: str, text: str | None, media: list[str]
) -> list[SendResult]:
    """Caption the first attachment with the text; the rest go bare."""
    results = []
    for i, url in enumerate(media):
        caption = (text or "") if i == 0 else ""
        results.append(await sender.send_message(to, caption, media_url=url))
    return results
