"""Outbound senders for the messaging surfaces cron output can reach.

Telegram and Discord talk to their bot REST APIs directly. WhatsApp has
no built-in sender; hosts that bridge WhatsApp pass their own sender in
``CronDeps.senders``.
"""

from __future__ import annotations

from wakeline.config import get_settings
from wakeline.delivery import MessageSender
from wakeline.logger import logger


def build_senders() -> dict[str, MessageSender]:
    """One sender per surface whose bot token is configured."""
    from wakeline.channels.discord import DiscordSender
    from wakeline.channels.telegram import TelegramSender

    secrets = get_settings().secrets
    senders: dict[str, MessageSender] = {}
    if secrets.telegram_bot_token:
        senders["telegram"] = TelegramSender(secrets.telegram_bot_token.get_secret_value())
    if secrets.discord_bot_token:
        senders["discord"] = DiscordSender(secrets.discord_bot_token.get_secret_value())
    logger.info("Delivery senders ready", surfaces=sorted(senders))
    return senders
