"""Run summaries and status classification for cron agent turns."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from wakeline.delivery import (
    DeliveryError,
    DeliveryTarget,
    MessageSender,
    deliver_payloads,
    missing_recipient_error,
    skipped_summary,
)
from wakeline.logger import logger
from wakeline.types import CronRunResult, ReplyPayload

SUMMARY_LIMIT = 2000


def pick_summary_from_output(text: str | None) -> str | None:
    clean = (text or "").strip()
    if not clean:
        return None
    if len(clean) > SUMMARY_LIMIT:
        return clean[:SUMMARY_LIMIT] + "…"
    return clean


def pick_summary_from_payloads(payloads: Sequence[ReplyPayload]) -> str | None:
    """Summary is the last payload with non-blank text, truncated."""
    for payload in reversed(payloads):
        summary = pick_summary_from_output(payload.text)
        if summary:
            return summary
    return None


async def deliver_and_classify(
    target: DeliveryTarget,
    payloads: Sequence[ReplyPayload],
    summary: str | None,
    *,
    best_effort: bool,
    senders: Mapping[str, MessageSender],
) -> CronRunResult:
    """Deliver a finished turn's payloads and fold the outcome into a run status.

    No recipient: ``skipped`` when best-effort, else ``error``. A failed send:
    ``ok`` when best-effort (the turn itself succeeded), else ``error``. The
    agent's summary is kept on errors so the run log still shows the reply.
    """
    if not target.to:
        if best_effort:
            logger.info("Cron delivery skipped, no recipient", channel=target.channel)
            return CronRunResult(status="skipped", summary=skipped_summary(target.channel))
        return CronRunResult(
            status="error", summary=summary, error=missing_recipient_error(target.channel)
        )

    try:
        await deliver_payloads(target, payloads, senders)
    except DeliveryError as exc:
        if best_effort:
            logger.warning(
                "Best-effort cron delivery failed",
                channel=target.channel,
                to=target.to,
                err=str(exc),
            )
            return CronRunResult(status="ok", summary=summary)
        return CronRunResult(status="error", summary=summary, error=str(exc))

    return CronRunResult(status="ok", summary=summary, delivered=True)
