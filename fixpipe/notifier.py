"""Discord webhook notifications for pipeline events.

Webhook failures are logged but never raised, so notification problems
cannot block a pipeline run.
"""

import logging
from dataclasses import dataclass

import httpx

from fixpipe.models import MergeBranchResult

logger = logging.getLogger(__name__)

COLORS = {
    "started": 0x3498DB,  # Blue
    "completed": 0x2ECC71,  # Green
    "failed": 0xE74C3C,  # Red
    "merge_failed": 0xF39C12,  # Orange
}

# Maximum description length for Discord embeds
MAX_DESCRIPTION_LENGTH = 4096
TRUNCATION_SUFFIX = "... [truncated]"


@dataclass
class DiscordEmbed:
    """Embed portion of a Discord webhook message."""

    title: str
    description: str
    color: int
    fields: list[dict] | None = None
    timestamp: str | None = None

    def to_dict(self) -> dict:
        result = {
            "title": self.title,
            "description": self.description,
            "color": self.color,
        }
        if self.fields is not None:
            result["fields"] = self.fields
        if self.timestamp is not None:
            result["timestamp"] = self.timestamp
        return result


async def send_discord_message(webhook_url: str, embed: DiscordEmbed) -> None:
    """Post an embed to a Discord webhook with a 5 second timeout.

    Discord returns 204 No Content on success. Every failure is logged as
    a warning.
    """
    payload = {"embeds": [embed.to_dict()]}

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json=payload)
            if response.status_code >= 400:
                logger.warning(
                    f"Discord webhook returned {response.status_code}: {response.text}"
                )
    except httpx.TimeoutException:
        logger.warning("Discord webhook request timed out")
    except httpx.ConnectError:
        logger.warning("Failed to connect to Discord webhook")
    except Exception as e:
        logger.warning(f"Discord webhook error: {e}")


def _truncate_text(text: str, max_length: int = MAX_DESCRIPTION_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def format_duration(seconds: float) -> str:
    """Format a duration like "45s", "2m 30s" or "1h 15m"."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s" if secs > 0 else f"{minutes}m"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"


def format_pipeline_started(run_id: str | None, phases: list[str]) -> DiscordEmbed:
    return DiscordEmbed(
        title="🚀 Pipeline Started",
        description=f"Run {run_id or '(new)'}: {' → '.join(phases)}",
        color=COLORS["started"],
    )


def format_phase_failed(phase: str, error: str | None) -> DiscordEmbed:
    description = "\n".join([f"Phase: {phase}", "", "**Error:**", error or "Unknown error"])
    return DiscordEmbed(
        title=f"❌ Phase Failed: {phase}",
        description=_truncate_text(description),
        color=COLORS["failed"],
    )


def format_merge_failures(
    failures: list[MergeBranchResult], target_branch: str
) -> DiscordEmbed:
    lines = [f"{len(failures)} branch(es) could not be merged into {target_branch}:", ""]
    for failure in failures:
        lines.append(f"• `{failure.branch}`: {failure.error}")
    return DiscordEmbed(
        title="⚠️ Merge Failures",
        description=_truncate_text("\n".join(lines)),
        color=COLORS["merge_failed"],
    )


def format_pipeline_completed(
    success: bool,
    phases_completed: list[str],
    total_tokens: int,
    duration_s: float,
    stopped_at: str | None = None,
) -> DiscordEmbed:
    if success:
        title = "🎉 Pipeline Complete"
        description = f"Completed {len(phases_completed)} phase(s) in {format_duration(duration_s)}."
    else:
        title = "❌ Pipeline Failed"
        description = f"Stopped at {stopped_at or 'unknown phase'} after {format_duration(duration_s)}."
    return DiscordEmbed(
        title=title,
        description=description,
        color=COLORS["completed"] if success else COLORS["failed"],
        fields=[
            {"name": "Phases", "value": ", ".join(phases_completed) or "none", "inline": True},
            {"name": "Duration", "value": format_duration(duration_s), "inline": True},
            {"name": "Tokens", "value": str(total_tokens), "inline": True},
        ],
    )


class Notifier:
    """Sends pipeline events to a Discord webhook; a no-op without one."""

    def __init__(self, webhook_url: str | None = None) -> None:
        self.webhook_url = webhook_url

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def _send(self, embed: DiscordEmbed) -> None:
        if self.webhook_url:
            await send_discord_message(self.webhook_url, embed)

    async def pipeline_started(self, run_id: str | None, phases: list[str]) -> None:
        await self._send(format_pipeline_started(run_id, phases))

    async def phase_failed(self, phase: str, error: str | None) -> None:
        await self._send(format_phase_failed(phase, error))

    async def merge_failures(
        self, results: list[MergeBranchResult], target_branch: str
    ) -> None:
        failures = [r for r in results if not r.success]
        if failures:
            await self._send(format_merge_failures(failures, target_branch))

    async def pipeline_completed(
        self,
        success: bool,
        phases_completed: list[str],
        total_tokens: int,
        duration_s: float,
        stopped_at: str | None = None,
    ) -> None:
        await self._send(
            format_pipeline_completed(
                success, phases_completed, total_tokens, duration_s, stopped_at
            )
        )
