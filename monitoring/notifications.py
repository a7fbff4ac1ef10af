#!/usr/bin/env python3
"""
Notifications: Slack/Discord webhooks for scrape job lifecycle events.

Design goals:
- Zero-config by default (no notifications if not configured).
- Non-blocking (network calls are best-effort, failures are logged and dropped).
- Challenge detections are flagged urgent so a human can resume the job.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from api.config import config as app_config

logger = logging.getLogger(__name__)

COLORS = {
    "success": 0x00FF00,
    "error": 0xFF0000,
    "warning": 0xFFA500,
    "info": 0x0099FF,
}


@dataclass
class NotificationConfig:
    slack_webhook_url: str = app_config.SLACK_WEBHOOK_URL or ""
    discord_webhook_url: str = app_config.DISCORD_WEBHOOK_URL or ""


def _field(name: str, value: Any, inline: bool = True) -> Dict[str, Any]:
    return {"name": name, "value": str(value)[:1000], "inline": inline}


def _format_hours(seconds: Optional[float]) -> str:
    if seconds is None:
        return "Unknown"
    return f"{seconds / 3600:.2f} hours"


class NotificationManager:
    def __init__(self, config: Optional[NotificationConfig] = None):
        self.config = config or NotificationConfig()

    def enabled(self) -> bool:
        return bool(self.config.slack_webhook_url or self.config.discord_webhook_url)

    async def _post_json(self, url: str, payload: dict) -> bool:
        if not url:
            return False
        try:
            timeout = aiohttp.ClientTimeout(total=12)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as resp:
                    if 200 <= resp.status < 300:
                        return True
                    text = await resp.text()
                    logger.warning(f"Webhook failed ({resp.status}): {text[:200]}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Webhook error: {e}")
            return False

    async def send(
        self,
        title: str,
        description: str,
        color: str,
        fields: List[Dict[str, Any]],
        *,
        urgent: bool = False,
    ):
        """Post one event to every configured webhook."""
        if not self.enabled():
            logger.debug(f"Notification skipped (no webhook configured): {title}")
            return

        discord_payload = {
            "embeds": [{
                "title": title,
                "description": description,
                "color": COLORS.get(color, COLORS["info"]),
                "fields": fields,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }],
        }
        if urgent:
            discord_payload["content"] = "@here"

        lines = [f"*{title}*", description] + [f"{f['name']}: {f['value']}" for f in fields]
        slack_text = "\n".join(lines)
        if urgent:
            slack_text = "<!here> " + slack_text
        slack_payload = {"text": slack_text}

        results = await asyncio.gather(
            self._post_json(self.config.discord_webhook_url, discord_payload),
            self._post_json(self.config.slack_webhook_url, slack_payload),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Notification delivery error: {result}")

    # ============== Job events ==============

    async def job_started(self, job_id: str, client_name: str, term_count: int, result_cap: int,
                          estimated_duration: Optional[int] = None):
        await self.send(
            "🚀 Job Started",
            f"Starting scraping job for **{client_name}**",
            "info",
            [
                _field("Job ID", job_id),
                _field("Search Terms", term_count),
                _field("Estimated Total", f"~{term_count * result_cap} places"),
                _field("Estimated Duration", _format_hours(estimated_duration)),
            ],
        )

    async def milestone(self, job_id: str, client_name: str, records_scraped: int,
                        current_term: Optional[str] = None):
        await self.send(
            "📈 Milestone Reached",
            f"**{client_name}** reached {records_scraped} places",
            "info",
            [
                _field("Job ID", job_id),
                _field("Places Scraped", records_scraped),
                _field("Current Term", current_term or "-"),
            ],
        )

    async def job_paused(self, job_id: str, client_name: str, reason: str, records_scraped: int):
        await self.send(
            "⏸️ Job Paused",
            f"Job paused for **{client_name}**",
            "warning",
            [
                _field("Job ID", job_id),
                _field("Reason", reason),
                _field("Progress", f"{records_scraped} places scraped"),
            ],
        )

    async def job_completed(self, job_id: str, client_name: str, records_scraped: int,
                            failed_count: int, duration_seconds: Optional[float]):
        attempted = records_scraped + failed_count
        success_rate = (records_scraped / attempted * 100) if attempted else 100.0
        await self.send(
            "✅ Job Completed",
            f"Successfully completed scraping job for **{client_name}**",
            "success",
            [
                _field("Job ID", job_id),
                _field("Places Scraped", records_scraped),
                _field("Failed", failed_count),
                _field("Duration", _format_hours(duration_seconds)),
                _field("Success Rate", f"{success_rate:.1f}%"),
            ],
        )

    async def job_failed(self, job_id: str, client_name: str, error: str, records_scraped: int):
        await self.send(
            "❌ Job Failed",
            f"Job failed for **{client_name}**",
            "error",
            [
                _field("Job ID", job_id),
                _field("Error", error, inline=False),
                _field("Progress Before Failure", f"{records_scraped} places scraped"),
            ],
        )

    async def challenge_detected(self, job_id: str, client_name: str, records_scraped: int,
                                 url: Optional[str] = None):
        await self.send(
            "🚨 CHALLENGE DETECTED - URGENT",
            f"Verification challenge detected for job **{client_name}**. Job has been paused "
            f"and needs a manual resume.",
            "error",
            [
                _field("Job ID", job_id),
                _field("Progress", f"{records_scraped} places scraped"),
                _field("URL", url or "-", inline=False),
            ],
            urgent=True,
        )


notifications = NotificationManager()
