"""
Alerting Module — Sends operator notifications via webhook (Slack, Discord, Telegram).

Supports:
- Critical alerts (broadcast cycle aborted, settings unusable)
- Info (per-cycle broadcast summary, daily emission summary)

Configuration via env vars:
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord', 'telegram')
    ALERT_CHAT_ID=...    (telegram only; ALERT_WEBHOOK_URL then holds the bot token)
"""

import logging
from datetime import datetime, timezone

import aiohttp
import pytz

import config

logger = logging.getLogger("emission.alerts")


class AlertLevel:
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


async def send_alert(
    message: str,
    level: str = AlertLevel.INFO,
    title: str = None,
) -> bool:
    """
    Send an alert via the configured webhook.

    Args:
        message: Alert body text
        level: AlertLevel.CRITICAL / WARNING / INFO
        title: Optional title/heading

    Returns:
        True if sent successfully, False otherwise
    """
    if not config.ALERT_WEBHOOK_URL:
        logger.debug(f"Alert skipped (no webhook): [{level}] {message[:80]}")
        return False

    emoji = {"critical": "🚨", "warning": "⚠️", "info": "ℹ️"}.get(level, "📢")
    heading = title or f"{emoji} Emission Engine — {level.upper()}"

    if config.ALERT_CHANNEL == "discord":
        payload = _build_discord_payload(heading, message, level)
    elif config.ALERT_CHANNEL == "telegram":
        payload = _build_telegram_payload(heading, message)
    else:
        payload = _build_slack_payload(heading, message, level)

    url = config.ALERT_WEBHOOK_URL
    if config.ALERT_CHANNEL == "telegram":
        url = f"{config.TELEGRAM_API_BASE}/bot{config.ALERT_WEBHOOK_URL}/sendMessage"

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                if resp.status in (200, 204):
                    logger.info(f"Alert sent: [{level}] {(title or message)[:60]}")
                    return True
                body = await resp.text()
                logger.error(f"Alert webhook returned {resp.status}: {body[:200]}")
                return False

    except Exception as e:
        # Alerting must never take the engine down with it
        logger.error(f"Failed to send alert: {e}")
        return False


def _build_slack_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": "#FF0000",
        "warning": "#FFA500",
        "info": "#36A64F",
    }.get(level, "#808080")

    return {
        "attachments": [
            {
                "color": color,
                "title": title,
                "text": message,
                "footer": "Emission Engine",
                "ts": int(datetime.now(timezone.utc).timestamp()),
            }
        ]
    }


def _build_discord_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": 0xFF0000,
        "warning": 0xFFA500,
        "info": 0x36A64F,
    }.get(level, 0x808080)

    return {
        "embeds": [
            {
                "title": title,
                "description": message,
                "color": color,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ]
    }


def _build_telegram_payload(title: str, message: str) -> dict:
    return {
        "chat_id": config.ALERT_CHAT_ID,
        "text": f"*{title}*\n\n{message}",
        "parse_mode": "Markdown",
    }


async def alert_config_invalid(error: str):
    await send_alert(
        message=f"Broadcast settings are unusable, nothing is armed:\n```{error[:300]}```",
        level=AlertLevel.CRITICAL,
        title="🚨 Broadcast settings invalid",
    )


async def send_daily_summary(day: str):
    """Summarize one local day of profit notifications and broadcasts."""
    from database import BroadcastLog, ProfitEvent

    try:
        tz = pytz.timezone(config.TARGET_TIMEZONE)
        stats = ProfitEvent.get_day_stats(day)
        recent = [
            run for run in BroadcastLog.get_recent(limit=50)
            if run.get("started_at") and run["started_at"].astimezone(tz).strftime("%Y-%m-%d") == day
        ]

        lines = [
            f"📅 Day: {day}",
            "",
            "💰 **Profit notifications**",
            f"• Events generated: {stats['total']}",
            f"• Delivered: {stats['delivered']}",
            f"• Recipient unreachable: {stats['unreachable']}",
            f"• Still pending: {stats['pending']}",
            "",
            "📣 **Broadcasts**",
        ]
        for run in recent:
            if run.get("aborted"):
                lines.append(f"• aborted: {run.get('error')}")
            else:
                lines.append(
                    f"• order #{run.get('order_number')}: "
                    f"{run.get('delivered', 0)}/{run.get('recipients', 0)} delivered"
                )
        if not recent:
            lines.append("• No broadcasts")

        await send_alert("\n".join(lines), AlertLevel.INFO, "📋 Daily Emission Summary")

    except Exception as e:
        logger.error(f"Failed to generate daily summary: {e}", exc_info=True)
