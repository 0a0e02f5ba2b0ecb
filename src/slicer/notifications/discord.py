"""Discord webhook notifications."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from slicer.core.models import (
    Deposited,
    Direction,
    Event,
    Rebalanced,
    RebalanceSkipped,
    Withdrawn,
)

if TYPE_CHECKING:
    from slicer.portfolio.rebalance import RebalanceResult


def _short(address: str) -> str:
    return f"{address[:6]}…{address[-4:]}" if len(address) > 12 else address


class DiscordNotifier:
    """Send portfolio notifications to Discord via webhook."""

    def __init__(
        self,
        webhook_url: str,
        username: str = "Slice Bot",
        notify_on_rebalance: bool = True,
        notify_on_deposit: bool = False,
    ) -> None:
        """Initialize Discord notifier.

        Args:
            webhook_url: Discord webhook URL
            username: Bot username to display
            notify_on_rebalance: Post swaps and skips from rebalance passes
            notify_on_deposit: Post deposits and withdrawals
        """
        self.webhook_url = webhook_url
        self.username = username
        self.notify_on_rebalance = notify_on_rebalance
        self.notify_on_deposit = notify_on_deposit
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _send(self, content: str | None = None, embed: dict | None = None) -> bool:
        """Send a message to Discord.

        Returns:
            True if sent successfully
        """
        client = await self._get_client()

        payload: dict = {"username": self.username}
        if content:
            payload["content"] = content
        if embed:
            payload["embeds"] = [embed]

        try:
            response = await client.post(self.webhook_url, json=payload)
            if response.status_code in (200, 204):
                logger.debug("Discord notification sent")
                return True
            else:
                logger.warning(f"Discord webhook failed: {response.status_code}")
                return False
        except httpx.HTTPError as e:
            logger.error(f"Discord notification error: {e}")
            return False

    async def send_message(self, message: str) -> bool:
        """Send a simple text message."""
        return await self._send(content=message)

    async def handle_event(self, event: Event) -> None:
        """Event bus subscriber routing notifications to embeds."""
        if isinstance(event, Rebalanced) and self.notify_on_rebalance:
            await self.notify_rebalanced(event)
        elif isinstance(event, RebalanceSkipped) and self.notify_on_rebalance:
            await self.notify_rebalance_skipped(event)
        elif isinstance(event, (Deposited, Withdrawn)) and self.notify_on_deposit:
            await self.notify_ledger_event(event)

    async def notify_rebalanced(self, event: Rebalanced) -> bool:
        """Notify about an executed rebalance swap."""
        shed = event.direction == Direction.SHED
        embed = {
            "title": f"🔁 Rebalance {event.direction.value.upper()} {_short(event.wrapper)}",
            "color": 0xFF6B6B if shed else 0x00FF00,
            "fields": [
                {"name": "Wrapper", "value": event.wrapper, "inline": False},
                {"name": "Amount In", "value": f"{event.amount_in:,}", "inline": True},
                {"name": "Amount Out", "value": f"{event.amount_out:,}", "inline": True},
            ],
            "timestamp": event.timestamp.isoformat(),
        }

        return await self._send(embed=embed)

    async def notify_rebalance_skipped(self, event: RebalanceSkipped) -> bool:
        """Notify about an allocation skipped during a rebalance pass."""
        embed = {
            "title": f"⚠️ Rebalance Skipped: {_short(event.wrapper)}",
            "color": 0xFFAA00,
            "fields": [
                {"name": "Direction", "value": event.direction.value, "inline": True},
                {"name": "Reason", "value": event.reason[:1000], "inline": False},
            ],
            "timestamp": event.timestamp.isoformat(),
        }

        return await self._send(embed=embed)

    async def notify_ledger_event(self, event: Deposited | Withdrawn) -> bool:
        """Notify about a deposit or a per-allocation withdrawal."""
        if isinstance(event, Deposited):
            title = f"📥 Deposit into {_short(event.wrapper)}"
            fields = [
                {"name": "Sender", "value": event.sender, "inline": False},
                {"name": "Amount", "value": f"{event.amount:,}", "inline": True},
                {"name": "Shares", "value": f"{event.shares:,}", "inline": True},
            ]
        else:
            title = f"📤 Withdraw from {_short(event.wrapper)}"
            fields = [
                {"name": "Receiver", "value": event.receiver, "inline": False},
                {"name": "Amount", "value": f"{event.amount:,}", "inline": True},
            ]

        embed = {
            "title": title,
            "color": 0x00BFFF,
            "fields": fields,
            "timestamp": event.timestamp.isoformat(),
        }

        return await self._send(embed=embed)

    async def notify_rebalance_summary(self, result: RebalanceResult) -> bool:
        """Send a summary of a whole rebalance pass."""
        color = 0x00FF00 if not result.skipped else 0xFFAA00

        embed = {
            "title": "📊 Rebalance Summary",
            "color": color,
            "fields": [
                {"name": "Total Value", "value": f"{result.total_value:,}", "inline": True},
                {"name": "Swaps", "value": str(len(result.executed)), "inline": True},
                {"name": "Skipped", "value": str(len(result.skipped)), "inline": True},
                {"name": "Base Leftover", "value": f"{result.base_leftover:,}", "inline": True},
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        return await self._send(embed=embed)

    async def notify_error(self, error: str, context: str | None = None) -> bool:
        """Send error notification."""
        embed = {
            "title": "❌ Error",
            "color": 0xFF0000,
            "description": error[:2000],  # Discord limit
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        if context:
            embed["fields"] = [{"name": "Context", "value": context[:1000], "inline": False}]

        return await self._send(embed=embed)


# Global notifier instance
_notifier: DiscordNotifier | None = None


def get_discord_notifier(webhook_url: str | None = None) -> DiscordNotifier | None:
    """Get or create the global Discord notifier.

    Args:
        webhook_url: Discord webhook URL. Required on first call.

    Returns:
        DiscordNotifier instance or None if no URL configured
    """
    global _notifier

    if webhook_url:
        _notifier = DiscordNotifier(webhook_url)

    return _notifier
