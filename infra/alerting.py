"""Webhook notifications for trading events (Telegram sendMessage compatible)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @classmethod
    def parse(cls, value: Optional[str]) -> "AlertSeverity":
        """Case-insensitive name lookup; unknown or empty names map to INFO."""
        try:
            return cls[(value or "").strip().upper()]
        except KeyError:
            return cls.INFO


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.INFO
    dry_run: bool = False
    chat_id: Optional[str] = None
    timeout: float = 5.0
    dedupe_seconds: float = 60.0


def _resolve_webhook_url(raw: Dict[str, Any]) -> Optional[str]:
    """webhook_url with ${VAR} expanded, else the variable named by webhook_env."""
    url = raw.get("webhook_url") or ""
    if "${" in url:
        url = os.path.expandvars(url)
        if "${" in url:
            # Placeholder left unresolved
            url = ""
    if not url:
        url = os.environ.get(raw.get("webhook_env") or "ALERT_WEBHOOK_URL", "")
    return url or None


class AlertService:
    """
    Send notifications for trading events.

    Generic alerts go through notify() (severity filter + dedupe window).
    position_opened / position_closed render trade messages and are what
    the bot and the position reconciler call. Delivery problems are logged,
    never raised.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        self._active = bool(config.enabled and config.webhook_url)
        if config.enabled and not self._active:
            logger.warning("Alerts enabled without a webhook URL; notifications are off")
        self._sent_at: Dict[str, float] = {}

    @classmethod
    def from_config(cls, enabled: bool, raw: Optional[Dict[str, Any]]) -> "AlertService":
        """Build from the `alerts` section of app.yaml."""
        raw = raw or {}
        chat_id = raw.get("chat_id")
        return cls(AlertConfig(
            enabled=enabled,
            webhook_url=_resolve_webhook_url(raw),
            min_severity=AlertSeverity.parse(raw.get("min_severity")),
            dry_run=bool(raw.get("dry_run", False)),
            chat_id=None if chat_id is None else str(chat_id),
            timeout=float(raw.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw.get("dedupe_seconds", 60.0)),
        ))

    def is_enabled(self) -> bool:
        return self._active

    def notify(self, severity: AlertSeverity, title: str, message: str,
               context: Optional[Dict[str, Any]] = None) -> None:
        if not self._active or severity.value < self._config.min_severity.value:
            return
        if self._suppressed(severity, title, message):
            logger.debug(f"Suppressed repeat alert: {title}")
            return
        self._deliver(self._render(severity, title, message, context), title)

    def _suppressed(self, severity: AlertSeverity, title: str, message: str) -> bool:
        key = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        now = time.monotonic()
        window = self._config.dedupe_seconds
        # Keys older than the window are dropped
        self._sent_at = {k: t for k, t in self._sent_at.items() if now - t <= window}
        previous = self._sent_at.get(key)
        if previous is not None:
            return True
        self._sent_at[key] = now
        return False

    # ------------------------------------------------------------------
    # Trade messages
    # ------------------------------------------------------------------

    def position_opened(self, params, entry, take_profit=None, stop_loss=None) -> None:
        """Announce a new position (PositionParameters + EntryOrder + brackets)."""
        symbol = entry.symbol
        lines = [
            f"{params.direction.value} {symbol}",
            f"Entry: {entry.avg_price or params.entry_price}",
            f"Quantity: {params.quantity}",
            f"Leverage: {params.leverage}x",
            f"Margin: {params.required_margin:.2f} USDT",
            f"Take profit: {params.take_profit}" + ("" if take_profit else " (not placed)"),
            f"Stop loss: {params.stop_loss}" + ("" if stop_loss else " (not placed)"),
        ]
        self.notify(AlertSeverity.INFO, f"Position opened: {symbol}", "\n".join(lines),
                    {"order_id": entry.order_id})

    def position_closed(self, closed) -> None:
        """Announce a closed position (ClosedPosition)."""
        outcome = "profit" if closed.is_win else "loss"
        lines = [
            f"{closed.direction.value} {closed.symbol} closed with {outcome}",
            f"Entry: {closed.entry_price}",
            f"Exit: {closed.exit_price}",
            f"P&L: {closed.pnl:.2f} USDT ({closed.pnl_percent:.2f}%)",
            f"Duration: {closed.duration}",
        ]
        self.notify(AlertSeverity.INFO, f"Position closed: {closed.symbol}", "\n".join(lines),
                    {"order_id": closed.order_id})

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _render(self, severity: AlertSeverity, title: str, message: str,
                context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        parts = [f"[{severity.name}] {title}"]
        if message:
            parts.append(message)
        if context:
            parts.append("context=" + json.dumps(context, sort_keys=True, default=str))
        payload: Dict[str, Any] = {"text": "\n".join(parts)}
        if self._config.chat_id:
            payload["chat_id"] = self._config.chat_id
        return payload

    def _deliver(self, payload: Dict[str, Any], title: str) -> None:
        if self._config.dry_run:
            logger.info("[ALERT] %s", payload["text"])
            return

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                status = response.status
                if status >= 400:
                    detail = response.read().decode("utf-8", errors="replace")[:200]
                    logger.error("Webhook refused alert '%s': HTTP %s %s", title, status, detail)
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
