"""
============================================================================
Fiat Bridge v1.0.0
Discord Notifier - Operator Alerts
============================================================================

Reliability Level: L5 High
Input Constraints: Discord webhook URL (optional, no-op when absent)
Side Effects: Sends HTTP POST to Discord webhook endpoint

SOVEREIGN MANDATE:
- Non-blocking delivery through a background worker thread
- Rate limiting to prevent Discord API throttling
- Graceful degradation if Discord unavailable
- Zero impact on the conversion execution path

ALERTS RAISED BY THE CONVERSION ENGINE:
- Venue consecutive-failure threshold crossed
- Large conversion awaiting approval
- Conversion permanently failed (retry budget exhausted)

Python 3.8 Compatible - No union type hints (X | None)
PRIVACY: No customer personal data in notifications.
============================================================================
"""

import os
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum
from queue import Queue, Empty
import urllib.request
import urllib.error

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

ENV_DISCORD_WEBHOOK_URL = "DISCORD_WEBHOOK_URL"
ENV_DISCORD_ALERT_LEVEL = "DISCORD_ALERT_LEVEL"
ENV_DISCORD_RATE_LIMIT = "DISCORD_RATE_LIMIT_SECONDS"

DEFAULT_ALERT_LEVEL = "WARNING"
DEFAULT_RATE_LIMIT_SECONDS = 2
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10

MAX_EMBED_TITLE_LENGTH = 256
MAX_EMBED_DESCRIPTION_LENGTH = 4096
MAX_FIELD_VALUE_LENGTH = 1024
MAX_FIELDS_PER_EMBED = 25

ERROR_DISCORD_WEBHOOK_MISSING = "DISC-001-WEBHOOK_MISSING"
ERROR_DISCORD_RATE_LIMITED = "DISC-002-RATE_LIMITED"
ERROR_DISCORD_REQUEST_FAILED = "DISC-003-REQUEST_FAILED"


# =============================================================================
# ENUMS
# =============================================================================

class AlertLevel(Enum):
    """Alert severity levels for Discord notifications."""
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50


class EmbedColor(Enum):
    """Discord-compatible hex colors."""
    SUCCESS = 0x2ECC71
    INFO = 0x3498DB
    WARNING = 0xF39C12
    ERROR = 0xE74C3C
    CRITICAL = 0x9B59B6


_LEVEL_COLORS = {
    AlertLevel.DEBUG: EmbedColor.INFO,
    AlertLevel.INFO: EmbedColor.INFO,
    AlertLevel.WARNING: EmbedColor.WARNING,
    AlertLevel.ERROR: EmbedColor.ERROR,
    AlertLevel.CRITICAL: EmbedColor.CRITICAL,
}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class DiscordEmbed:
    title: str
    description: Optional[str] = None
    color: int = EmbedColor.INFO.value
    fields: Dict[str, str] = field(default_factory=dict)
    footer_text: Optional[str] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to Discord API format."""
        embed: Dict[str, Any] = {"title": self.title[:MAX_EMBED_TITLE_LENGTH], "color": self.color}
        if self.description:
            embed["description"] = self.description[:MAX_EMBED_DESCRIPTION_LENGTH]
        if self.fields:
            embed["fields"] = [
                {"name": name, "value": str(value)[:MAX_FIELD_VALUE_LENGTH], "inline": True}
                for name, value in list(self.fields.items())[:MAX_FIELDS_PER_EMBED]
            ]
        if self.footer_text:
            embed["footer"] = {"text": self.footer_text}
        if self.timestamp:
            embed["timestamp"] = self.timestamp
        return embed


@dataclass
class NotificationResult:
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    rate_limited: bool = False


# =============================================================================
# DISCORD NOTIFIER CLASS
# =============================================================================

class DiscordNotifier:
    """
    Discord webhook client for operator alerts.

    Disabled (every send returns a failed NotificationResult without I/O)
    when no webhook URL is configured.

    USAGE:
        notifier = DiscordNotifier()
        notifier.send_alert(
            title="Venue Degraded",
            message="kraken has 3 consecutive failures",
            level=AlertLevel.ERROR,
            fields={"venue": "kraken", "streak": "3"},
        )
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        alert_level: Optional[str] = None,
        rate_limit_seconds: Optional[int] = None,
        async_delivery: bool = True
    ) -> None:
        self._webhook_url = webhook_url or os.getenv(ENV_DISCORD_WEBHOOK_URL)
        self._alert_level = self._parse_alert_level(
            alert_level or os.getenv(ENV_DISCORD_ALERT_LEVEL, DEFAULT_ALERT_LEVEL)
        )
        if rate_limit_seconds is None:
            try:
                rate_limit_seconds = int(
                    os.getenv(ENV_DISCORD_RATE_LIMIT, str(DEFAULT_RATE_LIMIT_SECONDS))
                )
            except ValueError:
                rate_limit_seconds = DEFAULT_RATE_LIMIT_SECONDS
        self._rate_limit_seconds = rate_limit_seconds
        self._enabled = bool(self._webhook_url)

        self._last_send_time = 0.0
        self._rate_limit_lock = threading.Lock()

        self._async_delivery = async_delivery
        self._message_queue = Queue()  # type: Queue[Dict[str, Any]]
        self._worker_thread = None  # type: Optional[threading.Thread]
        self._shutdown_flag = threading.Event()

        if self._async_delivery and self._enabled:
            self._worker_thread = threading.Thread(
                target=self._worker_loop, name="DiscordNotifierWorker", daemon=True
            )
            self._worker_thread.start()

        logger.info(
            f"[DISCORD_NOTIFIER_INIT] enabled={self._enabled} "
            f"alert_level={self._alert_level.name} async={self._async_delivery}"
        )

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @staticmethod
    def _parse_alert_level(level_str: str) -> AlertLevel:
        try:
            return AlertLevel[level_str.upper()]
        except KeyError:
            return AlertLevel.WARNING

    def _worker_loop(self) -> None:
        while not self._shutdown_flag.is_set():
            try:
                payload = self._message_queue.get(timeout=1.0)
            except Empty:
                continue
            try:
                self._send_webhook_sync(payload)
            except Exception as e:
                logger.error(f"[DISCORD_WORKER_ERROR] Unexpected error: {e}")
            finally:
                self._message_queue.task_done()

    def _check_rate_limit(self) -> bool:
        with self._rate_limit_lock:
            now = time.time()
            if now - self._last_send_time >= self._rate_limit_seconds:
                self._last_send_time = now
                return True
            return False

    def _send_webhook_sync(self, payload: Dict[str, Any]) -> NotificationResult:
        if not self._webhook_url:
            return NotificationResult(
                success=False,
                error_code=ERROR_DISCORD_WEBHOOK_MISSING,
                error_message="Webhook URL not configured",
            )
        if not self._check_rate_limit():
            logger.warning(f"[{ERROR_DISCORD_RATE_LIMITED}] Local rate limit, alert dropped")
            return NotificationResult(
                success=False, error_code=ERROR_DISCORD_RATE_LIMITED, rate_limited=True
            )

        request = urllib.request.Request(
            self._webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "User-Agent": "FiatBridge/1.0.0"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=DEFAULT_REQUEST_TIMEOUT_SECONDS):
                return NotificationResult(success=True)
        except urllib.error.HTTPError as e:
            logger.error(f"[{ERROR_DISCORD_REQUEST_FAILED}] HTTP error: {e.code} {e.reason}")
            return NotificationResult(
                success=False,
                error_code=ERROR_DISCORD_REQUEST_FAILED,
                error_message=f"HTTP {e.code}: {e.reason}",
                rate_limited=e.code == 429,
            )
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            logger.error(f"[{ERROR_DISCORD_REQUEST_FAILED}] Request failed: {e}")
            return NotificationResult(
                success=False, error_code=ERROR_DISCORD_REQUEST_FAILED, error_message=str(e)
            )

    def send_alert(
        self,
        title: str,
        message: str,
        level: AlertLevel = AlertLevel.WARNING,
        fields: Optional[Dict[str, str]] = None,
        correlation_id: Optional[str] = None,
        blocking: bool = False
    ) -> NotificationResult:
        """
        Send an operator alert embed.

        Returns:
            NotificationResult (queued alerts report success immediately)
        """
        if not self._enabled:
            return NotificationResult(
                success=False,
                error_code=ERROR_DISCORD_WEBHOOK_MISSING,
                error_message="Notifications disabled",
            )
        if level.value < self._alert_level.value:
            return NotificationResult(success=False, error_message="Below alert level")

        embed = DiscordEmbed(
            title=title,
            description=message,
            color=_LEVEL_COLORS[level].value,
            fields=dict(fields or {}),
            footer_text=f"correlation_id={correlation_id}" if correlation_id else None,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        payload = {"embeds": [embed.to_dict()]}

        if self._async_delivery and not blocking:
            self._message_queue.put(payload)
            return NotificationResult(success=True)
        return self._send_webhook_sync(payload)

    def send_venue_alert(self, venue: str, streak: int, last_error: str = "") -> NotificationResult:
        """Consecutive execution failures crossed the alert threshold."""
        return self.send_alert(
            title="Venue Degraded",
            message=f"{venue} has {streak} consecutive execution failures",
            level=AlertLevel.ERROR,
            fields={"venue": venue, "streak": str(streak), "last_error": last_error or "n/a"},
        )

    def send_conversion_alert(
        self,
        title: str,
        message: str,
        fields: Optional[Dict[str, str]] = None,
        correlation_id: Optional[str] = None
    ) -> NotificationResult:
        return self.send_alert(
            title=title,
            message=message,
            level=AlertLevel.WARNING,
            fields=fields,
            correlation_id=correlation_id,
        )

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the worker thread after draining queued alerts."""
        if self._worker_thread is None:
            return
        deadline = time.time() + timeout
        while not self._message_queue.empty() and time.time() < deadline:
            time.sleep(0.1)
        self._shutdown_flag.set()
        self._worker_thread.join(timeout=max(deadline - time.time(), 0.1))
        self._worker_thread = None


__all__ = [
    "DiscordNotifier",
    "DiscordEmbed",
    "NotificationResult",
    "AlertLevel",
    "EmbedColor",
]
