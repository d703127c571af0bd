"""
Operational alerting.

Alert channels:
1. Structured log (always) - at ERROR/CRITICAL level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL

Rate limiting: per-type cooldowns in Redis (SET NX EX) so a poison batch
cannot flood the channel. Falls back to an in-memory cooldown when Redis is down.
"""
import logging
import time
from typing import Optional

import httpx

from mailtrail.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "store_write_rejected": 900,
}


class AlertType:
    """Alert type constants."""
    DEAD_LETTER_EXHAUSTED = "dead_letter_exhausted"
    STORE_WRITE_REJECTED = "store_write_rejected"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class Alerter:
    def __init__(
        self,
        redis=None,
        http_client: Optional[httpx.AsyncClient] = None,
        webhook_url: str = "",
    ):
        self._redis = redis
        self._http = http_client
        self.webhook_url = webhook_url
        self._local_cooldowns: dict[str, float] = {}  # alert_type -> expiry (monotonic)

    async def send(
        self,
        alert_type: str,
        message: str,
        severity: str = "error",
        extra: Optional[dict] = None,
    ) -> bool:
        """Send an alert through all configured channels. Returns False when rate-limited."""
        if not await self._acquire_cooldown(alert_type):
            return False

        cid = get_correlation_id()
        level = logging.CRITICAL if severity == "critical" else logging.ERROR
        logger.log(
            level, "ALERT [%s]: %s", alert_type, message,
            extra={"alert_type": alert_type, **(extra or {})},
        )

        await self._send_webhook(_render(alert_type, message, cid, extra))
        return True

    async def _acquire_cooldown(self, alert_type: str) -> bool:
        cooldown = _get_cooldown_seconds(alert_type)

        if self._redis is not None:
            try:
                acquired = await self._redis.set(
                    f"mailtrail:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown,
                )
                return bool(acquired)
            except Exception as e:
                logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))

        now = time.monotonic()
        if now < self._local_cooldowns.get(alert_type, 0):
            return False
        self._local_cooldowns[alert_type] = now + cooldown
        return True

    async def _send_webhook(self, content: str) -> None:
        if not self.webhook_url or self._http is None:
            return
        try:
            response = await self._http.post(self.webhook_url, json={"content": content}, timeout=5.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Alert webhook %s failed: %s", self.webhook_url, e)


def _render(alert_type: str, message: str, correlation_id: Optional[str], extra: Optional[dict]) -> str:
    """Discord/Slack message body: bold type line, message, then one code line per field."""
    fields = {"correlation_id": correlation_id, **(extra or {})}
    lines = [f"**{alert_type}**", message]
    lines += [f"`{key}: {value}`" for key, value in fields.items() if value is not None]
    return "\n".join(lines)
