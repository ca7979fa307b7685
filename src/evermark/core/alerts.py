"""Fire-and-forget operator alerts.

Every alert is logged and kept in a short in-memory history (served by the
transitions API). When a webhook URL is configured the alert is also POSTed
as JSON in a background task. Delivery failures are logged and dropped;
alerting must never block or fail the transition that raised it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

import httpx

from evermark.models.transition import AlertEvent

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 100


class Alerter:
    """Alert sink with optional webhook delivery.

    Usage:
        alerter = Alerter(webhook_url="https://hooks.example/evermark")
        alerter.send_alert(AlertEvent(type="phase_failure", message="..."))
        ...
        await alerter.drain()  # on shutdown
    """

    def __init__(
        self,
        webhook_url: str = "",
        timeout_seconds: float = 5.0,
        history_size: int = DEFAULT_HISTORY_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._history: deque[AlertEvent] = deque(maxlen=history_size)
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def recent(self) -> list[AlertEvent]:
        """Most recent alerts, newest last."""
        return list(self._history)

    def send_alert(self, event: AlertEvent) -> None:
        """Record *event* and schedule webhook delivery. Returns immediately."""
        self._history.append(event)
        logger.warning(
            "alert type=%s phase=%s season=%s transition=%s message=%s",
            event.type,
            event.phase,
            event.season,
            event.transition_id,
            event.message,
        )
        if not self.webhook_url:
            return
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError:
            logger.warning("alert_delivery_skipped reason=no_running_loop type=%s", event.type)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: AlertEvent) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(self.webhook_url, json=event.model_dump(mode="json"))
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("alert_delivery_failed type=%s error=%s", event.type, exc)
            return
        logger.info("alert_delivered type=%s", event.type)

    async def drain(self) -> None:
        """Wait for in-flight deliveries. Used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
