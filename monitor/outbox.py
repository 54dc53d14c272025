"""
monitor/outbox.py -- Asynchronous delivery of notify_user / alert_admin actions.

The rule engine never talks to a notification channel directly. It enqueues an
OutboxMessage and moves on; a lifespan background task calls drain() every
OUTBOX_DRAIN_INTERVAL_SECONDS and hands each message to the Notifier. A slow
or failing webhook therefore adds neither latency nor failure coupling to the
authentication path.

Delivery:
  Notifier.deliver() always logs the message (admin alerts at ERROR so they
  surface in any log pipeline). When ALERT_WEBHOOK_URL is set it also POSTs
  the message as JSON with requests. Registered alert callbacks receive the
  SecurityEvent of every admin alert.

Retries:
  A delivery that raises is re-queued with attempts + 1. After max_attempts
  (3) failures the message is dropped with an ERROR log line; the audit
  record was already written at enqueue time.

Layer rule: no imports from api/, crossdomain/, or sessions/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict

import requests

from monitor.models import OutboxMessage, SecurityEvent

logger = logging.getLogger("crossauth.monitor.outbox")

_MAX_ATTEMPTS = 3
_WEBHOOK_TIMEOUT = 5  # seconds

AlertCallback = Callable[[SecurityEvent], None]


class Notifier:
    """Delivers outbox messages: log line, optional webhook, alert callbacks."""

    def __init__(self, webhook_url: str = "", timeout: float = _WEBHOOK_TIMEOUT) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._callbacks: list[AlertCallback] = []
        self._session = requests.Session() if webhook_url else None

    def add_callback(self, callback: AlertCallback) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback: AlertCallback) -> bool:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return False
        return True

    def deliver(self, message: OutboxMessage) -> None:
        """Deliver one message. Raises on webhook failure so the outbox retries."""
        event = message.event
        if message.kind == "admin_alert":
            logger.error(
                "ADMIN SECURITY ALERT rule=%s severity=%s user=%s event=%s ip=%s",
                message.rule_name,
                message.severity,
                message.user_id,
                event.id,
                event.ip_address,
            )
            # A webhook retry re-enters deliver(); callbacks see each alert once.
            if message.attempts == 0:
                for callback in list(self._callbacks):
                    try:
                        callback(event)
                    except Exception:
                        logger.exception("Alert callback failed for event %s", event.id)
        else:
            logger.info(
                "Security notification for user=%s rule=%s severity=%s",
                message.user_id,
                message.rule_name,
                message.severity,
            )

        if self._session is not None:
            payload = {
                "kind": message.kind,
                "user_id": message.user_id,
                "rule": message.rule_name,
                "severity": message.severity,
                "created_at": message.created_at,
                "event": asdict(event),
            }
            resp = self._session.post(self.webhook_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()

    def close(self) -> None:
        if self._session is not None:
            self._session.close()


class ActionOutbox:
    """Thread-safe FIFO of pending notify/alert messages.

    Usage:
        outbox = ActionOutbox(Notifier(webhook_url=settings.alert_webhook_url))
        outbox.enqueue(message)          # from the rule engine
        outbox.drain()                   # from the lifespan task
    """

    def __init__(self, notifier: Notifier, max_attempts: int = _MAX_ATTEMPTS, clock=time.time) -> None:
        self.notifier = notifier
        self.max_attempts = max_attempts
        self._clock = clock
        self._lock = threading.Lock()
        self._queue: deque[OutboxMessage] = deque()
        self.delivered = 0
        self.dropped = 0

    def enqueue(self, message: OutboxMessage) -> None:
        with self._lock:
            self._queue.append(message)

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def drain(self, max_messages: int | None = None) -> int:
        """Deliver queued messages. Returns the number delivered this call.

        Only messages present when drain starts are attempted; a re-queued
        failure waits for the next drain instead of spinning.
        """
        with self._lock:
            batch_size = len(self._queue) if max_messages is None else min(max_messages, len(self._queue))
            batch = [self._queue.popleft() for _ in range(batch_size)]

        delivered = 0
        for message in batch:
            try:
                self.notifier.deliver(message)
            except Exception as e:
                message.attempts += 1
                if message.attempts >= self.max_attempts:
                    self.dropped += 1
                    logger.error(
                        "Dropping %s for user %s after %d failed attempts: %s",
                        message.kind,
                        message.user_id,
                        message.attempts,
                        e,
                    )
                else:
                    logger.warning(
                        "Delivery of %s for user %s failed (attempt %d): %s",
                        message.kind,
                        message.user_id,
                        message.attempts,
                        e,
                    )
                    self.enqueue(message)
                continue
            delivered += 1

        self.delivered += delivered
        return delivered

    def stats(self) -> dict:
        return {"pending": self.pending(), "delivered": self.delivered, "dropped": self.dropped}
