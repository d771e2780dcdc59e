"""Notification queue — outbound email decoupled from the request cycle.

Messages are handed to a transport (SMTP in production) with bounded
retries and exponential backoff. Delivery outcomes are counted and the
most recent permanent failures are kept, so a failed confirmation email
is visible instead of disappearing into a log line.

Runs inline when `run_async` is False (tests), otherwise on one daemon
worker thread fed by a FIFO queue.
"""

import logging
import queue
import random
import smtplib
import threading
import time
from collections import deque

from flask import current_app

from korelia.models.schema import now_iso

logger = logging.getLogger(__name__)

SENTINEL = None


class NotificationSkipped(Exception):
    """The transport is not configured; the message is dropped, not retried."""


class NotificationQueue:
    def __init__(self, transport, max_attempts=4, base_delay=2.0, max_delay=60.0,
                 jitter=0.15, run_async=True, sleep=None):
        self.transport = transport
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.run_async = run_async
        self._sleep = sleep or time.sleep
        self._queue = queue.Queue()
        self._worker = None
        self._worker_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats = {"queued": 0, "delivered": 0, "failed": 0, "skipped": 0, "retries": 0}
        self.recent_failures = deque(maxlen=50)

    # --- public API ---

    def enqueue(self, message):
        """Schedule a message. Never raises on delivery problems."""
        self._count("queued")
        if not self.run_async:
            self._deliver(message)
            return
        self._ensure_worker()
        self._queue.put(message)

    def drain(self):
        """Block until every queued message has been attempted."""
        self._queue.join()

    def shutdown(self):
        if self._worker and self._worker.is_alive():
            self._queue.put(SENTINEL)
            self._worker.join(timeout=30)

    def snapshot(self):
        with self._stats_lock:
            return {**self.stats, "recent_failures": list(self.recent_failures)}

    # --- internals ---

    def _count(self, key):
        with self._stats_lock:
            self.stats[key] += 1

    def _ensure_worker(self):
        with self._worker_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._worker_loop, name="notification-worker", daemon=True
                )
                self._worker.start()
                logger.info("Notification worker started")

    def _worker_loop(self):
        while True:
            message = self._queue.get()
            try:
                if message is SENTINEL:
                    logger.info("Notification worker stopping")
                    break
                self._deliver(message)
            except Exception:
                logger.exception("Notification worker failed on a message")
            finally:
                self._queue.task_done()

    def _backoff(self, attempt):
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return max(0.0, delay + random.uniform(-self.jitter * delay, self.jitter * delay))

    def _deliver(self, message):
        to, subject = message.get("To"), message.get("Subject")
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.transport(message)
            except NotificationSkipped as e:
                self._count("skipped")
                logger.warning(f"Email to {to} not sent: {e}")
                return False
            except (smtplib.SMTPException, OSError) as e:
                if attempt == self.max_attempts:
                    self._count("failed")
                    with self._stats_lock:
                        self.recent_failures.append({
                            "to": to, "subject": subject, "error": str(e),
                            "attempts": attempt, "at": now_iso(),
                        })
                    logger.error(
                        f"Email to {to} failed after {attempt} attempt(s): {e}"
                    )
                    return False
                delay = self._backoff(attempt)
                self._count("retries")
                logger.warning(
                    f"Email to {to} attempt {attempt} failed ({e}); retrying in {delay:.1f}s"
                )
                self._sleep(delay)
            else:
                self._count("delivered")
                logger.info(f"Email sent to {to}: {subject}")
                return True
        return False


def get_notification_queue():
    return current_app.extensions["notification_queue"]
