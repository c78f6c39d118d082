#!/usr/bin/env python3
"""
Notification Worker

Sends the SMS notifications the API queued in Redis.  Run it as a separate
background process whenever REDIS_URL is set; without Redis the API sends
notifications itself and this worker is not needed.

Usage:
    python notification_worker.py

Environment Variables:
    REDIS_URL - Redis connection URL (required)
    TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_FROM_NUMBER - without
        them messages are simulated and only logged
"""

import json
import logging
import sys
import time
from typing import Any, Dict, Optional

import redis

import config
from notifications import build_transport, mask_phone

logger = logging.getLogger(__name__)


class NotificationWorker:
    def __init__(self, redis_client: redis.Redis, transport, max_attempts: int = 2) -> None:
        self.redis_client = redis_client
        self.transport = transport
        self.max_attempts = max_attempts

    def handle(self, notification: Dict[str, Any]) -> bool:
        """Send one queued notification.  Failed sends are re-queued once."""
        phone = notification.get("phone")
        message = notification.get("message")
        if not phone or not message:
            logger.warning("Invalid notification dropped: %s", notification)
            return False

        try:
            result = self.transport.send(phone, message)
        except Exception:
            logger.exception("Transport error sending to %s", mask_phone(phone))
            result = {"success": False, "error": "transport error"}

        if result.get("success"):
            return True

        attempts = notification.get("attempts", 1)
        if attempts < self.max_attempts:
            retry = dict(notification, attempts=attempts + 1)
            self.redis_client.lpush(config.NOTIFICATION_LIST, json.dumps(retry))
            logger.warning("Re-queued notification for %s (attempt %s)", mask_phone(phone), attempts + 1)
        else:
            logger.error("Giving up on notification for %s: %s", mask_phone(phone), result.get("error"))
        return False

    def process_one(self, timeout: int = 5) -> Optional[bool]:
        """Wait up to ``timeout`` seconds for one notification.  ``None`` on timeout."""
        item = self.redis_client.brpop(config.NOTIFICATION_LIST, timeout=timeout)
        if not item:
            return None
        try:
            notification = json.loads(item[1])
        except json.JSONDecodeError:
            logger.warning("Malformed notification dropped: %r", item[1])
            return False
        return self.handle(notification)

    def run(self) -> None:
        logger.info("Notification worker started - waiting for notifications...")
        while True:
            try:
                self.process_one()
            except KeyboardInterrupt:
                logger.info("Worker stopped by user")
                break
            except redis.RedisError as e:
                logger.error("Error processing notification: %s", e)
                time.sleep(1)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue_length": self.redis_client.llen(config.NOTIFICATION_LIST),
            "worker_status": "running",
        }


def main() -> int:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format=config.LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    if not config.REDIS_URL:
        logger.error("REDIS_URL environment variable required")
        return 1

    redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)
    try:
        redis_client.ping()
    except redis.RedisError as e:
        logger.error("Cannot start without Redis connection: %s", e)
        return 1
    logger.info("Connected to Redis: %s", config.REDIS_URL)

    NotificationWorker(redis_client, build_transport()).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
