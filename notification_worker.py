#!/usr/bin/env python3
"""
SMS Notification Worker

Drains the ``sms_notifications`` Redis list filled by the API (patient
called, appointment reminders) and delivers each message through Twilio.
Run it as a separate background process next to the web app.

Usage:
    python notification_worker.py

Environment Variables:
    REDIS_URL - Redis connection URL (required)
    TWILIO_ACCOUNT_SID - Twilio Account SID
    TWILIO_AUTH_TOKEN - Twilio Auth Token
    TWILIO_SMS_NUMBER - Sending number, e.g. +15005550006

Without Twilio credentials messages are logged instead of sent.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Optional

import redis
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from clock import isoformat, utc_now
from notifications import SMS_LOG_KEY, SMS_QUEUE_KEY

logger = logging.getLogger(__name__)

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_SMS_NUMBER = os.getenv("TWILIO_SMS_NUMBER")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")


class NotificationWorker:
    def __init__(self, redis_client: redis.Redis, twilio_client: Optional[Client] = None) -> None:
        self.redis_client = redis_client
        self.twilio_client = twilio_client

    @classmethod
    def from_env(cls) -> "NotificationWorker":
        redis_client = redis.from_url(REDIS_URL, decode_responses=True)
        redis_client.ping()
        logger.info(f"Connected to Redis: {REDIS_URL}")

        twilio_client = None
        if TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_SMS_NUMBER:
            twilio_client = Client(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)
            logger.info(f"Sending SMS from {TWILIO_SMS_NUMBER}")
        else:
            logger.warning("Twilio not configured - messages will only be logged")
        return cls(redis_client, twilio_client)

    def send_sms(self, to_number: str, message: str) -> bool:
        if not self.twilio_client:
            logger.info(f"[SIMULATION] SMS to ...{to_number[-4:]}: {message[:50]}")
            return True
        try:
            sent = self.twilio_client.messages.create(from_=TWILIO_SMS_NUMBER, body=message, to=to_number)
        except TwilioRestException as e:
            logger.error(f"Failed to send SMS to ...{to_number[-4:]}: {e}")
            return False
        logger.info(f"SMS sent to ...{to_number[-4:]}: {sent.sid}")
        return True

    def handle(self, notification: Dict[str, Any]) -> bool:
        """Deliver one queued notification.  A failed send is requeued once."""
        phone = notification.get("phone")
        message = notification.get("message")
        if not phone or not message:
            logger.warning(f"Dropping invalid notification: {notification}")
            return False

        if self.send_sms(phone, message):
            self.redis_client.lpush(SMS_LOG_KEY, json.dumps({
                "phone": phone[-4:],
                "type": notification.get("type"),
                "sent_at": isoformat(utc_now()),
                "status": "sent",
            }))
            return True

        if not notification.get("retry"):
            self.redis_client.lpush(SMS_QUEUE_KEY, json.dumps({**notification, "retry": True}))
        return False

    def process_notifications(self, max_messages: Optional[int] = None) -> int:
        """Block on the queue and send messages until interrupted.

        ``max_messages`` stops the loop after that many notifications have
        been taken off the list.
        """
        logger.info("SMS worker started - waiting for notifications")
        handled = 0
        while max_messages is None or handled < max_messages:
            try:
                item = self.redis_client.brpop(SMS_QUEUE_KEY, timeout=5)
                if not item:
                    continue
                handled += 1
                self.handle(json.loads(item[1]))
            except json.JSONDecodeError as e:
                logger.error(f"Skipping malformed notification: {e}")
            except redis.RedisError as e:
                logger.error(f"Redis error while processing notifications: {e}")
                time.sleep(1)
        return handled

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue_length": self.redis_client.llen(SMS_QUEUE_KEY),
            "total_sent": self.redis_client.llen(SMS_LOG_KEY),
            "last_check": isoformat(utc_now()),
        }


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        worker = NotificationWorker.from_env()
    except redis.RedisError as e:
        logger.error(f"Cannot start without Redis connection: {e}")
        return
    try:
        worker.process_notifications()
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")


if __name__ == "__main__":
    main()
