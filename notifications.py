"""Redis helpers for realtime queue updates and outgoing SMS.

Redis is optional.  When ``REDIS_URL`` is not set (or the server cannot be
reached) every helper here is a logged no-op and the queue keeps working.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

import redis

from clock import isoformat, utc_now

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")

QUEUE_UPDATES_CHANNEL = "clinic:queue_updates"
SMS_QUEUE_KEY = "sms_notifications"
SMS_LOG_KEY = "sms_logs"

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get the Redis client if one is configured and reachable."""
    global _redis_client
    if not REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
            _redis_client = client
        except redis.RedisError as e:
            logger.error(f"Redis connection failed: {e}")
            return None

    return _redis_client


def publish_queue_update(date_key: str, entries: List[Dict[str, Any]]) -> None:
    """Publish an ordered queue snapshot for dashboards listening on Redis."""
    redis_client = get_redis()
    if not redis_client:
        return
    try:
        redis_client.publish(QUEUE_UPDATES_CHANNEL, json.dumps({
            "type": "queue_update",
            "date": date_key,
            "data": entries,
            "timestamp": isoformat(utc_now()),
        }))
    except redis.RedisError as e:
        logger.error(f"Redis publish error: {e}")


def enqueue_sms(phone: Optional[str], message: str, notification_type: str, **extra: Any) -> bool:
    """Queue an SMS for ``notification_worker.py``.  Returns True if queued."""
    if not phone:
        return False
    redis_client = get_redis()
    if not redis_client:
        return False
    payload = {
        "phone": phone,
        "message": message,
        "type": notification_type,
        "timestamp": isoformat(utc_now()),
        **extra,
    }
    try:
        redis_client.lpush(SMS_QUEUE_KEY, json.dumps(payload))
    except redis.RedisError as e:
        logger.error(f"Failed to queue SMS notification: {e}")
        return False
    logger.info(f"Queued {notification_type} SMS for ...{phone[-4:]}")
    return True


def called_message(queue_number: str, patient_name: str) -> str:
    return (
        f"Hi {patient_name}, queue number {queue_number} is now being called. "
        f"Please proceed to the front desk."
    )
