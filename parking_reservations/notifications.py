"""
Notification sinks

Fire-and-forget: the engine calls notify() after a state change has
committed and only logs failures.
"""
import json
import logging
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, user_id: UUID, notification_type: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationSink:
    """Writes notifications to the log (default when no transport is wired)"""

    async def notify(self, user_id: UUID, notification_type: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notify {user_id}: {notification_type} {payload.get('reference_code', '')}")


class RedisNotificationSink:
    """
    Publishes notifications as JSON on a per-user Redis channel

    Channel: {prefix}:{user_id}; real-time gateways subscribe and fan out.
    """

    def __init__(self, redis_client: redis.Redis, channel_prefix: str = "notifications"):
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix

    @classmethod
    def from_settings(cls, settings, redis_client: Optional[redis.Redis] = None) -> "RedisNotificationSink":
        return cls(
            redis_client or redis.from_url(settings.redis_url),
            channel_prefix=settings.notification_channel_prefix,
        )

    async def notify(self, user_id: UUID, notification_type: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({
            "type": notification_type,
            "user_id": str(user_id),
            "payload": payload,
        }, default=str)
        receivers = await self.redis_client.publish(f"{self.channel_prefix}:{user_id}", message)
        logger.debug(f"Published {notification_type} to {receivers} subscriber(s) of user {user_id}")
