"""Status-change notification channel."""

import json
import logging
from typing import Protocol

from redis import Redis

from flow_engine.models.state import FlowState

logger = logging.getLogger(__name__)


class StatusNotifier(Protocol):
    """Receives flow status changes after they have been persisted."""

    def notify_status_changed(self, flow: FlowState) -> None: ...


class LoggingNotifier:
    """Writes status changes to the log."""

    def notify_status_changed(self, flow: FlowState) -> None:
        logger.info(
            f"Flow {flow.flow_id} ({flow.flow_type}) is now {flow.status.value} "
            f"at step {flow.current_step_name or '-'}"
        )


class RedisStatusNotifier:
    """Publishes status changes on a Redis pub/sub channel."""

    def __init__(self, redis_client: Redis, channel: str = "flow-status"):
        if redis_client is None:
            raise ValueError("redis_client is required")
        if not channel:
            raise ValueError("channel is required")
        self._redis = redis_client
        self._channel = channel

    @staticmethod
    def payload(flow: FlowState) -> dict:
        return {
            "flow_id": flow.flow_id,
            "flow_type": flow.flow_type,
            "status": flow.status.value,
            "user_id": flow.user_id,
            "correlation_id": flow.correlation_id,
            "current_step_name": flow.current_step_name,
            "pause_reason": flow.pause_reason.value if flow.pause_reason else None,
            "error": flow.last_error.message if flow.last_error else None,
            "updated_at": flow.updated_at.isoformat(),
        }

    def notify_status_changed(self, flow: FlowState) -> None:
        self._redis.publish(self._channel, json.dumps(self.payload(flow)))


def notify_safely(notifier: StatusNotifier | None, flow: FlowState) -> None:
    """Fire-and-forget notification; failures never reach the caller."""
    if notifier is None:
        return
    try:
        notifier.notify_status_changed(flow)
    except Exception as e:
        logger.warning(f"Status notification failed for flow {flow.flow_id}: {e}")
