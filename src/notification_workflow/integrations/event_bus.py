"""
事件总线集成
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

from ..clock import utcnow


logger = logging.getLogger(__name__)


# 触发实例生命周期事件
TRIGGER_SUBMITTED = "trigger.submitted"
TRIGGER_CLAIMED = "trigger.claimed"
TRIGGER_COMPLETED = "trigger.completed"
TRIGGER_RETRY_SCHEDULED = "trigger.retry_scheduled"
TRIGGER_DEFERRED = "trigger.deferred"
TRIGGER_FAILED = "trigger.failed"
WORKFLOW_ACTIVATED = "workflow.activated"


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """进程内事件总线

    订阅者异常只记录日志，不会影响发布方。
    """

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """发布事件"""
        event = Event(
            topic=topic,
            payload=payload,
            headers=headers or {}
        )

        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))

        if subscribers:
            await asyncio.gather(
                *(self._notify_subscriber(subscriber, event) for subscriber in subscribers),
                return_exceptions=True
            )

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        """订阅事件"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            handlers = self.subscribers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self.subscribers[topic]

        logger.info(f"Unsubscribed from topic '{topic}'")

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        """通知订阅者"""
        try:
            if inspect.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
