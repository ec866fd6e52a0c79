# network_engine/events/event_bus.py
"""
In-process event bus connecting the engine to the host application
(notifications, payouts, dashboards).
"""
from typing import Any, Callable, Dict, List
import inspect
import logging

logger = logging.getLogger(__name__)


def _handlerName(handler: Callable) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventBus:
    """
    Process-wide registry of event handlers.

    Handlers may be plain callables or coroutine functions. Each gets its
    own shallow copy of the payload; a failing handler is logged and the
    remaining handlers still run.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._handlers = {}
        return cls._instance

    def subscribe(self, eventName: str, handler: Callable):
        handlers = self._handlers.setdefault(eventName, [])
        if handler in handlers:
            return
        handlers.append(handler)
        logger.debug(f"{_handlerName(handler)} subscribed to {eventName}")

    def unsubscribe(self, eventName: str, handler: Callable):
        handlers = self._handlers.get(eventName, [])
        if handler in handlers:
            handlers.remove(handler)
            logger.debug(f"{_handlerName(handler)} unsubscribed from {eventName}")

    def handlersFor(self, eventName: str) -> List[Callable]:
        return list(self._handlers.get(eventName, []))

    async def emit(self, eventName: str, data: Dict[str, Any]) -> List[str]:
        """
        Deliver data to every handler of eventName, in subscription order.

        Returns:
            Names of the handlers that raised
        """
        failed = []
        for handler in self.handlersFor(eventName):
            try:
                outcome = handler(dict(data))
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                failed.append(_handlerName(handler))
                logger.error(
                    f"Handler {_handlerName(handler)} failed on {eventName}: {e}",
                    exc_info=True
                )
        return failed

    def clear(self):
        self._handlers.clear()


eventBus = EventBus()


class EngineEvents:
    """Standard engine events."""

    MEMBER_REGISTERED = "member.registered"
    MEMBER_PLACED = "member.placed"

    TRANSACTION_CONFIRMED = "transaction.confirmed"
    COMMISSION_CALCULATED = "commission.calculated"
    COMMISSION_PAID = "commission.paid"

    TIER_CHANGED = "tier.changed"

    PERIOD_BONUSES_CALCULATED = "period_bonuses.calculated"
    COMPLIANCE_VIOLATION = "compliance.violation"
