# network_engine/events/setup.py
"""
Setup engine event handlers.
Register all event handlers with the event bus.
"""
import logging

from network_engine.events.event_bus import eventBus, EngineEvents
from network_engine.events.handlers import handle_transaction_confirmed, handle_tier_changed

logger = logging.getLogger(__name__)


def setup_engine_event_handlers():
    """
    Register all engine event handlers with the event bus.

    This function should be called during application startup.
    """
    logger.info("Setting up engine event handlers...")

    eventBus.subscribe(EngineEvents.TRANSACTION_CONFIRMED, handle_transaction_confirmed)
    logger.debug(f"Registered handler for {EngineEvents.TRANSACTION_CONFIRMED}")

    eventBus.subscribe(EngineEvents.TIER_CHANGED, handle_tier_changed)
    logger.debug(f"Registered handler for {EngineEvents.TIER_CHANGED}")

    logger.info("Engine event handlers registered successfully")


def teardown_engine_event_handlers():
    """
    Unregister all engine event handlers.
    Useful for testing or shutdown.
    """
    logger.info("Tearing down engine event handlers...")

    eventBus.unsubscribe(EngineEvents.TRANSACTION_CONFIRMED, handle_transaction_confirmed)
    eventBus.unsubscribe(EngineEvents.TIER_CHANGED, handle_tier_changed)

    logger.info("Engine event handlers unregistered")
