# network_engine/events/handlers.py
"""
Event handlers for the network engine.
Process events from the event bus.
"""
import logging
from typing import Dict, Any

from core.db import get_session
from network_engine.services.commission_service import CommissionService
from network_engine.exceptions import InvalidTransactionStateError, ComplianceCapExceeded

logger = logging.getLogger(__name__)


async def handle_transaction_confirmed(data: Dict[str, Any]):
    """
    Handle TRANSACTION_CONFIRMED event: run the commission fan-out.

    Args:
        data: Event data with 'transactionId' key
    """
    transaction_id = data.get("transactionId")

    if not transaction_id:
        logger.error("TRANSACTION_CONFIRMED event missing transactionId")
        return

    logger.info(f"Processing commissions for transaction {transaction_id}")

    session = get_session()

    try:
        commission_service = CommissionService(session)
        result = await commission_service.processTransaction(transaction_id)

        if result.needsReview:
            logger.warning(
                f"✗ Transaction {transaction_id} marked for compliance review, "
                f"excess {result.violation.excessAmount}"
            )
        else:
            logger.info(
                f"✓ Commissions processed for transaction {transaction_id}: "
                f"{len(result.commissions)} commissions, total {result.totalAmount}"
            )

    except InvalidTransactionStateError as e:
        logger.warning(f"Transaction {transaction_id} deferred: {e}")

    except ComplianceCapExceeded as e:
        logger.error(f"Transaction {transaction_id} left unprocessed: {e}")

    except Exception as e:
        logger.error(
            f"Critical error processing transaction {transaction_id}: {e}",
            exc_info=True
        )

    finally:
        session.close()


def handle_tier_changed(data: Dict[str, Any]):
    """Log tier transitions for the audit trail of downstream consumers."""
    logger.info(
        f"Tier change for member {data.get('memberId')} in {data.get('periodId')}: "
        f"{data.get('previousTier')} → {data.get('newTier')} ({data.get('reason')})"
    )
