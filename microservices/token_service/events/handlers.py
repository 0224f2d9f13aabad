"""
Token Service Event Handlers

Handle events from other services that create or delete ledgers and that
deliver payment outcomes.
"""

import logging
from typing import Any, Dict, Union

from ..models import SettlementOutcome
from ..protocols import TokenServiceError

logger = logging.getLogger(__name__)


def extract_event_data(event_or_data: Union[Dict[str, Any], Any]) -> Dict[str, Any]:
    """
    Extract data from either an Event object or a raw dict.

    Handles both:
    - Event objects with .data attribute (from NATS)
    - Raw dict (for testing or direct calls)
    """
    if hasattr(event_or_data, 'data'):
        return event_or_data.data
    return event_or_data


# ============================================================================
# Event Handlers
# ============================================================================


async def handle_user_created(event_or_data: Union[Dict[str, Any], Any], token_service=None):
    """
    Handle user.created event from account_service

    Creates the user's zero ledger.

    Event data:
        - user_id: User ID
    """
    try:
        event_data = extract_event_data(event_or_data)
        user_id = event_data.get("user_id")

        if not user_id:
            logger.warning("user.created event missing user_id")
            return

        if token_service:
            _, created = await token_service.create_ledger(user_id)
            logger.info(f"user.created for {user_id}: ledger {'created' if created else 'already present'}")

    except Exception as e:
        logger.error(f"Error handling user.created event: {e}")


async def handle_user_deleted(event_or_data: Union[Dict[str, Any], Any], token_service=None):
    """
    Handle user.deleted event from account_service

    The ledger is deleted together with its owner.
    """
    try:
        event_data = extract_event_data(event_or_data)
        user_id = event_data.get("user_id")

        if not user_id:
            logger.warning("user.deleted event missing user_id")
            return

        if token_service:
            deleted = await token_service.delete_ledger(user_id)
            logger.info(f"user.deleted for {user_id}: ledger {'deleted' if deleted else 'absent'}")

    except Exception as e:
        logger.error(f"Error handling user.deleted event: {e}")


async def handle_payment_outcome(
    event_or_data: Union[Dict[str, Any], Any],
    outcome: SettlementOutcome,
    settlement_handler=None,
):
    """
    Handle payment.completed / payment.failed events from payment_service

    Event data:
        - transaction_id: Settlement transaction id (required)
        - subject_type, subject_ref, amount: informational
    """
    try:
        event_data = extract_event_data(event_or_data)
        transaction_id = event_data.get("transaction_id")

        if not transaction_id:
            logger.warning(f"payment event ({outcome.value}) missing transaction_id")
            return

        if settlement_handler:
            result = await settlement_handler.apply_settlement(transaction_id, outcome, event_data)
            logger.info(
                f"Payment {outcome.value} for {transaction_id}: applied={result.applied} "
                f"status={result.status.value}"
            )

    except TokenServiceError as e:
        logger.error(f"Settlement of payment event failed: {e}")
    except ValueError as e:
        logger.error(f"Payment event cannot be settled: {e}")
    except Exception as e:
        logger.error(f"Error handling payment event: {e}", exc_info=True)


def get_event_handlers(token_service=None, settlement_handler=None) -> Dict[str, callable]:
    """
    Return a mapping of event types to handler functions

    Used in main.py to register event subscriptions.

    Events subscribed:
        - user.created: create ledger
        - user.deleted: delete ledger
        - payment.completed: apply settlement
        - payment.failed: mark settlement failed
    """
    return {
        "user.created": lambda event: handle_user_created(event, token_service),
        "user.deleted": lambda event: handle_user_deleted(event, token_service),
        "payment.completed": lambda event: handle_payment_outcome(
            event, SettlementOutcome.SUCCESS, settlement_handler
        ),
        "payment.failed": lambda event: handle_payment_outcome(
            event, SettlementOutcome.FAILURE, settlement_handler
        ),
    }


__all__ = [
    "extract_event_data",
    "handle_user_created",
    "handle_user_deleted",
    "handle_payment_outcome",
    "get_event_handlers",
]
