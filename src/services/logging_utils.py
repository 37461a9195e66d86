"""Service layer logging utilities.

Provides structured logging functions for workflow operations, enabling
consistent log format and context across packet, dyeing, production and
dispatch services.

Usage:
    from src.services.logging_utils import get_service_logger, log_operation

    logger = get_service_logger(__name__)

    # Log successful operation
    log_operation(
        logger,
        operation="approve_packet",
        outcome="success",
        order_item_id=123,
        packet_round=2,
    )

    # Log a rejected transition
    log_operation(
        logger,
        operation="complete_packet",
        outcome="unpicked_lines",
        level=logging.WARNING,
        order_item_id=123,
        unpicked=[41, 42],
    )
"""

import logging
from typing import Any

LOGGER_PREFIX = "fulfillment_tracker.services"

# LogRecord attributes that cannot be overwritten through ``extra``
_RESERVED = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def get_service_logger(name: str) -> logging.Logger:
    """
    Get a logger configured for service operations.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Logger instance under the 'fulfillment_tracker.services' prefix.

    Example:
        >>> logger = get_service_logger(__name__)
        >>> logger.name
        'fulfillment_tracker.services.packet_service'
    """
    if "." in name:
        name = name.split(".")[-1]
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


def log_operation(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Log a service operation with structured context.

    The message is "<operation>: <outcome>"; the operation, outcome and
    every context field travel on the record via ``extra``. Context keys
    that clash with LogRecord attributes are prefixed with ``ctx_``.

    Args:
        logger: Logger instance to use
        operation: Operation name (e.g., "assign_packet", "reject_dyeing")
        outcome: Outcome description (e.g., "success", "state_conflict")
        level: Log level (default: INFO). Use DEBUG for verbose/frequent logs.
        **context: Additional context fields (entity IDs, sections, error details)
    """
    extra = {"operation": operation, "outcome": outcome}
    for key, value in context.items():
        extra[f"ctx_{key}" if key in _RESERVED else key] = value
    logger.log(level, f"{operation}: {outcome}", extra=extra)
