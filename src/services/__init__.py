"""Services package - Business logic layer for the Garment Fulfillment Tracker.

This package contains all service modules that drive garment order items
from intake to dispatch.

Architecture:
- Services: Stateless functions organized by workflow stage
- Transactions: Managed via session_scope() context manager
- Exceptions: Consistent error handling via ServiceError hierarchy
- Transitions: Every status change goes through a transition table

Service Modules:
- catalog_service: Workers and products
- inventory_service: Raw materials, stock receipts and procurement demands
- bom_service: Versioned bills of materials per product size
- order_service: Orders, payments and item timelines
- inventory_matching_service: Inventory check against the BOM
- packet_service: Material packets, pick lists and packet verification
- dyeing_service: Per-section dyeing workflow
- production_service: Production head assignment and task chains
- qa_service: QA evidence and rejections
- client_approval_service: Client sign-off per section
- dispatch_service: Dispatch and order completion

Infrastructure:
- exceptions: Custom exception classes for service layer errors
- database: Session management and database utilities
- repository: Shared lookups, section record helpers and status roll-up
- transitions: Status transition tables
- status_aggregator: Order item and order status aggregation
"""

# Service modules
from . import (
    database,
    catalog_service,
    inventory_service,
    bom_service,
    order_service,
    inventory_matching_service,
    packet_service,
    dyeing_service,
    production_service,
    qa_service,
    client_approval_service,
    dispatch_service,
)

# Exceptions
from .exceptions import (
    ServiceError,
    ValidationError,
    NotFoundError,
    StateConflictError,
    ConcurrentUpdateError,
    IncompletePreconditionError,
)

__all__ = [
    "database",
    "catalog_service",
    "inventory_service",
    "bom_service",
    "order_service",
    "inventory_matching_service",
    "packet_service",
    "dyeing_service",
    "production_service",
    "qa_service",
    "client_approval_service",
    "dispatch_service",
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "StateConflictError",
    "ConcurrentUpdateError",
    "IncompletePreconditionError",
]
