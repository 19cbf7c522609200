# backend/app/services/__init__.py
"""
Services layer for business logic.
Keeps API endpoints thin and business logic testable and reusable.
"""

from backend.app.services.inventory import (
    InventoryService,
    InventoryServiceError,
    VariantNotFoundError,
    InsufficientStockError,
    ReservationNotFoundError,
    InvalidQuantityError,
    InvalidHolderError,
    ReservationConflictError,
    ConfirmResult,
    StockSummary,
)
from backend.app.services.finalization import (
    OrderFinalizer,
    OrderNotFoundError,
    PaymentOutcome,
    PaymentServiceError,
    increment_coupon_usage,
)
from backend.app.services.payment import PaymentService
from backend.app.services.checkout import CheckoutService, CheckoutItem
from backend.app.services.reconciliation import PaymentReconciler, ReconciliationReport
from backend.app.services.khalti import (
    KhaltiClient,
    GatewayError,
    GatewayUnavailableError,
    GatewayTimeoutError,
    PaymentNotConfiguredError,
)

__all__ = [
    # Inventory
    "InventoryService",
    "InventoryServiceError",
    "VariantNotFoundError",
    "InsufficientStockError",
    "ReservationNotFoundError",
    "InvalidQuantityError",
    "InvalidHolderError",
    "ReservationConflictError",
    "ConfirmResult",
    "StockSummary",
    # Orders and payments
    "OrderFinalizer",
    "OrderNotFoundError",
    "PaymentOutcome",
    "PaymentServiceError",
    "increment_coupon_usage",
    "PaymentService",
    "CheckoutService",
    "CheckoutItem",
    "PaymentReconciler",
    "ReconciliationReport",
    # Gateway
    "KhaltiClient",
    "GatewayError",
    "GatewayUnavailableError",
    "GatewayTimeoutError",
    "PaymentNotConfiguredError",
]
