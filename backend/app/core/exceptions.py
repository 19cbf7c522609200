"""
Unified base exception classes for all services.

Each service extends ServiceError with its own base (e.g. InventoryServiceError)
so that routers can translate any of them with a single `except ServiceError`.
"""


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class InvalidStatusTransitionError(ServiceError):
    """An order or payment status change that the state machine forbids."""

    def __init__(self, kind: str, current: str, target: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Illegal {kind} status transition: {current} -> {target}", 409)
