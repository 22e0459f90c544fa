"""
Error taxonomy for the order core. HTTP mapping lives in main.py.
"""


class OrderDeskError(Exception):
    code = "error"


class OrderNotFound(OrderDeskError):
    code = "not_found"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class InvalidTransition(OrderDeskError):
    """Action is not legal for the order's current status (or not for this actor)."""
    code = "invalid_transition"

    def __init__(self, current_status: str, action: str):
        self.current_status = current_status
        self.action = action
        super().__init__(f"Action '{action}' is not allowed from status '{current_status}'")


class VersionConflict(OrderDeskError):
    """Order changed since it was read. Caller should re-fetch and retry."""
    code = "version_conflict"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} was modified concurrently; re-read and retry")


ConflictRetryable = VersionConflict


class StorageFailure(OrderDeskError):
    """Persistence collaborator failed. Never retried by the core."""
    code = "storage_failure"


class InvalidOrder(OrderDeskError):
    code = "invalid_order"
