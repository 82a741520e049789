"""
Error taxonomy. Each error carries a stable code and the HTTP status the API maps it to.
"""


class OrderFlowError(Exception):
    code = "ERROR"
    status_code = 400


class OrderNotFound(OrderFlowError):
    """Order id does not exist."""
    code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"order {order_id} not found")


class InvalidTransition(OrderFlowError):
    """Target status is not reachable from the current status."""
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current_status: str, target_status: str):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"cannot move order from {current_status} to {target_status}")


class Forbidden(OrderFlowError):
    """Acting role or user may not request this change."""
    code = "FORBIDDEN"
    status_code = 403


class PreconditionFailed(OrderFlowError):
    code = "PRECONDITION_FAILED"
    status_code = 412


class UnknownPayment(OrderFlowError):
    code = "UNKNOWN_PAYMENT"
    status_code = 404

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"payment {payment_id} is not known")


class ProviderUnavailable(OrderFlowError):
    """Payment provider timed out or errored. Transient; retried by the scheduler."""
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503


class InvalidCourier(OrderFlowError):
    code = "INVALID_COURIER"
    status_code = 422

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"user {user_id} is not a courier")


class OrderNotReady(OrderFlowError):
    code = "ORDER_NOT_READY"
    status_code = 409


class InvalidOrder(OrderFlowError):
    """Order payload rejected at creation (empty, unknown item, bad quantity)."""
    code = "INVALID_ORDER"
    status_code = 422
