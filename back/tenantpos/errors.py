"""
Typed errors raised by the tenant resolver and the order engine.

Every error knows its HTTP status and a machine-readable code so the API layer
can render it without special-casing. `InsufficientStock` is a warning: it is
collected on responses, never raised out of an order flow.
"""


class PosError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **extra):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.extra}


class UnknownTenant(PosError):
    """No active tenant is registered for the request's subdomain."""
    status_code = 500
    code = "unknown_tenant"

    def __init__(self, subdomain: str | None):
        self.subdomain = subdomain
        if subdomain:
            message = f"Unknown tenant: {subdomain}"
        else:
            message = "No tenant information in request"
        super().__init__(message, subdomain=subdomain)


class ConnectionFailure(PosError):
    """The tenant's database pool could not be established or acquired."""
    status_code = 503
    code = "database_unavailable"


class QueryTimeout(PosError):
    status_code = 504
    code = "query_timeout"


class NotFound(PosError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} not found: {identifier}", entity=entity.lower())


class ValidationError(PosError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, reason: str = "invalid"):
        self.reason = reason
        super().__init__(message, reason=reason)


class OrderClosed(ValidationError):
    """Raised when mutating an order that already reached paid or cancelled."""
    status_code = 409
    code = "order_closed"

    def __init__(self, order_id: int, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(
            f"Order {order_id} is {status} and can no longer be modified",
            reason="terminal_status",
        )


class InsufficientStock(PosError):
    """Low stock warning (does not block the sale)"""
    code = "insufficient_stock"

    def __init__(self, product_id: int, product_name: str, required: int, available: int):
        self.product_id = product_id
        self.product_name = product_name
        self.required = required
        self.available = available
        super().__init__(
            f"Low stock warning for {product_name}: needed {required}, available {available}",
            product_id=product_id,
            required=required,
            available=available,
        )
