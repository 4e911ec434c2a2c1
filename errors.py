"""Exceptions raised by the shop workflows."""


class ShopError(Exception):
    """Base exception for all shop errors."""

    pass


# --- Validation ---


class ValidationFailedError(ShopError):
    """Raised when request input is missing or malformed."""

    pass


class InvalidIdError(ValidationFailedError):
    """Raised when an id is not a valid ObjectId."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid ID: {value}")


class EmptyCartError(ValidationFailedError):
    def __init__(self):
        super().__init__("Cart is empty")


class IncompleteAddressError(ValidationFailedError):
    """Raised when the user has no complete shipping address."""

    def __init__(self, missing=None):
        self.missing = list(missing or [])
        msg = "Please provide a complete shipping address (street, city, postal code)"
        if self.missing:
            msg = f"{msg}; missing: {', '.join(self.missing)}"
        super().__init__(msg)


class InvalidTransitionError(ValidationFailedError):
    """Raised when an order status change is not allowed from its current state."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot change order status from '{current}' to '{target}'")


class RefundNotAllowedError(ValidationFailedError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Refund not allowed: {reason}")


class InvalidRefundLineError(ValidationFailedError):
    def __init__(self, product_id: str, reason: str):
        self.product_id = product_id
        super().__init__(f"Invalid refund line for product {product_id}: {reason}")


# --- Not found ---


class NotFoundError(ShopError):
    """Raised when an entity does not exist."""

    entity = "Resource"

    def __init__(self, entity_id: str = ""):
        self.entity_id = entity_id
        msg = f"{self.entity} not found"
        if entity_id:
            msg = f"{msg}: {entity_id}"
        super().__init__(msg)


class UserNotFoundError(NotFoundError):
    entity = "User"


class ProductNotFoundError(NotFoundError):
    entity = "Product"


class CategoryNotFoundError(NotFoundError):
    entity = "Category"


class CartNotFoundError(NotFoundError):
    entity = "Cart"


class OrderNotFoundError(NotFoundError):
    entity = "Order"


class RefundNotFoundError(NotFoundError):
    entity = "Refund request"


class ReviewNotFoundError(NotFoundError):
    entity = "Review"


class NotificationNotFoundError(NotFoundError):
    entity = "Notification"


class WishlistItemNotFoundError(NotFoundError):
    entity = "Wishlist item"


class InvoiceNotFoundError(NotFoundError):
    entity = "Invoice"


# --- Authorization ---


class AuthenticationError(ShopError):
    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class PermissionDeniedError(ShopError):
    def __init__(self, message: str = "You do not have permission to perform this action"):
        super().__init__(message)


# --- Conflict ---


class StockConflictError(ShopError):
    """Raised when a product is missing or cannot cover the requested quantity."""

    def __init__(self, product_id: str, requested: int = 0):
        self.product_id = product_id
        self.requested = requested
        super().__init__(f"Not enough stock for product {product_id}")


class RefundAlreadyProcessedError(ShopError):
    def __init__(self, refund_id: str, status: str):
        self.refund_id = refund_id
        self.status = status
        super().__init__(f"Refund {refund_id} already processed (status: {status})")


class DuplicateError(ShopError):
    pass


# --- Configuration ---


class DatabaseNotConfiguredError(ShopError):
    def __init__(self):
        super().__init__("Database not configured")


# --- Integration (logged, never returned to clients) ---


class InvoiceTooLargeError(ShopError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Invoice is {size} bytes, limit is {limit}")


class NotificationDeliveryError(ShopError):
    pass
