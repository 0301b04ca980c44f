"""
Domain errors for the storefront API.

Services raise these; main.py translates them into the
{"success": false, "message": ...} envelope exactly once.
"""


class ShopError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(ShopError):
    status_code = 401
    default_message = "Invalid email or password"


class EmailExists(ShopError):
    default_message = "Email already exists"


class WrongCurrentPassword(ShopError):
    default_message = "Current password is incorrect"


class CartNotFound(ShopError):
    default_message = "Cart not found"


class EmptyCart(ShopError):
    default_message = "Cart is empty"


class NotFound(ShopError):
    default_message = "Not found"


class CartConflict(ShopError):
    status_code = 409
    default_message = "Cart was modified concurrently, please retry"


class Unauthorized(ShopError):
    status_code = 401
    default_message = "Not authenticated"


class InvalidToken(Unauthorized):
    default_message = "Invalid token"


class TokenExpired(Unauthorized):
    default_message = "Token expired"


class Forbidden(ShopError):
    status_code = 403
    default_message = "Access denied"


class RoleMappingError(Forbidden):
    default_message = "Authentication failed due to invalid user role. Please contact administrator"


class UnknownEnumValue(ValueError):
    """Raised when a persisted status value does not decode."""


class DatabaseUnavailable(ShopError):
    status_code = 503
    default_message = "Database not configured"
