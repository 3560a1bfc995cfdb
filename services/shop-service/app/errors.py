import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ShopError(Exception):
    status_code = 500
    message = "Unexpected error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    @property
    def error(self) -> str:
        return type(self).__name__


class ValidationError(ShopError):
    status_code = 400
    message = "Invalid request"


class NotFound(ShopError):
    status_code = 404
    message = "Not found"


class OrderNotFound(NotFound):
    message = "Order not found"


class PaymentNotFound(NotFound):
    message = "Payment not found"


class CartItemNotFound(NotFound):
    message = "Item not found in cart"


class ProductNotFound(NotFound):
    message = "Product not found"


class Forbidden(ShopError):
    status_code = 403
    message = "Not authorized"


class Conflict(ShopError):
    status_code = 400
    message = "Conflicting state"


class EmptyCart(Conflict):
    message = "Cart is empty, cannot create order"


class AlreadyPaid(Conflict):
    message = "Order has already been paid"


class InvalidTransition(Conflict):
    message = "Status transition not allowed"


class StockConflict(Conflict):
    message = "Stock is being updated concurrently, try again"


class InsufficientStock(Conflict):
    message = "Not enough product in stock"

    def __init__(self, message: str | None = None, *, product_id: int | None = None):
        super().__init__(message)
        self.product_id = product_id


class MethodFailure(ShopError):
    status_code = 400
    message = "Payment authorization failed"


class Unexpected(ShopError):
    status_code = 500
    message = "Unexpected error"


def _envelope(status_code: int, message: str, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error": error},
    )


def install_handlers(app: FastAPI) -> None:
    @app.exception_handler(ShopError)
    async def shop_error_handler(request: Request, exc: ShopError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _envelope(exc.status_code, exc.message, exc.error)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        error = {401: "Unauthorized", 403: "Forbidden", 404: "NotFound"}.get(exc.status_code, "HTTPError")
        return _envelope(exc.status_code, str(exc.detail), error)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg')}" if where else str(first.get("msg", "Invalid request"))
        return _envelope(400, message, "ValidationError")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("%s %s failed", request.method, request.url.path, exc_info=exc)
        return _envelope(500, Unexpected.message, "Unexpected")
