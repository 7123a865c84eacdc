import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


class ProxyError(HTTPException):
    """An error that maps straight onto one failure response.

    ``error`` is the stable kind callers can switch on, ``detail`` is the
    human readable message.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal Server Error"

    def __init__(self, message: str):
        super().__init__(status_code=self.status_code, detail=message)

    @property
    def message(self) -> str:
        return self.detail

    def to_body(self) -> dict:
        return {"success": False, "error": self.error, "message": self.detail}


class Unauthorized(ProxyError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthorized"


class Forbidden(ProxyError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"


class NotFound(ProxyError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"


class MethodNotAllowed(ProxyError):
    status_code = status.HTTP_405_METHOD_NOT_ALLOWED
    error = "Method Not Allowed"


class BadRequest(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad Request"


class PayloadTooLarge(ProxyError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    error = "Payload Too Large"


class ExecutionFailed(ProxyError):
    error = "Execution failed"


class InternalError(ProxyError):
    error = "Internal Server Error"


class EndpointValidationError(ValueError):
    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class EndpointActivationError(ValueError):
    pass


async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logging.error(f"Unexpected error handling {request.method} {request.url.path}: {exc}", exc_info=exc)
    error = InternalError("An unexpected error occurred")
    return JSONResponse(status_code=error.status_code, content=error.to_body())
