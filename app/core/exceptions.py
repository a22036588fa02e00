"""
Error taxonomy shared by the chat routes, the stream handler and the client.

Anything raised before a stream opens maps to an HTTP status; once the
stream is open the only error channel is the in-band ``error`` frame.
"""

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class ChatServiceError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message: str = "Internal server error"
    headers: dict | None = None

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.message, headers=self.headers)


class Unauthorized(ChatServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    public_message = "Unauthorized"
    headers = {"WWW-Authenticate": "Bearer"}


class InvalidRequest(ChatServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    public_message = "Invalid request"


class NotFound(ChatServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    public_message = "Chat not found"


class UpstreamFailure(ChatServiceError):
    """Provider or store failure after the stream opened; reported in-band."""
    public_message = "Stream interrupted"


class InternalFailure(ChatServiceError):
    public_message = "Failed to process chat request"


def register_exception_handlers(app: FastAPI) -> None:
    """Install the standard ``{status, message}`` error envelope on ``app``."""

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": False, "message": exc.detail},
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Malformed bodies are a 400 here, not FastAPI's default 422
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "body"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": False, "message": f"Invalid field: {field}"},
        )

    @app.exception_handler(ChatServiceError)
    async def chat_service_error_handler(request: Request, exc: ChatServiceError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": False, "message": exc.message},
            headers=exc.headers,
        )
