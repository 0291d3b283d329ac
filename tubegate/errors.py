import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500

    def __init__(self, error: str, message: str | None = None):
        super().__init__(message or error)
        self.error = error
        self.message = message

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.message:
            body["message"] = self.message
        return body


class ValidationError(ApiError):
    """Missing or malformed client input."""

    status_code = 400


class NotFoundError(ApiError):
    status_code = 404


class CollaboratorError(ApiError):
    """yt-dlp, the source CDN or ffmpeg failed; the message is passed through."""

    status_code = 500


def install_error_handlers(app: FastAPI, debug: bool = False) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.error, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ())[1:])}: {err.get('msg')}" for err in errors
        )
        return JSONResponse(status_code=400, content={"error": "Invalid request parameters", "message": message})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"error": "Internal server error"}
        if debug:
            body["message"] = str(exc)
        return JSONResponse(status_code=500, content=body)
