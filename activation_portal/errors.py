from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class PortalError(Exception):
    kind = 'ERROR'
    status_code = 400
    default_message = 'Request failed'

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(PortalError):
    kind = 'UNAUTHENTICATED'
    status_code = 401
    default_message = 'Authentication required'

    def __init__(self) -> None:
        # never say whether the token was unknown, expired or revoked
        super().__init__(self.default_message)


class Forbidden(PortalError):
    kind = 'FORBIDDEN'
    status_code = 403
    default_message = 'Not permitted'

    def __init__(self) -> None:
        super().__init__(self.default_message)


class ValidationFailed(PortalError):
    kind = 'VALIDATION_FAILED'
    status_code = 422
    default_message = 'Invalid request'


class NotFound(PortalError):
    kind = 'NOT_FOUND'
    status_code = 404
    default_message = 'Not found'


class Conflict(PortalError):
    kind = 'CONFLICT'
    status_code = 409
    default_message = 'Conflicting state'


def error_body(exc: PortalError) -> dict:
    return {'error': {'kind': exc.kind, 'message': exc.message}}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PortalError)
    async def portal_error_handler(request: Request, exc: PortalError):
        headers = {'WWW-Authenticate': 'Bearer'} if isinstance(exc, Unauthenticated) else None
        return JSONResponse(status_code=exc.status_code, content=error_body(exc), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else None
        return JSONResponse(status_code=ValidationFailed.status_code, content=error_body(ValidationFailed(message)))
