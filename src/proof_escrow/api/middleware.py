"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles the browser dashboard
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from proof_escrow.domain.exceptions import (
    AuthenticationError,
    DealValidationError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentError,
    PermissionDeniedError,
    ProofEscrowError,
    ReviewClosedError,
    SettlementInProgressError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

    from proof_escrow.config import Settings

logger = structlog.get_logger(__name__)


def _error(status_code: int, exc: ProofEscrowError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "message": exc.message},
    )


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except NotFoundError as exc:
            logger.warning("request.not_found", error=exc.message)
            return _error(404, exc)
        except InvalidStateTransitionError as exc:
            logger.warning(
                "state_machine.invalid_transition",
                current=exc.current_state,
                attempted=exc.attempted,
            )
            return _error(409, exc)
        except ReviewClosedError as exc:
            logger.warning("review.already_closed", review_id=exc.review_id)
            return _error(409, exc)
        except SettlementInProgressError as exc:
            logger.warning("settlement.lock_busy", key=exc.key)
            return _error(409, exc)
        except AuthenticationError as exc:
            logger.warning("auth.rejected", path=request.url.path)
            return _error(401, exc)
        except PermissionDeniedError as exc:
            logger.warning("auth.forbidden", error=exc.message)
            return _error(403, exc)
        except DealValidationError as exc:
            logger.info("request.invalid", error=exc.message)
            return _error(400, exc)
        except PaymentError as exc:
            logger.error("payment.failed", error=exc.message)
            return _error(502, exc)
        except ProofEscrowError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return _error(400, exc)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(ErrorHandlerMiddleware)

    app.add_middleware(RequestIDMiddleware)
