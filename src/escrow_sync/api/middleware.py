"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware: injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware: catches domain exceptions -> structured JSON errors
    3. CORSMiddleware
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from escrow_sync.domain.exceptions import (
    ChainAdapterError,
    DeadlineInvariantViolationError,
    EscrowNotFoundError,
    EscrowSyncError,
    InvalidEscrowRecordError,
    InvalidNetworkError,
    NetworkInactiveError,
    NetworkNotFoundError,
    TradeNotFoundError,
    UnsupportedChainOperationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)


def _error(status_code: int, exc: EscrowSyncError) -> JSONResponse:
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
        except (NetworkNotFoundError, EscrowNotFoundError, TradeNotFoundError) as exc:
            logger.warning("resource.not_found", error=exc.message, code=exc.code)
            return _error(404, exc)
        except InvalidEscrowRecordError as exc:
            logger.warning("escrow.invalid_record", field=exc.field, reason=exc.reason)
            return _error(422, exc)
        except (NetworkInactiveError, InvalidNetworkError, UnsupportedChainOperationError) as exc:
            logger.warning("request.rejected", error=exc.message, code=exc.code)
            return _error(400, exc)
        except DeadlineInvariantViolationError as exc:
            logger.warning("trade.deadline_violation", trade_id=exc.trade_id, detail=exc.detail)
            return _error(409, exc)
        except ChainAdapterError as exc:
            logger.error("chain.error", error=exc.message, tx_id=exc.tx_id)
            return _error(502, exc)
        except EscrowSyncError as exc:
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
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Middleware is applied bottom-up, so the last added middleware runs first.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (outermost)
    app.add_middleware(RequestIDMiddleware)
