from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from refund_recon.api.routes_refunds import router as refunds_router
from refund_recon.core.config import get_settings
from refund_recon.core.logging import configure_logging
from refund_recon.domain.errors import RefundError
from refund_recon.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info("refund service ready: env=%s gateway_mode=%s", settings.env, settings.gateway_mode)


def _validation_details(exc: RequestValidationError) -> dict:
    field_errors: dict[str, list[str]] = {}
    form_errors: list[str] = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        message = str(error.get("msg", "invalid"))
        if loc:
            field_errors.setdefault(".".join(loc), []).append(message)
        else:
            form_errors.append(message)
    return {"fieldErrors": field_errors, "formErrors": form_errors}


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "code": "VALIDATION_ERROR",
            "details": _validation_details(exc),
        },
    )


@app.exception_handler(RefundError)
async def refund_error_handler(_: Request, exc: RefundError):
    if exc.status_code >= 500:
        logger.error("refund request failed: code=%s order_id=%s error=%s", exc.code, exc.order_id, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(refunds_router)
