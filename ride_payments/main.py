import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from ride_payments import config
from ride_payments.database import Base, engine
from ride_payments.errors import PaymentsError
from ride_payments.logging_config import setup_logging
from ride_payments.paypal_routes import router as paypal_router
from ride_payments.responses import error_envelope, timestamp
from ride_payments.routes import payments_router, router as stripe_router

setup_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title=config.app_name())

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stripe_router)
app.include_router(paypal_router)
app.include_router(payments_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentsError)
async def payments_error_handler(request: Request, exc: PaymentsError):
    return error_envelope(exc.message, exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    fields = [part for part in errors[0]["loc"] if isinstance(part, str) and part not in ("body", "query", "path")] if errors else []
    target = fields[-1] if fields else "request body"
    logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
    return error_envelope(f"Invalid or missing {target}", 400)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "API endpoint not found" if exc.status_code == 404 else str(exc.detail)
    return error_envelope(message, exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    return error_envelope("Internal server error", 500)


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": timestamp()}
