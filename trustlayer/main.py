import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from trustlayer.config import get_settings
from trustlayer.database import Base, SessionLocal, engine
from trustlayer.deps import (
    build_dispatcher,
    build_order_store,
    build_processor,
    get_payment_engine,
)
from trustlayer.errors import ProcessorError, SignatureError, TrustLayerError, VerificationError
from trustlayer.logging_config import configure_logging
from trustlayer.payments import PaymentLifecycleEngine
from trustlayer.routes import payments_router, verify_router
from trustlayer.schemas import WebhookResponse

logger = logging.getLogger(__name__)

# Verification endpoints answer malformed bodies with 400 and a fixed message
VERIFY_BODY_ERRORS = {
    "/verify/issue": "Email or phone number is required",
    "/verify/confirm": "Token and OTP code are required",
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    configure_logging()
    logger.info("Starting %s (%s)", settings.app_name, settings.app_env)

    Base.metadata.create_all(bind=engine)

    app.state.processor = build_processor(settings)
    app.state.order_store = build_order_store(SessionLocal)
    app.state.dispatcher = build_dispatcher(settings)

    yield

    app.state.dispatcher.close()
    engine.dispose()
    logger.info("Shutting down...")


app = FastAPI(title="Marketplace Trust Layer", lifespan=lifespan)

app.include_router(verify_router)
app.include_router(payments_router)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = VERIFY_BODY_ERRORS.get(request.url.path)
    if message is None:
        return await request_validation_exception_handler(request, exc)
    return JSONResponse(status_code=400, content={"detail": message})


@app.exception_handler(VerificationError)
async def verification_error_handler(request: Request, exc: VerificationError):
    logger.info("Verification failed: %s", type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})


@app.exception_handler(SignatureError)
async def signature_error_handler(request: Request, exc: SignatureError):
    return JSONResponse(status_code=exc.status_code, content={"detail": "Invalid signature"})


@app.exception_handler(ProcessorError)
async def processor_error_handler(request: Request, exc: ProcessorError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message or "Payment processing failed", "code": exc.code},
    )


@app.exception_handler(TrustLayerError)
async def trustlayer_error_handler(request: Request, exc: TrustLayerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.get("/health")
async def health_check():
    settings = get_settings()
    return {"status": "healthy", "app": settings.app_name, "env": settings.app_env}


@app.post("/payments/webhook", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None),
    stripe_signature: Optional[str] = Header(None),
    payments: PaymentLifecycleEngine = Depends(get_payment_engine),
):
    payload = await request.body()
    signature = x_signature or stripe_signature
    outcome = await run_in_threadpool(payments.handle_webhook_event, payload, signature)
    return WebhookResponse(outcome=outcome.value)
