import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paygate.config import get_settings
from paygate.database import engine, Base
from paygate.errors import PaymentError
from paygate.routers import subscription
from paygate.schema_patch import ensure_user_subscription_columns
from paygate.services.registry import get_provider_registry

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)
ensure_user_subscription_columns()

app = FastAPI(
    title="Paygate",
    description="Subscription payment verification and webhook reconciliation",
    version="1.0.0"
)

cors_origins = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.http_status >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)

    content = {"detail": exc.detail, "code": exc.code, "retryable": exc.retryable}
    if exc.diagnostic and not get_settings().is_production:
        content["diagnostic"] = exc.diagnostic
    return JSONResponse(status_code=exc.http_status, content=content)


app.include_router(subscription.router)

# Log which providers are usable; missing credentials only disable that provider.
get_provider_registry()


@app.get("/health")
def health_check():
    return {"status": "healthy", "providers": get_provider_registry().available()}
