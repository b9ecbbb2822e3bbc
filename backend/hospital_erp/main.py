import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hospital_erp.core.settings import settings, validate_settings
from hospital_erp.db.session import engine
from hospital_erp.models import Base
from hospital_erp.routers.bills import router as bills_router
from hospital_erp.routers.payments import router as payments_router
from hospital_erp.services.errors import BillingError

app = FastAPI(title="Hospital ERP Billing API", version="0.1.0")
logger = logging.getLogger("hospital_erp.startup")


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    payload = {"detail": exc.message, "code": exc.code}
    request_id = request.headers.get("x-request-id")
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    payload = {"detail": "Internal server error"}
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=500, content=payload)


@app.on_event("startup")
def startup():
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)
    logger.info(
        "Billing API started (env=%s, gateway=%s).", settings.app_env, settings.payment_gateway
    )


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(bills_router)
app.include_router(payments_router)
