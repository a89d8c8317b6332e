import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from db.config import engine, SessionLocal
from hypervisor.api_client import HypervisorError
from hypervisor.config import service_config
from hypervisor.provider import close_client_provider
from models.mysql_models import Base
from routes.price_routes import router as price_router
from routes.wallet_routes import router as wallet_router
from routes.usage_routes import router as usage_router
from routes.billing_routes import router as billing_router, get_sweep_archive
from routes.instance_routes import router as instance_router
from services.billing_scheduler import BillingScheduler
from services.billing_service import BillingService
from services.errors import (
    AdmissionError,
    AdmissionErrorKind,
    LedgerError,
    LedgerErrorKind,
    ProvisioningError,
)

logging.basicConfig(
    level=getattr(logging, service_config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="ComputeCloud API",
    description="Self-service compute API - Manage pricing, wallets, usage, billing and instances",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def run_scheduled_sweep():
    session = SessionLocal()
    try:
        return BillingService(session, archive=get_sweep_archive()).run_sweep()
    finally:
        session.close()


scheduler = BillingScheduler(run_scheduled_sweep, interval=service_config.sweep_interval)


@app.on_event("startup")
async def startup():
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.warning(f"Failed to create tables: {e}")
    if service_config.sweep_enabled:
        await scheduler.start()


@app.on_event("shutdown")
async def shutdown():
    await scheduler.stop()
    await close_client_provider()


@app.exception_handler(AdmissionError)
async def admission_error_handler(request: Request, exc: AdmissionError):
    code = status.HTTP_400_BAD_REQUEST
    if exc.kind == AdmissionErrorKind.NODE_NOT_ALLOWED:
        code = status.HTTP_403_FORBIDDEN
    return JSONResponse(status_code=code, content=exc.to_dict())


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    code = status.HTTP_400_BAD_REQUEST
    if exc.kind == LedgerErrorKind.NO_BALANCE:
        code = status.HTTP_404_NOT_FOUND
    return JSONResponse(status_code=code, content=exc.to_dict())


@app.exception_handler(ProvisioningError)
async def provisioning_error_handler(request: Request, exc: ProvisioningError):
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=exc.to_dict())


@app.exception_handler(HypervisorError)
async def hypervisor_error_handler(request: Request, exc: HypervisorError):
    logger.error(f"Hypervisor request failed: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "HypervisorError", "message": exc.message, "details": {"status_code": exc.status_code}}
    )


app.include_router(price_router, prefix="/api/v1")
app.include_router(wallet_router, prefix="/api/v1")
app.include_router(usage_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")
app.include_router(instance_router, prefix="/api/v1")


@app.get("/", tags=["Health"])
def health_check():
    return {"status": "healthy", "service": "computecloud"}


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok"}
