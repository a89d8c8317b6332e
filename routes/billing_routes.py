from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from db.config import get_mysql_session, get_mongo_db
from hypervisor.config import service_config
from services.billing_service import BillingService

router = APIRouter(prefix="/billing", tags=["Billing"])


def get_sweep_archive():
    if not service_config.sweep_archive_enabled:
        return None
    return get_mongo_db()[BillingService.SWEEP_COLLECTION]


def get_billing_service(
    session: Session = Depends(get_mysql_session),
    archive=Depends(get_sweep_archive)
) -> BillingService:
    return BillingService(session, archive=archive)


@router.post(
    "/sweep",
    response_model=dict,
    summary="Run billing sweep",
    description="Charges every active pay-as-you-go instance for whole hours since its last charge"
)
def run_sweep(
    service: BillingService = Depends(get_billing_service)
):
    return service.run_sweep().to_dict()


@router.get(
    "/sweeps",
    response_model=list,
    summary="Get sweep history",
    description="Retrieves archived billing sweeps, most recent first"
)
def get_sweeps(
    limit: int = Query(20, ge=1, le=200),
    service: BillingService = Depends(get_billing_service)
):
    return service.get_sweeps(limit)
