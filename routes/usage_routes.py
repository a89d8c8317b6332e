from typing import List

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.schemas import UsageStartRequest, UsageRecordResponse
from services.money import format_amount
from services.usage_service import UsageService

router = APIRouter(prefix="/usage", tags=["Usage"])


def get_usage_service(session: Session = Depends(get_mysql_session)) -> UsageService:
    return UsageService(session)


@router.post(
    "/start",
    response_model=UsageRecordResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start usage tracking",
    description="Starts tracking an instance, replacing any active record for it"
)
def start_tracking(
    request: UsageStartRequest,
    service: UsageService = Depends(get_usage_service)
):
    record = service.start_tracking(
        tenant_id=request.tenant_id,
        instance_id=request.instance_id,
        node=request.node,
        instance_type=request.instance_type,
        instance_name=request.instance_name,
        cores=request.cores,
        memory_mb=request.memory_mb,
        disk_gb=request.disk_gb,
        billing_mode=request.billing_mode
    )
    return service.record_to_dict(record)


@router.post(
    "/{tenant_id}/{instance_id}/stop",
    response_model=dict,
    summary="Stop usage tracking",
    description="Closes the active usage record of an instance"
)
def stop_tracking(
    tenant_id: str,
    instance_id: int,
    service: UsageService = Depends(get_usage_service)
):
    result = service.stop_tracking(tenant_id, instance_id)
    if not result:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active usage record for this instance"
        )
    return {
        "record": service.record_to_dict(result["record"]),
        "hours_used": format_amount(result["hours_used"]),
        "final_cost": format_amount(result["final_cost"])
    }


@router.get(
    "/{tenant_id}/active",
    response_model=List[UsageRecordResponse],
    summary="Get active usage",
    description="Retrieves the tenant's active usage records"
)
def get_active_usage(
    tenant_id: str,
    service: UsageService = Depends(get_usage_service)
):
    return [service.record_to_dict(r) for r in service.active_usage(tenant_id)]


@router.get(
    "/{tenant_id}/history",
    response_model=List[UsageRecordResponse],
    summary="Get usage history",
    description="Retrieves the tenant's usage records, most recent first"
)
def get_usage_history(
    tenant_id: str,
    limit: int = Query(50, ge=1, le=500),
    service: UsageService = Depends(get_usage_service)
):
    return [service.record_to_dict(r) for r in service.history(tenant_id, limit)]
