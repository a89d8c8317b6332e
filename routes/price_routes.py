from typing import List

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.schemas import (
    PricingTierRequest,
    PricingTierResponse,
    CostEstimateResponse,
)
from services.price_service import PriceService

router = APIRouter(prefix="/prices", tags=["Prices"])


def get_price_service(session: Session = Depends(get_mysql_session)) -> PriceService:
    return PriceService(session)


@router.get(
    "/",
    response_model=List[PricingTierResponse],
    summary="List pricing tiers",
    description="Retrieves all active pricing tiers, newest first"
)
def list_tiers(
    service: PriceService = Depends(get_price_service)
):
    return [service.tier_to_dict(t) for t in service.list_tiers()]


@router.get(
    "/default",
    response_model=PricingTierResponse,
    summary="Get default pricing tier",
    description="Resolves the tier used for cost calculation, creating the fallback tier if none is active"
)
def get_default_tier(
    service: PriceService = Depends(get_price_service)
):
    return service.tier_to_dict(service.resolve_default_tier())


@router.get(
    "/estimate",
    response_model=CostEstimateResponse,
    summary="Estimate instance cost",
    description="Hourly and monthly cost of an instance shape, with reserved savings"
)
def get_estimate(
    cores: int = Query(1, ge=0),
    memory: int = Query(1024, ge=0, description="Memory in MB"),
    disk: int = Query(20, ge=0, description="Disk in GB"),
    service: PriceService = Depends(get_price_service)
):
    return service.estimate_to_dict(service.estimate(cores, memory, disk))


@router.get(
    "/{tier_id}",
    response_model=PricingTierResponse,
    summary="Get pricing tier"
)
def get_tier(
    tier_id: str,
    service: PriceService = Depends(get_price_service)
):
    tier = service.get_tier(tier_id)
    if not tier:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Pricing tier not found"
        )
    return service.tier_to_dict(tier)


@router.post(
    "/",
    response_model=PricingTierResponse,
    summary="Create or update pricing tier",
    description="Creates a tier, or updates the tier with the given id"
)
def upsert_tier(
    request: PricingTierRequest,
    service: PriceService = Depends(get_price_service)
):
    tier = service.upsert_tier(request)
    if not tier:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Pricing tier not found"
        )
    return service.tier_to_dict(tier)


@router.delete(
    "/{tier_id}",
    response_model=PricingTierResponse,
    summary="Deactivate pricing tier",
    description="Tiers are never deleted, only deactivated"
)
def deactivate_tier(
    tier_id: str,
    service: PriceService = Depends(get_price_service)
):
    tier = service.deactivate_tier(tier_id)
    if not tier:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Pricing tier not found"
        )
    return service.tier_to_dict(tier)
