from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from hypervisor import api_client
from hypervisor.provider import ClientProvider, get_client_provider
from hypervisor.sources import RealResourceSource, get_resource_source
from models.schemas import (
    AdmitInstanceRequest,
    ConnectionTestRequest,
    InstanceCreateRequest,
    InstanceType,
)
from services.admission_service import AdmissionService
from services.instance_service import InstanceService

router = APIRouter(prefix="/instances", tags=["Instances"])


def get_admission_service(
    session: Session = Depends(get_mysql_session),
    resource_source: RealResourceSource = Depends(get_resource_source)
) -> AdmissionService:
    return AdmissionService(session, resource_source)


def get_instance_service(
    session: Session = Depends(get_mysql_session),
    provider: ClientProvider = Depends(get_client_provider),
    resource_source: RealResourceSource = Depends(get_resource_source)
) -> InstanceService:
    return InstanceService(session, provider, resource_source)


@router.post(
    "/admit",
    response_model=dict,
    summary="Check instance admission",
    description="Evaluates node, quota and credit checks without creating anything"
)
async def admit_instance(
    request: AdmitInstanceRequest,
    service: AdmissionService = Depends(get_admission_service)
):
    decision = await service.admit(request.tenant, request.request)
    return decision.to_dict()


@router.post(
    "/",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Create instance",
    description="Admits, clones and configures an instance, then starts billing it"
)
async def create_instance(
    request: InstanceCreateRequest,
    service: InstanceService = Depends(get_instance_service)
):
    return await service.create_instance(request)


@router.delete(
    "/{instance_id}",
    response_model=dict,
    summary="Delete instance",
    description="Stops and deletes an instance and closes its usage record"
)
async def delete_instance(
    instance_id: int,
    tenant_id: str = Query(...),
    node: str = Query(...),
    instance_type: InstanceType = Query(InstanceType.VM, alias="type"),
    service: InstanceService = Depends(get_instance_service)
):
    return await service.delete_instance(tenant_id, node, instance_id, instance_type)


@router.post(
    "/test-connection",
    response_model=dict,
    summary="Test hypervisor connection",
    description="Checks that a host and API token can reach the hypervisor"
)
async def test_hypervisor_connection(request: ConnectionTestRequest):
    return await api_client.test_connection(request.host, request.token_id, request.token_secret)
