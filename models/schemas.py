from typing import Dict, List, Optional, Any, Union
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class BillingMode(str, Enum):
    PAYG = "PAYG"
    RESERVED = "RESERVED"


class InstanceType(str, Enum):
    VM = "qemu"
    CONTAINER = "lxc"


class TransactionType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class PricingTierRequest(BaseModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    cpu_hourly: Decimal = Field(..., ge=0)
    memory_hourly: Decimal = Field(..., ge=0)
    disk_hourly: Decimal = Field(..., ge=0)
    cpu_monthly: Decimal = Field(..., ge=0)
    memory_monthly: Decimal = Field(..., ge=0)
    disk_monthly: Decimal = Field(..., ge=0)
    is_default: bool = False
    is_active: bool = True


class PricingTierResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    cpu_hourly: str
    memory_hourly: str
    disk_hourly: str
    cpu_monthly: str
    memory_monthly: str
    disk_monthly: str
    is_default: bool
    is_active: bool


class CostBreakdown(BaseModel):
    cpu: str
    memory: str
    disk: str


class CostLine(BaseModel):
    total: str
    breakdown: CostBreakdown


class CostEstimateResponse(BaseModel):
    hourly: CostLine
    monthly: CostLine
    payg_estimated_monthly: str
    savings: str


class CreditRequest(BaseModel):
    amount: Union[int, float, str]
    description: Optional[str] = None
    admin_id: Optional[str] = None


class DebitRequest(BaseModel):
    amount: Union[int, float, str]
    description: str
    metadata: Optional[Dict[str, Any]] = None


class TransactionResponse(BaseModel):
    id: int
    tenant_id: str
    type: str
    amount: str
    balance_after: str
    description: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class BalanceResponse(BaseModel):
    tenant_id: str
    balance: str
    currency: str


class LedgerResultResponse(BaseModel):
    balance: str
    transaction: TransactionResponse


class UsageStartRequest(BaseModel):
    tenant_id: str
    instance_id: int
    node: str
    instance_type: InstanceType = InstanceType.VM
    instance_name: Optional[str] = None
    cores: int = Field(..., ge=1)
    memory_mb: int = Field(..., ge=1)
    disk_gb: int = Field(0, ge=0)
    billing_mode: BillingMode = BillingMode.PAYG


class UsageRecordResponse(BaseModel):
    id: str
    tenant_id: str
    instance_id: int
    node: str
    instance_type: str
    instance_name: Optional[str] = None
    billing_mode: str
    cores: int
    memory_mb: int
    disk_gb: int
    hourly_rate: str
    monthly_rate: Optional[str] = None
    started_at: datetime
    last_billed_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    is_active: bool


class TenantContext(BaseModel):
    tenant_id: str
    max_cpu: int = 4
    max_memory: int = 8192
    max_instances: int = 3
    max_disk: int = 100
    allowed_nodes: List[str] = []


class AdmissionRequest(BaseModel):
    node: str
    cores: int = Field(1, ge=1)
    memory_mb: int = Field(512, ge=1)
    disk_gb: int = Field(20, ge=0)
    billing_mode: BillingMode = BillingMode.PAYG


class Credentials(BaseModel):
    user: Optional[str] = None
    password: Optional[str] = None
    ssh_keys: Optional[str] = None


class InstanceCreateRequest(BaseModel):
    tenant: TenantContext
    node: str
    template_id: int
    name: str
    instance_type: InstanceType = InstanceType.VM
    cores: int = Field(1, ge=1)
    memory_mb: int = Field(512, ge=1)
    disk_gb: int = Field(20, ge=0)
    billing_mode: BillingMode = BillingMode.PAYG
    credentials: Credentials = Credentials()


class AdmitInstanceRequest(BaseModel):
    tenant: TenantContext
    request: AdmissionRequest


class ConnectionTestRequest(BaseModel):
    host: str
    token_id: str
    token_secret: str
