from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.schemas import (
    CreditRequest,
    DebitRequest,
    BalanceResponse,
    LedgerResultResponse,
    TransactionResponse,
)
from services.money import format_amount
from services.usage_service import UsageService
from services.wallet_service import WalletService

router = APIRouter(prefix="/wallets", tags=["Wallets"])


def get_wallet_service(session: Session = Depends(get_mysql_session)) -> WalletService:
    return WalletService(session)


@router.get(
    "/",
    response_model=List[BalanceResponse],
    summary="List all balances",
    description="Retrieves every tenant balance, highest first"
)
def list_balances(
    service: WalletService = Depends(get_wallet_service)
):
    return [service.balance_to_dict(b) for b in service.get_all_balances()]


@router.get(
    "/{tenant_id}",
    response_model=BalanceResponse,
    summary="Get tenant balance",
    description="Retrieves the credit balance, creating an empty one on first access"
)
def get_balance(
    tenant_id: str,
    service: WalletService = Depends(get_wallet_service)
):
    return service.balance_to_dict(service.get_balance(tenant_id))


@router.get(
    "/{tenant_id}/summary",
    response_model=dict,
    summary="Get billing summary",
    description="Balance, burn rate, estimated remaining hours and recent activity"
)
def get_summary(
    tenant_id: str,
    service: WalletService = Depends(get_wallet_service)
):
    summary = service.get_summary(tenant_id)
    remaining = summary["estimated_remaining_hours"]
    return {
        "tenant_id": tenant_id,
        "balance": format_amount(summary["balance"]),
        "currency": summary["currency"],
        "active_instances": summary["active_instances"],
        "hourly_burn_rate": format_amount(summary["hourly_burn_rate"]),
        "estimated_remaining_hours": format_amount(round(remaining, 2)) if remaining is not None else None,
        "recent_transactions": [service.transaction_to_dict(t) for t in summary["recent_transactions"]],
        "active_usage": [UsageService.record_to_dict(r) for r in summary["active_usage"]]
    }


@router.post(
    "/{tenant_id}/credit",
    response_model=LedgerResultResponse,
    summary="Add credit",
    description="Adds funds to the tenant balance"
)
def add_credit(
    tenant_id: str,
    request: CreditRequest,
    service: WalletService = Depends(get_wallet_service)
):
    metadata = {"admin_id": request.admin_id} if request.admin_id else None
    result = service.credit(
        tenant_id,
        request.amount,
        request.description or "Credit allocation by admin",
        metadata
    )
    return service.result_to_dict(result)


@router.post(
    "/{tenant_id}/debit",
    response_model=LedgerResultResponse,
    summary="Debit credit",
    description="Deducts funds from the tenant balance"
)
def add_debit(
    tenant_id: str,
    request: DebitRequest,
    service: WalletService = Depends(get_wallet_service)
):
    result = service.debit(tenant_id, request.amount, request.description, request.metadata)
    return service.result_to_dict(result)


@router.get(
    "/{tenant_id}/transactions",
    response_model=List[TransactionResponse],
    summary="Get transaction history",
    description="Retrieves the tenant's transactions, newest first"
)
def get_transactions(
    tenant_id: str,
    limit: int = Query(50, ge=1, le=500),
    service: WalletService = Depends(get_wallet_service)
):
    return [service.transaction_to_dict(t) for t in service.get_transactions(tenant_id, limit)]
