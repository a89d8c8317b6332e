from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterator, List, Optional, Any
import logging
import threading
import uuid
import weakref

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.mysql_models import CreditBalance, Transaction
from models.schemas import TransactionType
from services.errors import LedgerError, LedgerErrorKind
from services.money import Number, to_decimal, quantize_amount, format_amount
from services.usage_service import UsageService

logger = logging.getLogger(__name__)


class WalletService:
    """Credit ledger: one balance row per tenant plus an append-only transaction log.

    Balance and transaction are written in the same commit. Mutations for a
    tenant are serialized by a re-entrant in-process lock and by a row lock
    on the balance (``SELECT ... FOR UPDATE``). The in-process lock does not
    span worker processes; running several API processes against one
    database relies on the row lock alone, which SQLite does not provide.
    """

    _locks_guard = threading.Lock()
    # entries vanish once no thread holds or waits on the lock
    _tenant_locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()

    def __init__(self, mysql_session: Session):
        self.mysql_session = mysql_session

    @classmethod
    def _lock_for(cls, tenant_id: str) -> threading.RLock:
        with cls._locks_guard:
            lock = cls._tenant_locks.get(tenant_id)
            if lock is None:
                lock = threading.RLock()
                cls._tenant_locks[tenant_id] = lock
            return lock

    @contextmanager
    def tenant_lock(self, tenant_id: str) -> Iterator[None]:
        lock = self._lock_for(tenant_id)
        with lock:
            yield

    def _find_balance(self, tenant_id: str, for_update: bool = False) -> Optional[CreditBalance]:
        query = self.mysql_session.query(CreditBalance).filter(
            CreditBalance.tenant_id == tenant_id
        )
        if for_update:
            # refresh from the locked row, not the identity map
            query = query.with_for_update().populate_existing()
        return query.first()

    def get_balance(self, tenant_id: str) -> CreditBalance:
        balance = self._find_balance(tenant_id)
        if balance:
            return balance

        try:
            balance = CreditBalance(id=str(uuid.uuid4()), tenant_id=tenant_id, balance=Decimal("0"))
            self.mysql_session.add(balance)
            self.mysql_session.commit()
        except IntegrityError:
            # another writer created the row first
            self.mysql_session.rollback()
            balance = self._find_balance(tenant_id)
        return balance

    def has_sufficient_credits(self, tenant_id: str, amount: Number) -> bool:
        """Advisory check. The balance can move before a later debit, which re-checks."""
        balance = self.get_balance(tenant_id)
        return Decimal(balance.balance) >= quantize_amount(amount)

    def _validate_amount(self, amount: Number) -> Decimal:
        try:
            amount_decimal = to_decimal(amount)
            valid = amount_decimal.is_finite()
            if valid:
                amount_decimal = quantize_amount(amount_decimal)
        except (InvalidOperation, ValueError, TypeError):
            valid = False
        if not valid:
            raise LedgerError(
                LedgerErrorKind.INVALID_AMOUNT,
                "Amount must be a finite number",
                {"amount": str(amount)}
            )

        if amount_decimal <= 0:
            raise LedgerError(
                LedgerErrorKind.INVALID_AMOUNT,
                "Amount must be positive",
                {"amount": format_amount(amount_decimal)}
            )
        return amount_decimal

    def _append(
        self,
        tenant_id: str,
        tx_type: TransactionType,
        signed_amount: Decimal,
        balance_after: Decimal,
        description: str,
        metadata: Optional[Dict[str, Any]]
    ) -> Transaction:
        tx = Transaction(
            tenant_id=tenant_id,
            type=tx_type.value,
            amount=signed_amount,
            balance_after=balance_after,
            description=description,
            meta=metadata,
            created_at=datetime.utcnow()
        )
        self.mysql_session.add(tx)
        return tx

    def credit(
        self,
        tenant_id: str,
        amount: Number,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> dict:
        amount_decimal = self._validate_amount(amount)

        with self.tenant_lock(tenant_id):
            try:
                balance = self._find_balance(tenant_id, for_update=True)
                if not balance:
                    balance = CreditBalance(id=str(uuid.uuid4()), tenant_id=tenant_id, balance=Decimal("0"))
                    self.mysql_session.add(balance)

                new_balance = quantize_amount(Decimal(balance.balance or 0) + amount_decimal)
                balance.balance = new_balance
                tx = self._append(
                    tenant_id, TransactionType.CREDIT, amount_decimal, new_balance, description, metadata
                )
                if commit:
                    self.mysql_session.commit()
                else:
                    self.mysql_session.flush()
            except Exception:
                self.mysql_session.rollback()
                raise

        logger.info(f"Credited {format_amount(amount_decimal)} to {tenant_id}, balance {format_amount(new_balance)}")
        return {"balance": new_balance, "transaction": tx}

    def debit(
        self,
        tenant_id: str,
        amount: Number,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> dict:
        """Deduct ``amount`` from the tenant balance.

        With ``commit=False`` the changes are flushed but left for the caller
        to commit, which must then happen while holding ``tenant_lock``.
        """
        amount_decimal = self._validate_amount(amount)

        with self.tenant_lock(tenant_id):
            try:
                balance = self._find_balance(tenant_id, for_update=True)
                if not balance:
                    raise LedgerError(
                        LedgerErrorKind.NO_BALANCE,
                        "Tenant has no credit balance",
                        {"tenant_id": tenant_id}
                    )

                current = Decimal(balance.balance)
                if current < amount_decimal:
                    raise LedgerError(
                        LedgerErrorKind.INSUFFICIENT_CREDITS,
                        f"Insufficient credits. Balance: {current:.2f}, Required: {amount_decimal:.2f}",
                        {"balance": format_amount(current), "required": format_amount(amount_decimal)}
                    )

                new_balance = quantize_amount(current - amount_decimal)
                balance.balance = new_balance
                tx = self._append(
                    tenant_id, TransactionType.DEBIT, -amount_decimal, new_balance, description, metadata
                )
                if commit:
                    self.mysql_session.commit()
                else:
                    self.mysql_session.flush()
            except Exception:
                self.mysql_session.rollback()
                raise

        logger.info(f"Debited {format_amount(amount_decimal)} from {tenant_id}, balance {format_amount(new_balance)}")
        return {"balance": new_balance, "transaction": tx}

    def get_transactions(self, tenant_id: str, limit: int = 50) -> List[Transaction]:
        return self.mysql_session.query(Transaction).filter(
            Transaction.tenant_id == tenant_id
        ).order_by(Transaction.id.desc()).limit(limit).all()

    def get_all_balances(self) -> List[CreditBalance]:
        return self.mysql_session.query(CreditBalance).order_by(
            CreditBalance.balance.desc()
        ).all()

    def get_summary(self, tenant_id: str) -> dict:
        balance = self.get_balance(tenant_id)
        active_usage = UsageService(self.mysql_session).active_usage(tenant_id)
        recent = self.get_transactions(tenant_id, limit=10)

        burn_rate = sum((Decimal(r.hourly_rate) for r in active_usage), Decimal("0"))
        remaining_hours = Decimal(balance.balance) / burn_rate if burn_rate > 0 else None

        return {
            "balance": Decimal(balance.balance),
            "currency": balance.currency,
            "active_instances": len(active_usage),
            "hourly_burn_rate": burn_rate,
            "estimated_remaining_hours": remaining_hours,
            "recent_transactions": recent,
            "active_usage": active_usage
        }

    @staticmethod
    def balance_to_dict(balance: CreditBalance) -> dict:
        return {
            "tenant_id": balance.tenant_id,
            "balance": format_amount(balance.balance),
            "currency": balance.currency
        }

    @staticmethod
    def transaction_to_dict(tx: Transaction) -> dict:
        return {
            "id": tx.id,
            "tenant_id": tx.tenant_id,
            "type": tx.type,
            "amount": format_amount(tx.amount),
            "balance_after": format_amount(tx.balance_after),
            "description": tx.description,
            "metadata": tx.meta,
            "created_at": tx.created_at
        }

    def result_to_dict(self, result: dict) -> dict:
        return {
            "balance": format_amount(result["balance"]),
            "transaction": self.transaction_to_dict(result["transaction"])
        }
