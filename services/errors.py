from enum import Enum
from typing import Optional, Dict, Any


class AdmissionErrorKind(str, Enum):
    NODE_NOT_ALLOWED = "NodeNotAllowed"
    INSTANCE_QUOTA_EXCEEDED = "InstanceQuotaExceeded"
    CPU_QUOTA_EXCEEDED = "CpuQuotaExceeded"
    MEMORY_QUOTA_EXCEEDED = "MemoryQuotaExceeded"
    INSUFFICIENT_CREDITS = "InsufficientCredits"


class ProvisioningErrorKind(str, Enum):
    CLONE_FAILED = "CloneFailed"
    NEXT_ID_UNAVAILABLE = "NextIdUnavailable"


class LedgerErrorKind(str, Enum):
    INVALID_AMOUNT = "InvalidAmount"
    NO_BALANCE = "NoBalance"
    INSUFFICIENT_CREDITS = "InsufficientCredits"


class ServiceError(Exception):
    """Base for errors that carry a machine-readable kind and a user-facing message."""

    def __init__(self, kind: Enum, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.message = message
        self.details = details or {}
        super().__init__(f"{kind.value}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details
        }


class AdmissionError(ServiceError):
    pass


class ProvisioningError(ServiceError):
    pass


class LedgerError(ServiceError):
    pass
