"""Enums and type aliases for SuperKafe."""

from enum import StrEnum


class TenantStatus(StrEnum):
    TRIAL = "trial"
    PAID = "paid"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


class RejectionCode(StrEnum):
    TENANT_HEADER_MISSING = "TENANT_HEADER_MISSING"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    TENANT_INACTIVE = "TENANT_INACTIVE"
    CROSS_TENANT_ACCESS = "CROSS_TENANT_ACCESS"
    TENANT_RESOLUTION_ERROR = "TENANT_RESOLUTION_ERROR"


class LogCategory(StrEnum):
    TENANT_RESOLVER = "TENANT_RESOLVER"
    TENANT_CONTEXT = "TENANT_CONTEXT"
    TENANT_SCOPING = "TENANT_SCOPING"
    TENANT_DIRECTORY = "TENANT_DIRECTORY"
    SECURITY = "SECURITY"


class OrderStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    SERVED = "served"
    CANCELED = "canceled"
