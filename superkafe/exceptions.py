"""Exception hierarchy for SuperKafe."""


class SuperKafeError(Exception):
    """Base exception for all SuperKafe errors."""


class ConfigError(SuperKafeError):
    """Raised when configuration is invalid."""


class StorageError(SuperKafeError):
    """Raised when storage operations fail."""


class TenancyError(SuperKafeError):
    """Base exception for tenant isolation failures."""


class InvalidTenantContextError(TenancyError):
    """Raised when a tenant context lacks both an id and a slug."""


class TenantContextMissingError(TenancyError):
    """Raised when tenant-owned data is touched without an active tenant context."""


class ContextPropagationError(TenancyError):
    """Raised at startup when tenant context does not propagate across async tasks."""


class TenantMismatchError(TenancyError):
    """Raised when a write carries a tenant_id other than the active tenant's."""

    def __init__(self, message: str, *, expected: str, actual: str) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ScopedDataAccessError(StorageError):
    """Raised when a tenant-scoped persistence operation fails."""


class InvalidSlugError(TenancyError):
    """Raised when a tenant slug fails validation."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class DuplicateSlugError(TenancyError):
    """Raised when a tenant slug is already registered (case-insensitive)."""
