from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a tenant store rejects a write, e.g. a duplicate email."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UnknownTenantError(LookupError):
    """Raised when a tenant id has no configured data store."""

    def __init__(self, tenant_id: str):
        super().__init__(f"unknown tenant: {tenant_id}")
        self.tenant_id = tenant_id


__all__ = ["ConstraintViolation", "UnknownTenantError"]
