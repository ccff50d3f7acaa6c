"""HTTP surface hosting the audit pipeline."""

from .audit_hook import AuditRequestMiddleware
from .system import router as system_router

__all__ = ["AuditRequestMiddleware", "system_router"]
