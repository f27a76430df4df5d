from .audit_service import AuditService

__all__ = ["AuditService"]
