from .models import AuditAction, AuditEntry
from .service import AuditLedger

__all__ = ["AuditAction", "AuditEntry", "AuditLedger"]
