from app.models.audit_record import AuditRecordRow

__all__ = ["AuditRecordRow"]
