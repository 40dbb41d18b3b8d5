"""Audit infrastructure components.

This package provides the change audit logger used by the field services
to record user writes and automatic recalculations.
"""

from clinical_fields.infrastructure.audit.change_audit_logger import ChangeAuditLogger

__all__ = ['ChangeAuditLogger']
