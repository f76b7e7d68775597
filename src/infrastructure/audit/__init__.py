"""Audit infrastructure components.

This package provides the append-only audit trail of record store actions.
"""

from src.infrastructure.audit.audit_logger import AuditLogger

__all__ = ['AuditLogger']
