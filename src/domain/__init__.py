"""Domain layer for the Patient Intake Vault.

This module contains the record schema, validators, guardrails and the
port contracts. All domain code is pure Python with no dependencies beyond
Pydantic.
"""

from .patient_record import (
    PatientRecord,
    RecordMetadata,
    EncryptedEnvelope,
    AuditLogEntry,
    SCHEMA_VERSION,
)

__all__ = [
    "PatientRecord",
    "RecordMetadata",
    "EncryptedEnvelope",
    "AuditLogEntry",
    "SCHEMA_VERSION",
]
