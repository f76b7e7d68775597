"""Patient Record Schema Definitions.

This module defines the canonical data models for intake records and the
wrappers around them (encrypted envelope, export envelope, audit entries).
Records travel through the store as plain dictionaries with camelCase keys;
these Pydantic models are the explicit schema they are validated against.

Security Impact:
    - Required vs optional fields are enumerated, not duck-typed
    - Record IDs are restricted to a safe character set before they are
      used to build storage keys
    - Type safety enforced at runtime via Pydantic V2

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator

from src.domain.ports import parse_iso_timestamp

#: Schema version stamped into record metadata and export envelopes.
SCHEMA_VERSION = "1.0"

#: Allowed record identifiers: alphanumeric with ``-``/``_`` separators.
RECORD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

#: Top-level fields a record may carry; anything else is dropped on write and import.
RECORD_FIELDS = (
    "id",
    "name",
    "dateCreated",
    "createdAt",
    "updatedAt",
    "notes",
    "language",
    "gender",
    "patientInfo",
    "metadata",
)

#: Optional top-level fields that must be strings when present.
OPTIONAL_STRING_FIELDS = ("notes", "language", "gender")


class RecordMetadata(BaseModel):
    """Bookkeeping stored alongside every record.

    Parameters:
        version: Write counter, incremented on every touching save
        lastModified: ISO-8601 timestamp of the last write
        lastAccessed: ISO-8601 timestamp of the last tracked load
        accessCount: Number of tracked loads
        schemaVersion: Schema version the record was written with
    """

    model_config = ConfigDict(extra="allow")

    version: int = Field(default=0, ge=0)
    lastModified: Optional[str] = None
    lastAccessed: Optional[str] = None
    accessCount: int = Field(default=0, ge=0)
    schemaVersion: str = SCHEMA_VERSION


class PatientRecord(BaseModel):
    """Intake record as persisted by the RecordStore.

    Security Impact: The whole record (including ``patientInfo``) is
    encrypted before it reaches a backend; nothing here is stored in clear.

    Parameters:
        id: Record identifier, also used in the storage key
        name: Patient display name (required)
        dateCreated: Creation timestamp (ISO-8601)
        createdAt: Alternate creation timestamp key (ISO-8601)
        updatedAt: Timestamp of the last successful write
        notes: Free-text notes
        language: Preferred language code
        gender: Gender as captured on the form
        patientInfo: Open mapping of form fields (age, symptoms, ...)
        metadata: Version and access bookkeeping
    """

    model_config = ConfigDict(extra="allow")

    id: StrictStr
    name: StrictStr
    dateCreated: Optional[StrictStr] = None
    createdAt: Optional[StrictStr] = None
    updatedAt: Optional[StrictStr] = None
    notes: Optional[StrictStr] = None
    language: Optional[StrictStr] = None
    gender: Optional[StrictStr] = None
    patientInfo: Optional[dict[str, Any]] = None
    metadata: Optional[RecordMetadata] = None

    @field_validator("id")
    @classmethod
    def validate_id_format(cls, v: str) -> str:
        """Validate the record identifier.

        Raises:
            ValueError: If the ID is empty or contains disallowed characters
        """
        v_stripped = v.strip()
        if not v_stripped:
            raise ValueError("missingId")
        if not RECORD_ID_PATTERN.match(v_stripped):
            raise ValueError("invalidIdFormat")
        return v_stripped

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("missingName")
        return v

    @field_validator("dateCreated", "createdAt", "updatedAt")
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if parse_iso_timestamp(v) is None:
            raise ValueError("invalidTimestamp")
        return v

    def creation_timestamp(self) -> Optional[str]:
        """Return whichever creation timestamp the record carries."""
        return self.dateCreated or self.createdAt


class EncryptedEnvelope(BaseModel):
    """Serialized form of one encrypted record.

    Parameters:
        v: Envelope format version
        iv: Base64 12-byte nonce, fresh for every encryption
        ciphertext: Base64 AES-GCM ciphertext with the authentication tag
    """

    model_config = ConfigDict(frozen=True)

    v: int = 1
    iv: str
    ciphertext: str


class ExportMetadata(BaseModel):
    """Header of an export file."""

    model_config = ConfigDict(extra="allow")

    exportTimestamp: str
    recordCount: int
    schemaVersion: str = SCHEMA_VERSION
    totalAttempted: int = 0
    invalidRecords: int = 0
    deviceId: Optional[str] = None


class AuditLogEntry(BaseModel):
    """Append-only audit entry.

    Parameters:
        entry_id: Unique entry identifier
        action: Action name (SAVE_PATIENT, EXPORT_DATA, ...)
        timestamp: ISO-8601 time of the action
        patient_id: Subject record id, if the action targets one record
        details: Free-form detail (never record contents)
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str
    action: str
    timestamp: str
    patient_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
