"""Record validation for the write and read paths.

Both validators are pure functions returning a ``Result``: the caller decides
whether a failure raises (single save/load) or is collected (batch import).
Write-side checks are strict and deterministic; read-side checks are loose
so records written by older schema versions still load.
"""

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from src.domain.patient_record import (
    RECORD_FIELDS,
    OPTIONAL_STRING_FIELDS,
    RECORD_ID_PATTERN,
    PatientRecord,
)
from src.domain.ports import DataCorruptionError, Result, ValidationError

logger = logging.getLogger(__name__)

# Field name -> reason code used when pydantic rejects the field
_FIELD_REASONS = {
    "dateCreated": "invalidDateCreated",
    "createdAt": "invalidCreatedAt",
    "updatedAt": "invalidUpdatedAt",
    "patientInfo": "invalidPatientInfoFormat",
    "metadata": "invalidMetadataFormat",
}


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _failure(message: str, reason: str, record_id: Optional[str]) -> Result[dict]:
    return Result.failure_result(ValidationError(message, reason=reason, record_id=record_id))


def validate_for_write(record: Any) -> Result[dict]:
    """Validate a record before it is encrypted and persisted.

    Checks run in a fixed order so the same bad input always yields the same
    reason code: shape, id presence, name, creation timestamp, id format,
    optional primitive fields, then the full schema.

    Parameters:
        record: Candidate record (expected to be a dict)

    Returns:
        Result[dict]: Normalized copy of the record (id stripped, unknown
        top-level fields dropped), or a failure carrying a ValidationError
        with a stable ``reason``
    """
    if not isinstance(record, dict):
        return _failure("Record must be an object", "invalidFormat", None)

    raw_id = record.get("id")
    if _is_blank(raw_id):
        return _failure("Record id is required", "missingId", None)
    record_id = raw_id.strip()

    if _is_blank(record.get("name")):
        return _failure("Record name is required", "missingName", record_id)

    if _is_blank(record.get("dateCreated")) and _is_blank(record.get("createdAt")):
        return _failure("Record creation timestamp is required", "missingDateCreated", record_id)

    if not RECORD_ID_PATTERN.match(record_id):
        return _failure(f"Record id has an invalid format: {record_id!r}", "invalidIdFormat", record_id)

    for field in OPTIONAL_STRING_FIELDS:
        value = record.get(field)
        if value is not None and not isinstance(value, str):
            reason = f"invalid{field[0].upper()}{field[1:]}Format"
            return _failure(f"Field '{field}' must be a string", reason, record_id)

    try:
        PatientRecord.model_validate(record)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else ""
        reason = _FIELD_REASONS.get(field, "invalidFormat")
        return _failure(f"Field '{field}' is invalid: {first['msg']}", reason, record_id)

    dropped = sorted(set(record) - set(RECORD_FIELDS))
    if dropped:
        logger.warning(f"Dropping unknown fields from {record_id}: {', '.join(dropped)}")
    normalized = sanitize_for_import(record)
    normalized["id"] = record_id
    return Result.success_result(normalized)


def validate_for_read(record: Any, record_id: str) -> Result[dict]:
    """Validate a decrypted record read back from a backend.

    Only the shape is enforced. Missing metadata or a mismatched id produce
    warnings, not failures, to tolerate older schema versions.

    Parameters:
        record: Decrypted value
        record_id: Id the value was stored under

    Returns:
        Result[dict]: The record, or a failure carrying a DataCorruptionError
    """
    if not isinstance(record, dict):
        return Result.failure_result(DataCorruptionError(
            f"Stored value for {record_id} is not an object",
            {"record_id": record_id, "actual_type": type(record).__name__},
        ))

    if "metadata" not in record or not isinstance(record.get("metadata"), dict):
        logger.warning(f"Record {record_id} has no metadata; treating as legacy schema")

    stored_id = record.get("id")
    if stored_id is not None and stored_id != record_id:
        logger.warning(f"Record stored under {record_id} carries id {stored_id!r}")

    return Result.success_result(record)


def sanitize_for_import(record: dict) -> dict:
    """Drop every top-level field outside the import allow-list."""
    return {field: record[field] for field in RECORD_FIELDS if field in record}


def parse_import_payload(payload: Any) -> Result[tuple]:
    """Split an import payload into its records and optional metadata.

    Accepts a bare list of records, an envelope ``{"metadata": ..., "patients": [...]}``
    or the JSON text of either.

    Returns:
        Result[tuple]: ``(records, metadata_or_None)``, or a failure carrying
        a ValidationError (invalidJson, invalidStructure, invalidPatientsArray)
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode('utf-8', errors='replace')
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            return _failure(f"Invalid JSON file format: {e.msg}", "invalidJson", None)

    if isinstance(payload, list):
        return Result.success_result((payload, None))

    if not isinstance(payload, dict) or "patients" not in payload:
        return _failure("Import must be a list of records or contain a patients section", "invalidStructure", None)

    patients = payload["patients"]
    if not isinstance(patients, list):
        return _failure("Patients section must be an array", "invalidPatientsArray", None)

    metadata = payload.get("metadata")
    return Result.success_result((patients, metadata if isinstance(metadata, dict) else None))
