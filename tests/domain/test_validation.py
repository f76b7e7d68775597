"""Unit tests for record validation."""

import pytest

from src.domain.ports import DataCorruptionError, ValidationError
from src.domain.validation import (
    parse_import_payload,
    sanitize_for_import,
    validate_for_read,
    validate_for_write,
)


def valid_record(**overrides):
    record = {"id": "abc123", "name": "Jane Doe", "dateCreated": "2024-01-01T00:00:00Z"}
    record.update(overrides)
    return record


class TestValidateForWrite:
    """Test suite for write-side validation."""

    def test_valid_record(self):
        """Test that a minimal record passes and is returned as a copy."""
        record = valid_record(patientInfo={"age": 40, "symptoms": ["cough"]})
        result = validate_for_write(record)
        assert result.is_success()
        assert result.value == record
        assert result.value is not record

    def test_created_at_is_an_alternative(self):
        """Test that createdAt satisfies the creation timestamp requirement."""
        record = valid_record()
        del record["dateCreated"]
        record["createdAt"] = "2024-01-01T00:00:00+00:00"
        assert validate_for_write(record).is_success()

    def test_unknown_top_level_fields_are_dropped(self):
        """Test that open data survives only inside patientInfo."""
        record = valid_record(allergies="peanuts", patientInfo={"allergies": "peanuts"})
        result = validate_for_write(record)
        assert result.is_success()
        assert "allergies" not in result.value
        assert result.value["patientInfo"] == {"allergies": "peanuts"}

    def test_id_is_trimmed(self):
        result = validate_for_write(valid_record(id="  abc123 "))
        assert result.value["id"] == "abc123"

    @pytest.mark.parametrize("record,reason", [
        ("not a dict", "invalidFormat"),
        ({"name": "Jane", "dateCreated": "2024-01-01T00:00:00Z"}, "missingId"),
        (valid_record(id="   "), "missingId"),
        (valid_record(id=42), "missingId"),
        (valid_record(name=""), "missingName"),
        (valid_record(name=None), "missingName"),
        (valid_record(dateCreated=None), "missingDateCreated"),
        (valid_record(id="has space"), "invalidIdFormat"),
        (valid_record(id="../etc"), "invalidIdFormat"),
        (valid_record(notes=5), "invalidNotesFormat"),
        (valid_record(language=["en"]), "invalidLanguageFormat"),
        (valid_record(gender=1), "invalidGenderFormat"),
        (valid_record(dateCreated="yesterday"), "invalidDateCreated"),
        (valid_record(updatedAt="soon"), "invalidUpdatedAt"),
        (valid_record(patientInfo="age 40"), "invalidPatientInfoFormat"),
        (valid_record(metadata={"version": -1}), "invalidMetadataFormat"),
    ])
    def test_rejections(self, record, reason):
        """Test that each bad input fails with its stable reason code."""
        result = validate_for_write(record)
        assert result.is_failure()
        assert isinstance(result.exception, ValidationError)
        assert result.exception.reason == reason
        assert result.error_details["reason"] == reason

    def test_name_is_checked_before_id_format(self):
        """Test that the first failing check wins."""
        result = validate_for_write(valid_record(id="bad id", name=""))
        assert result.exception.reason == "missingName"


class TestValidateForRead:
    """Test suite for read-side validation."""

    def test_accepts_legacy_record_without_metadata(self):
        result = validate_for_read({"id": "abc123", "name": "Old"}, "abc123")
        assert result.is_success()

    def test_accepts_mismatched_id(self):
        assert validate_for_read({"id": "other"}, "abc123").is_success()

    @pytest.mark.parametrize("value", [[1, 2], "text", None, 7])
    def test_rejects_non_objects(self, value):
        result = validate_for_read(value, "abc123")
        assert result.is_failure()
        assert isinstance(result.exception, DataCorruptionError)
        assert result.error_details["record_id"] == "abc123"


class TestImportHelpers:
    """Test suite for import payload parsing and sanitizing."""

    def test_sanitize_drops_unknown_fields(self):
        record = valid_record(notes="hi", isAdmin=True, __proto__={})
        assert sanitize_for_import(record) == valid_record(notes="hi")

    def test_parse_bare_list(self):
        result = parse_import_payload([valid_record()])
        assert result.value == ([valid_record()], None)

    def test_parse_envelope_text(self):
        result = parse_import_payload(b'{"metadata": {"recordCount": 0}, "patients": []}')
        assert result.value == ([], {"recordCount": 0})

    def test_parse_envelope_ignores_non_object_metadata(self):
        result = parse_import_payload({"metadata": "v1", "patients": []})
        assert result.value == ([], None)

    @pytest.mark.parametrize("payload,reason", [
        ("[", "invalidJson"),
        ("null", "invalidStructure"),
        ({"items": []}, "invalidStructure"),
        ({"patients": "p-1"}, "invalidPatientsArray"),
    ])
    def test_parse_failures(self, payload, reason):
        result = parse_import_payload(payload)
        assert result.is_failure()
        assert result.exception.reason == reason
