"""Tests for export/import files."""

import json
from datetime import datetime

import pytest

from src.domain.ports import PayloadTooLargeError, ValidationError
from src.infrastructure.config_manager import ConfigManager
from src.infrastructure.settings import Settings
from src.services.data_transfer import (
    export_filename,
    export_to_file,
    import_from_file,
    read_import_file,
)
from src.services.record_store import ConflictStrategy


def make_record(record_id, **fields):
    record = {"id": record_id, "name": "Jane Doe", "dateCreated": "2024-01-01T00:00:00Z"}
    record.update(fields)
    return record


@pytest.fixture
def transfer_settings():
    settings = Settings(ConfigManager({}))
    settings.export_max_mb = 20.0
    settings.export_warn_mb = 10.0
    settings.import_max_file_mb = 20.0
    settings.import_max_content_mb = 25.0
    return settings


class TestExportFile:
    """Test export_to_file."""

    def test_export_filename(self):
        name = export_filename(datetime(2024, 5, 6, 7, 8, 9))
        assert name == "patient_export_2024-05-06_07-08-09.json"

    @pytest.mark.asyncio
    async def test_export_into_directory(self, store, tmp_path, transfer_settings):
        await store.save("p-1", make_record("p-1"))

        written = await export_to_file(store, tmp_path, transfer_settings)

        assert written.parent == tmp_path
        assert written.name.startswith("patient_export_")
        content = written.read_text(encoding="utf-8")
        assert content.startswith("{\n  ")
        assert json.loads(content)["metadata"]["recordCount"] == 1
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_export_to_named_file(self, store, tmp_path, transfer_settings):
        target = tmp_path / "nested" / "backup.json"
        written = await export_to_file(store, target, transfer_settings)
        assert written == target
        assert json.loads(target.read_text())["patients"] == []

    @pytest.mark.asyncio
    async def test_export_over_limit_writes_nothing(self, store, tmp_path, transfer_settings):
        await store.save("p-1", make_record("p-1", notes="x" * 4000))
        transfer_settings.export_max_mb = 0.001

        with pytest.raises(PayloadTooLargeError):
            await export_to_file(store, tmp_path / "out.json", transfer_settings)
        assert not (tmp_path / "out.json").exists()


class TestImportFile:
    """Test read_import_file and import_from_file."""

    def test_file_size_limit(self, tmp_path, transfer_settings):
        path = tmp_path / "big.json"
        path.write_text(json.dumps([make_record("p-1", notes="x" * 4000)]))
        transfer_settings.import_max_file_mb = 0.001

        with pytest.raises(PayloadTooLargeError) as exc_info:
            read_import_file(path, transfer_settings)
        assert exc_info.value.details["limit_mb"] == 0.001

    def test_content_size_limit(self, tmp_path, transfer_settings):
        path = tmp_path / "big.json"
        path.write_text(json.dumps([make_record("p-1", notes="x" * 4000)]))
        transfer_settings.import_max_content_mb = 0.001

        with pytest.raises(PayloadTooLargeError):
            read_import_file(path, transfer_settings)

    def test_invalid_json(self, tmp_path, transfer_settings):
        path = tmp_path / "broken.json"
        path.write_text("{\"patients\": [")

        with pytest.raises(ValidationError) as exc_info:
            read_import_file(path, transfer_settings)
        assert exc_info.value.reason == "invalidJson"

    def test_missing_file(self, tmp_path, transfer_settings):
        with pytest.raises(FileNotFoundError):
            read_import_file(tmp_path / "absent.json", transfer_settings)

    @pytest.mark.asyncio
    async def test_round_trip_between_stores(self, make_store, tmp_path, transfer_settings):
        source = make_store()
        await source.save_many([make_record("p-1"), make_record("p-2", language="fr")])
        written = await export_to_file(source, tmp_path / "export.json", transfer_settings)

        target = make_store()
        report = await import_from_file(target, written, settings=transfer_settings)

        assert report.imported == 2
        assert (await target.load("p-2"))["language"] == "fr"
        assert target.audit_log(limit=1)[0].details["source"] == "export.json"

    @pytest.mark.asyncio
    async def test_bare_list_with_conflict_skip(self, store, tmp_path, transfer_settings):
        await store.save("p-1", make_record("p-1", notes="local"))
        path = tmp_path / "list.json"
        path.write_text(json.dumps([make_record("p-1", notes="incoming"), make_record("p-2")]))

        report = await import_from_file(store, path, ConflictStrategy.SKIP, transfer_settings)

        assert report.imported == 1
        assert report.skipped == 1
        assert (await store.load("p-1"))["notes"] == "local"
