"""Export and import files for the record store.

Export files are pretty-printed JSON envelopes written atomically. Import
files are size-checked twice: on disk before reading, and again once the
content is decoded, before any JSON parsing.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from src.domain.ports import PayloadTooLargeError, ValidationError
from src.infrastructure.settings import Settings, settings as default_settings
from src.services.record_store import ConflictStrategy, ImportReport, RecordStore

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def export_filename(now: Optional[datetime] = None) -> str:
    """File name for an export taken at ``now`` (local time)."""
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")
    return f"patient_export_{stamp}.json"


def _ensure_within(size_bytes: int, limit_mb: float, what: str) -> None:
    size_mb = size_bytes / _MB
    if size_mb > limit_mb:
        raise PayloadTooLargeError(
            f"{what} is {size_mb:.1f} MB, above the {limit_mb} MB limit", size_mb=size_mb, limit_mb=limit_mb
        )


async def export_to_file(
    store: RecordStore,
    destination: Union[str, Path],
    settings: Optional[Settings] = None
) -> Path:
    """Export every record to a JSON file.

    Parameters:
        store: Source record store
        destination: Directory (a timestamped file name is generated) or file path
        settings: Settings providing the export size limits

    Returns:
        Path: The written file

    Raises:
        PayloadTooLargeError: If the export exceeds the configured ceiling
    """
    settings = settings or default_settings
    payload = await store.export_all(max_mb=settings.export_max_mb, warn_mb=settings.export_warn_mb)

    target = Path(destination)
    if target.is_dir():
        target = target / export_filename()
    target.parent.mkdir(parents=True, exist_ok=True)

    tmp = target.with_suffix(target.suffix + ".tmp")
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    os.replace(tmp, target)

    logger.info(f"Wrote export of {payload['metadata']['recordCount']} records to {target}")
    return target


def read_import_file(path: Union[str, Path], settings: Optional[Settings] = None) -> Any:
    """Read and parse an import file.

    Raises:
        FileNotFoundError: If ``path`` does not exist
        PayloadTooLargeError: If the file or its content exceeds the limits
        ValidationError: If the content is not valid JSON (reason ``invalidJson``)
    """
    settings = settings or default_settings
    source = Path(path)

    _ensure_within(source.stat().st_size, settings.import_max_file_mb, "Import file")
    content = source.read_text(encoding='utf-8', errors='replace')
    _ensure_within(len(content.encode('utf-8')), settings.import_max_content_mb, "Import content")

    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON file format: {e.msg}", reason="invalidJson") from e


async def import_from_file(
    store: RecordStore,
    path: Union[str, Path],
    conflict: ConflictStrategy = ConflictStrategy.OVERWRITE,
    settings: Optional[Settings] = None
) -> ImportReport:
    """Import records from an export file (or a bare JSON list of records)."""
    payload = read_import_file(path, settings)
    return await store.import_all(payload, conflict=conflict, source=Path(path).name)
