"""Application services for the Patient Intake Vault.

The RecordStore orchestrates validation, encryption, persistence, caching and
events; data_transfer moves export/import payloads to and from files.
"""

from src.services.record_store import (
    BatchItemResult,
    BatchResult,
    ConflictStrategy,
    ImportReport,
    RecordStore,
)

__all__ = ["BatchItemResult", "BatchResult", "ConflictStrategy", "ImportReport", "RecordStore"]
