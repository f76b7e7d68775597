"""Record Store - Encrypted Patient Record Orchestrator.

The RecordStore is the only component that talks to a key-value backend. Every
record passes through the same pipeline on the way in:

    validate -> (backup) -> stamp metadata -> encrypt -> write with retry -> cache -> event

and the reverse on the way out:

    cache | backend read -> decrypt -> validate-for-read -> access stats -> cache -> event

Security Impact:
    - Plaintext only exists in memory; backends see AES-256-GCM envelopes
    - Record contents and key material are never logged or emitted; record
      ids and error codes are
    - Every mutating operation leaves an audit trail entry

Architecture:
    - Depends on ports (KeyValuePort) and domain helpers only; concrete
      backends and the cipher are injected by the composition root
    - One explicit instance per vault (no global singleton)
    - Single event loop, cooperative concurrency; concurrent saves of the same
      id are last-write-wins
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from src.domain.guardrails import QuotaGuard, QuotaStatus, RetryPolicy
from src.domain.patient_record import RECORD_ID_PATTERN, SCHEMA_VERSION, AuditLogEntry, ExportMetadata
from src.domain.ports import (
    BackendUnavailableError,
    DataCorruptionError,
    KeyValuePort,
    MigrationError,
    NotFoundError,
    PayloadTooLargeError,
    RecordStoreError,
    StorageError,
    ValidationError,
    is_fallback_trigger,
    parse_iso_timestamp,
    utc_now_iso,
)
from src.domain.search import SearchPage, matches, paginate, validate_criteria
from src.domain.validation import (
    parse_import_payload,
    validate_for_read,
    validate_for_write,
)
from src.infrastructure import events
from src.infrastructure.audit import audit_logger as audit_actions
from src.infrastructure.audit.audit_logger import AuditLogger
from src.infrastructure.config_manager import RecordStoreConfig
from src.infrastructure.encryption.encryption_service import EncryptionService
from src.infrastructure.events import EventEmitter
from src.infrastructure.lru_cache import LRUCache

logger = logging.getLogger(__name__)

T = TypeVar('T')

RECORD_PREFIX = "patient-"
BACKUP_PREFIX = "backup-"

# Metadata keys owned by the store; caller-supplied values are ignored on save
_MANAGED_METADATA = ("version", "lastModified", "lastAccessed", "accessCount", "schemaVersion")
_CREATION_FIELDS = ("dateCreated", "createdAt")


class ConflictStrategy(str, Enum):
    """How import_all treats a record whose id already exists."""
    OVERWRITE = "overwrite"
    SKIP = "skip"
    NEWEST = "newest"


@dataclass
class BatchItemResult:
    """Outcome of one record in a batch operation."""
    index: int
    record_id: Optional[str]
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class BatchResult:
    """Per-item outcomes of save_many / migrate_legacy, in input order."""
    items: List[BatchItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def successful(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    @property
    def succeeded_ids(self) -> List[str]:
        return [item.record_id for item in self.items if item.success and item.record_id]

    @property
    def failures(self) -> List[BatchItemResult]:
        return [item for item in self.items if not item.success]


@dataclass
class ImportReport:
    """Summary of an import_all run."""
    attempted: int = 0
    imported: int = 0
    skipped: int = 0
    overwritten: int = 0
    skipped_records: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def skip(self, index: int, record_id: Optional[str], reason: str) -> None:
        self.skipped += 1
        self.skipped_records.append({"index": index, "id": record_id, "reason": reason})


def record_key(record_id: str) -> str:
    """Backend key for a record id."""
    return f"{RECORD_PREFIX}{record_id}"


def backup_key(record_id: str, timestamp: Optional[str] = None) -> str:
    """Backend key for a backup of ``record_id`` taken at ``timestamp``.

    The timestamp is compacted to digits so it never contains ``-`` and the
    id can be recovered with ``rsplit('-', 1)``.
    """
    stamp = timestamp or utc_now_iso()
    compact = "".join(ch for ch in stamp if ch.isdigit())
    return f"{BACKUP_PREFIX}{record_id}-{compact}"


def record_id_from_backup_key(key: str) -> str:
    if not key.startswith(BACKUP_PREFIX) or "-" not in key[len(BACKUP_PREFIX):]:
        raise ValidationError(f"Not a backup key: {key!r}", reason="invalidBackupKey")
    return key[len(BACKUP_PREFIX):].rsplit("-", 1)[0]


def _check_id(record_id: Any) -> str:
    if not isinstance(record_id, str) or not record_id.strip():
        raise ValidationError("Record id is required", reason="missingId")
    record_id = record_id.strip()
    if not RECORD_ID_PATTERN.match(record_id):
        raise ValidationError(
            f"Record id has an invalid format: {record_id!r}", reason="invalidIdFormat", record_id=record_id
        )
    return record_id


def _chunks(items: List[T], size: int) -> List[List[T]]:
    return [items[start:start + size] for start in range(0, len(items), size)]


def _error_code(error: BaseException) -> str:
    return getattr(error, "code", type(error).__name__)


class RecordStore:
    """Encrypted, cached, observable persistence for patient intake records.

    Parameters:
        backend: Primary key-value backend
        cipher: EncryptionService holding the derived key
        config: RecordStoreConfig (defaults if None)
        fallback: Optional backend used when the primary is full or unreachable
        emitter: EventEmitter for lifecycle events (a private one if None)
        audit: AuditLogger for the audit trail (a private one if None)
        retry_policy: RetryPolicy for backend calls (built from config if None)
        quota_guard: QuotaGuard for the pre-save check (built from config if None)
        device_id: Identifier stamped into exports

    Example Usage:
        ```python
        store = RecordStore(DuckDBKeyValueAdapter(db_path="vault.duckdb"), cipher)
        await store.save("abc123", {"name": "Jane", "dateCreated": "2024-01-01T00:00:00Z"})
        record = await store.load("abc123")
        await store.close()
        ```
    """

    def __init__(
        self,
        backend: KeyValuePort,
        cipher: EncryptionService,
        config: Optional[RecordStoreConfig] = None,
        fallback: Optional[KeyValuePort] = None,
        emitter: Optional[EventEmitter] = None,
        audit: Optional[AuditLogger] = None,
        retry_policy: Optional[RetryPolicy] = None,
        quota_guard: Optional[QuotaGuard] = None,
        device_id: Optional[str] = None,
    ):
        self.config = config or RecordStoreConfig()
        self._backend = backend
        self._fallback = fallback
        self._cipher = cipher
        self.events = emitter or EventEmitter()
        self.audit = audit or AuditLogger()
        self._retry = retry_policy or RetryPolicy(self.config.retry_config())
        self._quota = quota_guard or QuotaGuard(self.config.quota_config())
        self.device_id = device_id
        self._cache: LRUCache[str, dict] = LRUCache(self.config.cache_capacity)
        self._fallback_active = False

    async def __aenter__(self) -> 'RecordStore':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def fallback_active(self) -> bool:
        return self._fallback_active

    # ------------------------------------------------------------------
    # Backend access (retry + fallback)
    # ------------------------------------------------------------------

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await self._retry.run(operation, operation_name=f"{self._backend.name}.{name}")

    async def _activate_fallback(self, error: StorageError, operation: str, key: str) -> None:
        if not self._fallback_active:
            logger.warning(
                f"Primary backend '{self._backend.name}' failed ({error.code}); "
                f"switching to fallback '{self._fallback.name}'"
            )
        self._fallback_active = True
        await self.events.emit(
            events.FALLBACK,
            operation=operation,
            key=key,
            error_code=error.code,
            primary=self._backend.name,
            fallback=self._fallback.name,
        )

    async def _read_raw(self, key: str) -> Optional[str]:
        # Fallback writes are newer than the primary copy, so they win
        if self._fallback is not None and self._fallback_active:
            value = await self._fallback.get(key)
            if value is not None:
                return value
        try:
            return await self._with_retry(lambda: self._backend.get(key), "get")
        except BackendUnavailableError as e:
            if self._fallback is None:
                raise
            await self._activate_fallback(e, "get", key)
            return await self._fallback.get(key)

    async def _write_raw(self, key: str, value: str) -> str:
        """Write ``value`` and return the name of the backend that took it."""
        try:
            await self._with_retry(lambda: self._backend.set(key, value), "set")
        except StorageError as e:
            if self._fallback is None or not is_fallback_trigger(e):
                raise
            try:
                await self._fallback.set(key, value)
            except RecordStoreError as fallback_error:
                e.details["fallback_error"] = fallback_error.to_dict()
                logger.error(f"Fallback write of {key} failed as well: {fallback_error.code}")
                raise e from fallback_error
            await self._activate_fallback(e, "set", key)
            return self._fallback.name

        if self._fallback is not None and self._fallback_active:
            await self._fallback.delete(key)
        return self._backend.name

    async def _delete_raw(self, key: str) -> bool:
        removed = False
        try:
            removed = await self._with_retry(lambda: self._backend.delete(key), "delete")
        except BackendUnavailableError as e:
            if self._fallback is None:
                raise
            await self._activate_fallback(e, "delete", key)
        if self._fallback is not None:
            removed = await self._fallback.delete(key) or removed
        return removed

    async def _list_keys(self, prefix: str) -> List[str]:
        keys: set = set()
        try:
            keys.update(await self._with_retry(lambda: self._backend.list_keys(prefix), "list_keys"))
        except BackendUnavailableError as e:
            if self._fallback is None:
                raise
            await self._activate_fallback(e, "list_keys", prefix)
        if self._fallback is not None:
            keys.update(await self._fallback.list_keys(prefix))
        return sorted(keys)

    async def _check_quota(self) -> None:
        """Refuse the save near the quota ceiling; warn when approaching it."""
        try:
            estimate = await self._backend.estimate()
        except StorageError as e:
            logger.debug(f"Storage estimate unavailable: {e.code}")
            return
        status = self._quota.enforce(estimate)
        if status is QuotaStatus.WARNING:
            logger.warning(f"Storage usage at {estimate.ratio:.0%} of quota")
            await self.events.emit(
                events.QUOTA_WARNING, usage=estimate.usage, quota=estimate.quota, ratio=estimate.ratio
            )

    async def _report(self, operation: str, error: BaseException, record_id: Optional[str] = None) -> None:
        code = _error_code(error)
        logger.warning(f"{operation} failed for {record_id or '-'}: {code}")
        await self.events.emit(events.ERROR, operation=operation, record_id=record_id, error_code=code)

    def _decode(self, record_id: str, raw: str) -> dict:
        result = validate_for_read(self._cipher.decrypt_record(raw), record_id)
        if result.is_failure():
            raise result.exception
        return result.value

    @staticmethod
    def _bump_access(record: dict) -> dict:
        bumped = dict(record)
        metadata = dict(bumped.get("metadata") or {})
        metadata["accessCount"] = int(metadata.get("accessCount") or 0) + 1
        metadata["lastAccessed"] = utc_now_iso()
        metadata.setdefault("schemaVersion", SCHEMA_VERSION)
        bumped["metadata"] = metadata
        return bumped

    # ------------------------------------------------------------------
    # Single-record operations
    # ------------------------------------------------------------------

    async def _existing(self, record_id: str, key: str) -> Tuple[Optional[dict], Optional[str]]:
        """Current record and its raw envelope, without access tracking."""
        raw = await self._read_raw(key)
        if raw is None:
            return None, None
        cached = self._cache.get(key)
        if cached is not None:
            return cached, raw
        try:
            return self._decode(record_id, raw), raw
        except DataCorruptionError as e:
            logger.warning(f"Existing value for {record_id} is unreadable ({e.code}); overwriting")
            return None, raw

    def _stamp(self, record: dict, existing: Optional[dict], touch: bool) -> dict:
        now = utc_now_iso()
        prepared = dict(record)
        metadata = dict(prepared.get("metadata") or {})

        if existing is not None:
            for name in _CREATION_FIELDS:
                if existing.get(name):
                    prepared[name] = existing[name]

        if touch:
            previous = (existing or {}).get("metadata") or {}
            for name in _MANAGED_METADATA:
                metadata.pop(name, None)
            metadata["version"] = int(previous.get("version") or 0) + 1
            metadata["lastModified"] = now
            metadata["lastAccessed"] = previous.get("lastAccessed")
            metadata["accessCount"] = int(previous.get("accessCount") or 0)
            prepared["updatedAt"] = now
        else:
            metadata.setdefault("version", 1)
            metadata.setdefault("lastModified", prepared.get("updatedAt") or now)
            metadata.setdefault("lastAccessed", None)
            metadata.setdefault("accessCount", 0)
            prepared.setdefault("updatedAt", metadata["lastModified"])

        metadata["schemaVersion"] = SCHEMA_VERSION
        prepared["metadata"] = metadata
        return prepared

    async def save(
        self,
        record_id: str,
        record: dict,
        *,
        backup: bool = False,
        touch: bool = True
    ) -> dict:
        """Validate, encrypt and persist a record.

        Parameters:
            record_id: Record identifier (``record['id']`` defaults to it)
            record: Record fields
            backup: Copy the current stored value to a backup key first
            touch: Refresh ``updatedAt`` and bump ``metadata.version``. Imports
                pass False to keep the record's provenance intact.

        Returns:
            dict: The record as persisted

        Raises:
            ValidationError: If the record is invalid (never retried)
            QuotaExceededError: If storage is at the reject threshold, or full
                with no usable fallback
            CryptoError: If the existing value was written under another key
            StorageError: If the write failed after retries and fallback
        """
        try:
            candidate = dict(record) if isinstance(record, dict) else record
            if isinstance(candidate, dict):
                record_id = _check_id(record_id)
                given_id = candidate.get("id")
                if given_id is None:
                    candidate["id"] = record_id
                elif isinstance(given_id, str) and given_id.strip() != record_id:
                    raise ValidationError(
                        f"Record id {given_id!r} does not match {record_id!r}",
                        reason="idMismatch",
                        record_id=record_id,
                    )

            result = validate_for_write(candidate)
            if result.is_failure():
                raise result.exception
            validated = result.value

            await self._check_quota()

            key = record_key(record_id)
            existing, existing_raw = await self._existing(record_id, key)
            if backup and existing_raw is not None:
                await self._write_raw(backup_key(record_id), existing_raw)

            prepared = self._stamp(validated, existing, touch)
            stored = self._cipher.encrypt_record(prepared)
            backend_name = await self._write_raw(key, stored)
        except RecordStoreError as e:
            await self._report("save", e, record_id if isinstance(record_id, str) else None)
            raise

        self._cache.put(key, prepared)
        version = prepared["metadata"]["version"]
        logger.debug(f"Saved {record_id} (version {version}) to {backend_name}")
        await self.events.emit(events.SAVE, record_id=record_id, backend=backend_name, version=version)
        self.audit.log_action(audit_actions.SAVE_PATIENT, record_id, backend=backend_name, version=version)
        return dict(prepared)

    async def load(self, record_id: str, *, track_access: bool = True) -> Optional[dict]:
        """Load and decrypt a record.

        A cache hit never touches the backend. A miss reads, decrypts and
        re-persists the updated access statistics.

        Returns:
            dict | None: The record, or None if it does not exist

        Raises:
            CryptoError: If the value cannot be authenticated (wrong key or tampering)
            DataCorruptionError: If the decrypted value is not a record
        """
        try:
            record_id = _check_id(record_id)
            key = record_key(record_id)

            cached = self._cache.get(key)
            if cached is not None:
                record = self._bump_access(cached) if track_access else cached
                if track_access:
                    self._cache.put(key, record)
                source = "cache"
            else:
                raw = await self._read_raw(key)
                if raw is None:
                    return None
                record = self._decode(record_id, raw)
                source = "backend"
                if track_access:
                    record = self._bump_access(record)
                    await self._persist_access(record_id, key, record)
                self._cache.put(key, record)
        except RecordStoreError as e:
            await self._report("load", e, record_id if isinstance(record_id, str) else None)
            raise

        if track_access:
            await self.events.emit(events.LOAD, record_id=record_id, source=source)
            self.audit.log_action(audit_actions.LOAD_PATIENT, record_id, source=source)
        return dict(record)

    async def _persist_access(self, record_id: str, key: str, record: dict) -> None:
        # The read already succeeded; a failed stats write is reported, not raised
        try:
            await self._write_raw(key, self._cipher.encrypt_record(record))
        except StorageError as e:
            await self._report("load.write_access", e, record_id)

    async def update(self, record_id: str, fields: dict, *, backup: bool = False) -> dict:
        """Merge ``fields`` into an existing record and save it.

        ``patientInfo`` and ``metadata`` are merged one level deep; the id
        and creation timestamps cannot be changed.

        Raises:
            NotFoundError: If the record does not exist
            ValidationError: If ``fields`` tries to change the id or the merged
                record is invalid
        """
        record_id = _check_id(record_id)
        if not isinstance(fields, dict):
            raise ValidationError("Update fields must be an object", reason="invalidFormat", record_id=record_id)

        existing = await self.load(record_id, track_access=False)
        if existing is None:
            error = NotFoundError(f"Record {record_id} not found", record_id=record_id)
            await self._report("update", error, record_id)
            raise error

        new_id = fields.get("id")
        if new_id is not None and new_id != record_id:
            error = ValidationError("Record id cannot be changed", reason="idImmutable", record_id=record_id)
            await self._report("update", error, record_id)
            raise error

        merged = dict(existing)
        changed = []
        for name, value in fields.items():
            if name == "id" or name in _CREATION_FIELDS:
                continue
            if name in ("patientInfo", "metadata") and isinstance(value, dict) and isinstance(merged.get(name), dict):
                merged[name] = {**merged[name], **value}
            else:
                merged[name] = value
            changed.append(name)

        saved = await self.save(record_id, merged, backup=backup)
        await self.events.emit(events.UPDATE, record_id=record_id, fields=sorted(changed))
        self.audit.log_action(audit_actions.UPDATE_PATIENT, record_id, fields=sorted(changed))
        return saved

    async def delete(self, record_id: str, *, backup: bool = False) -> bool:
        """Delete a record from every backend and the cache.

        Raises:
            NotFoundError: If the record does not exist
        """
        try:
            record_id = _check_id(record_id)
            key = record_key(record_id)
            raw = await self._read_raw(key)
            if raw is None:
                raise NotFoundError(f"Record {record_id} not found", record_id=record_id)
            if backup:
                await self._write_raw(backup_key(record_id), raw)
            await self._delete_raw(key)
        except RecordStoreError as e:
            await self._report("delete", e, record_id if isinstance(record_id, str) else None)
            raise

        self._cache.pop(key)
        logger.info(f"Deleted {record_id}")
        await self.events.emit(events.DELETE, record_id=record_id, backup=backup)
        self.audit.log_action(audit_actions.DELETE_PATIENT, record_id, backup=backup)
        return True

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    async def _save_item(self, record: Any, touch: bool) -> dict:
        if not isinstance(record, dict):
            raise ValidationError("Record must be an object", reason="invalidFormat")
        record_id = record.get("id")
        if not isinstance(record_id, str) or not record_id.strip():
            raise ValidationError("Record id is required", reason="missingId")
        return await self.save(record_id.strip(), record, touch=touch)

    async def save_many(
        self,
        records: List[dict],
        *,
        chunk_size: Optional[int] = None,
        touch: bool = True
    ) -> BatchResult:
        """Save records in chunks, concurrently within each chunk.

        A failing record never aborts the batch; its outcome is reported in
        the returned BatchResult (same order as ``records``).
        """
        records = list(records)
        size = chunk_size or self.config.batch_chunk_size
        batch = BatchResult()
        processed = 0

        for chunk in _chunks(records, size):
            outcomes = await asyncio.gather(
                *(self._save_item(record, touch) for record in chunk), return_exceptions=True
            )
            for record, outcome in zip(chunk, outcomes):
                record_id = record.get("id") if isinstance(record, dict) else None
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    if not isinstance(outcome, RecordStoreError):
                        logger.error(f"Unexpected error saving {record_id}", exc_info=outcome)
                    batch.items.append(BatchItemResult(
                        index=processed,
                        record_id=record_id,
                        success=False,
                        error=str(outcome),
                        error_code=_error_code(outcome),
                        reason=getattr(outcome, "reason", None),
                    ))
                else:
                    batch.items.append(BatchItemResult(index=processed, record_id=outcome["id"], success=True))
                processed += 1

            await self.events.emit(
                events.BATCH_PROGRESS,
                processed=processed,
                total=len(records),
                successful=batch.successful,
                failed=batch.failed,
            )

        logger.info(f"Batch save: {batch.successful}/{batch.total} succeeded")
        return batch

    async def _load_for_scan(self, key: str) -> Optional[dict]:
        raw = await self._read_raw(key)
        if raw is None:
            return None
        return self._decode(key[len(RECORD_PREFIX):], raw)

    async def load_all_detailed(self) -> Tuple[Dict[str, dict], List[Dict[str, Any]]]:
        """Load every record, bypassing the cache and access tracking.

        Returns:
            (records by id, failures) where each failure is
            ``{"record_id", "error_code", "error"}``
        """
        keys = await self._list_keys(RECORD_PREFIX)
        records: Dict[str, dict] = {}
        failures: List[Dict[str, Any]] = []

        for chunk in _chunks(keys, self.config.batch_chunk_size):
            outcomes = await asyncio.gather(*(self._load_for_scan(key) for key in chunk), return_exceptions=True)
            for key, outcome in zip(chunk, outcomes):
                record_id = key[len(RECORD_PREFIX):]
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, RecordStoreError):
                        raise outcome
                    failures.append({"record_id": record_id, "error_code": outcome.code, "error": str(outcome)})
                    await self._report("load_all", outcome, record_id)
                elif outcome is not None:
                    records[record_id] = outcome

        return records, failures

    async def load_all(self) -> Dict[str, dict]:
        """Load every readable record, keyed by id."""
        records, _ = await self.load_all_detailed()
        return records

    async def list_ids(self) -> List[str]:
        """Record ids, most recently updated first."""
        records = await self.load_all()
        return sorted(records, key=lambda rid: (records[rid].get("updatedAt") or "", rid), reverse=True)

    async def search(
        self,
        criteria: Dict[str, Any],
        *,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> SearchPage:
        """Filter all records by ``criteria`` and return one page of matches.

        Raises:
            ValidationError: If the criteria use an unknown operator or a bad regex
        """
        try:
            validate_criteria(criteria)
        except ValueError as e:
            raise ValidationError(f"Invalid search criteria: {e}", reason="invalidCriteria") from e

        records = await self.load_all()
        hits = [records[rid] for rid in sorted(records) if matches(records[rid], criteria)]
        return paginate(hits, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Export / import / migration
    # ------------------------------------------------------------------

    async def export_all(self, *, max_mb: Optional[float] = None, warn_mb: Optional[float] = None) -> dict:
        """Build an export envelope of every valid record.

        Raises:
            PayloadTooLargeError: If the serialized export exceeds ``max_mb``
        """
        records, failures = await self.load_all_detailed()
        patients = []
        invalid = len(failures)
        for record_id in sorted(records):
            if validate_for_write(records[record_id]).is_failure():
                logger.warning(f"Record {record_id} excluded from export: fails validation")
                invalid += 1
                continue
            patients.append(records[record_id])

        metadata = ExportMetadata(
            exportTimestamp=utc_now_iso(),
            recordCount=len(patients),
            schemaVersion=SCHEMA_VERSION,
            totalAttempted=len(records) + len(failures),
            invalidRecords=invalid,
            deviceId=self.device_id,
        )
        payload = {"metadata": metadata.model_dump(), "patients": patients}

        if max_mb is not None or warn_mb is not None:
            size_mb = len(json.dumps(payload, indent=2).encode('utf-8')) / (1024 * 1024)
            if max_mb is not None and size_mb > max_mb:
                raise PayloadTooLargeError(
                    f"Export is {size_mb:.1f} MB, above the {max_mb} MB limit", size_mb=size_mb, limit_mb=max_mb
                )
            if warn_mb is not None and size_mb > warn_mb:
                logger.warning(f"Large export: {size_mb:.1f} MB")
                await self.events.emit(events.EXPORT_WARNING, size_mb=round(size_mb, 2), warn_mb=warn_mb)

        logger.info(f"Exported {len(patients)} records ({invalid} invalid)")
        await self.events.emit(events.EXPORT, record_count=len(patients), invalid=invalid)
        self.audit.log_action(audit_actions.EXPORT_DATA, patient_count=len(patients), invalid=invalid)
        return payload

    async def _warn_import(self, report: ImportReport, message: str) -> None:
        logger.warning(f"Import: {message}")
        report.warnings.append(message)
        await self.events.emit(events.IMPORT_WARNING, message=message)

    async def _should_skip_conflict(self, record: dict, conflict: ConflictStrategy) -> Optional[str]:
        if conflict is ConflictStrategy.SKIP:
            return "conflict"
        if conflict is ConflictStrategy.NEWEST:
            try:
                existing = await self.load(record["id"], track_access=False)
            except RecordStoreError as e:
                # Unreadable records cannot be compared; keep them
                logger.warning(f"Import: existing {record['id']} is unreadable ({e.code}); keeping it")
                return e.code
            incoming_at = parse_iso_timestamp(record.get("updatedAt"))
            existing_at = parse_iso_timestamp((existing or {}).get("updatedAt"))
            if existing_at is not None and (incoming_at is None or incoming_at <= existing_at):
                return "notNewer"
        return None

    async def import_all(
        self,
        payload: Any,
        *,
        conflict: ConflictStrategy = ConflictStrategy.OVERWRITE,
        source: Optional[str] = None
    ) -> ImportReport:
        """Import records from an export envelope, a bare list, or their JSON text.

        Invalid records are skipped with a reason; metadata mismatches only
        warn. Records keep their timestamps and metadata, so importing an
        export into the store it came from changes nothing.

        Raises:
            ValidationError: If the payload itself is malformed (invalidJson,
                invalidStructure, invalidPatientsArray)
        """
        parsed = parse_import_payload(payload)
        if parsed.is_failure():
            raise parsed.exception
        records, metadata = parsed.value
        conflict = ConflictStrategy(conflict)

        report = ImportReport(attempted=len(records))
        if metadata is not None:
            version = metadata.get("schemaVersion")
            if version is not None and version != SCHEMA_VERSION:
                await self._warn_import(report, f"schema version {version} differs from {SCHEMA_VERSION}")
            count = metadata.get("recordCount")
            if count is not None and count != len(records):
                await self._warn_import(report, f"metadata reports {count} records, file contains {len(records)}")

        existing_ids = {key[len(RECORD_PREFIX):] for key in await self._list_keys(RECORD_PREFIX)}
        accepted: List[Tuple[int, dict]] = []
        for index, record in enumerate(records):
            result = validate_for_write(record)
            if result.is_failure():
                report.skip(index, result.exception.record_id, result.exception.reason)
                continue
            clean = result.value
            if clean["id"] in existing_ids:
                reason = await self._should_skip_conflict(clean, conflict)
                if reason is not None:
                    report.skip(index, clean["id"], reason)
                    continue
            accepted.append((index, clean))

        batch = await self.save_many([record for _, record in accepted], touch=False)
        for (index, record), item in zip(accepted, batch.items):
            if item.success:
                report.imported += 1
                if record["id"] in existing_ids:
                    report.overwritten += 1
            else:
                report.skip(index, record["id"], item.reason or item.error_code)

        logger.info(
            f"Imported {report.imported}/{report.attempted} records "
            f"({report.skipped} skipped, {report.overwritten} overwritten)"
        )
        await self.events.emit(
            events.IMPORT, imported=report.imported, skipped=report.skipped, overwritten=report.overwritten
        )
        self.audit.log_action(
            audit_actions.IMPORT_DATA,
            imported=report.imported,
            skipped=report.skipped,
            overwritten=report.overwritten,
            source=source,
        )
        return report

    async def migrate_legacy(
        self,
        legacy_backend: KeyValuePort,
        *,
        prefix: str = RECORD_PREFIX,
        remove_source: bool = False,
        strict: bool = False
    ) -> BatchResult:
        """Re-save unencrypted legacy JSON records through the encrypted pipeline.

        Parameters:
            legacy_backend: Backend holding plaintext JSON values
            prefix: Key prefix of legacy records; the rest of the key is the
                id used when a record carries none
            remove_source: Delete migrated keys from the legacy backend
            strict: Raise MigrationError if any record fails

        Raises:
            MigrationError: If the legacy backend cannot be enumerated, or in
                strict mode when any record failed
        """
        try:
            keys = await legacy_backend.list_keys(prefix)
        except StorageError as e:
            raise MigrationError(
                f"Cannot enumerate legacy backend: {e.message}", {"prefix": prefix, "cause": e.code}
            ) from e

        candidates: List[Tuple[str, dict]] = []
        unreadable: List[BatchItemResult] = []
        for key in keys:
            legacy_id = key[len(prefix):]
            try:
                raw = await legacy_backend.get(key)
                record = json.loads(raw) if raw is not None else None
            except StorageError as e:
                unreadable.append(BatchItemResult(0, legacy_id, False, str(e), e.code, "readError"))
                continue
            except json.JSONDecodeError as e:
                unreadable.append(BatchItemResult(0, legacy_id, False, str(e), DataCorruptionError.code, "parseError"))
                continue
            if not isinstance(record, dict):
                unreadable.append(BatchItemResult(
                    0, legacy_id, False, "Legacy value is not an object", DataCorruptionError.code, "invalidFormat"
                ))
                continue
            record.setdefault("id", legacy_id)
            candidates.append((key, record))

        saved = await self.save_many([record for _, record in candidates])
        result = BatchResult(items=saved.items + unreadable)
        for index, item in enumerate(result.items):
            item.index = index

        if remove_source:
            for (key, _), item in zip(candidates, saved.items):
                if item.success:
                    await legacy_backend.delete(key)

        logger.info(f"Migrated {result.successful}/{result.total} legacy records")
        await self.events.emit(events.MIGRATION, migrated=result.successful, failed=result.failed)
        self.audit.log_action(
            audit_actions.MIGRATE_DATA, migrated=result.successful, failed=result.failed, removed_source=remove_source
        )

        if strict and result.failed:
            raise MigrationError(
                f"{result.failed} of {result.total} legacy records failed to migrate",
                {"migrated": result.successful, "failed": result.failed,
                 "failed_ids": [item.record_id for item in result.failures]},
            )
        return result

    # ------------------------------------------------------------------
    # Backups, housekeeping, introspection
    # ------------------------------------------------------------------

    async def list_backups(self, record_id: str) -> List[str]:
        """Backup keys for ``record_id``, oldest first."""
        record_id = _check_id(record_id)
        keys = await self._list_keys(f"{BACKUP_PREFIX}{record_id}-")
        return [key for key in keys if record_id_from_backup_key(key) == record_id]

    async def restore_backup(self, key: str) -> dict:
        """Make the backup stored under ``key`` the current record.

        Raises:
            NotFoundError: If no backup exists under ``key``
            CryptoError: If the backup cannot be decrypted with the current key
        """
        record_id = record_id_from_backup_key(key)
        raw = await self._read_raw(key)
        if raw is None:
            raise NotFoundError(f"Backup {key} not found", record_id=record_id)
        record = self._decode(record_id, raw)
        target = record_key(record_id)
        await self._write_raw(target, raw)
        self._cache.put(target, record)
        logger.info(f"Restored {record_id} from {key}")
        self.audit.log_action(audit_actions.RESTORE_BACKUP, record_id, backup_key=key)
        return dict(record)

    async def clear_all(self) -> int:
        """Delete every record and backup and reset the audit trail.

        The device profile (salt) is left alone, so the passphrase keeps
        working for data saved afterwards.

        Returns:
            int: Number of keys removed from the primary backend
        """
        removed = 0
        for prefix in (RECORD_PREFIX, BACKUP_PREFIX):
            removed += await self._with_retry(lambda p=prefix: self._backend.clear(p), "clear")
            if self._fallback is not None:
                await self._fallback.clear(prefix)
        self._cache.clear()
        self.audit.clear_logs()
        logger.info(f"Cleared {removed} keys")
        return removed

    def audit_log(self, limit: Optional[int] = 100, action: Optional[str] = None) -> List[AuditLogEntry]:
        """Audit entries, newest first."""
        return self.audit.get_logs(limit=limit, action=action)

    def cache_info(self) -> dict:
        return {
            **self._cache.get_statistics(),
            # least to most recently used
            "cached_ids": [key[len(RECORD_PREFIX):] for key in self._cache.keys()],
            "retry": self._retry.get_statistics(),
            "backend": self._backend.name,
            "fallback": self._fallback.name if self._fallback is not None else None,
            "fallback_active": self._fallback_active,
            "key_id": self._cipher.get_key_id(),
        }

    async def close(self) -> None:
        """Flush the audit trail, drop cached plaintext and release backend resources."""
        self.audit.flush()
        self._cache.clear()
        await self._backend.close()
        if self._fallback is not None:
            await self._fallback.close()
