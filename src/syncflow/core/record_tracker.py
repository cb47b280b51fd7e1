"""Fingerprinting and persistence of records written to destinations."""

import hashlib
import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..database import DatabaseService, get_sync_record_repository
from ..utils.logging import get_logger


logger = get_logger("core.record_tracker")


def normalize_value(value: Any) -> Any:
    """Convert a record value into a JSON-safe, stable representation."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(key): normalize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [normalize_value(item) for item in value]
    return value


def normalize_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    return {str(key): normalize_value(value) for key, value in record.items()}


def fingerprint(record: Mapping[str, Any]) -> str:
    """SHA-256 hex digest of the record, independent of field order."""
    payload = json.dumps(normalize_record(record), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def primary_key_value(record: Mapping[str, Any], primary_key_field: Optional[str]) -> Optional[str]:
    if not primary_key_field:
        return None
    value = record.get(primary_key_field)
    if value is None:
        return None
    return str(normalize_value(value))


class RecordTracker:
    """Stores one SyncRecord per written record."""

    def __init__(self, database_service: DatabaseService):
        self.db_service = database_service

    def record(
        self,
        sync_id: int,
        sync_run_id: int,
        record: Mapping[str, Any],
        primary_key_field: Optional[str] = None
    ) -> str:
        """Persist one record and return its fingerprint."""
        return self.record_many(sync_id, sync_run_id, [record], primary_key_field)[0]

    def record_many(
        self,
        sync_id: int,
        sync_run_id: int,
        records: Iterable[Mapping[str, Any]],
        primary_key_field: Optional[str] = None
    ) -> List[str]:
        """Persist a written chunk in one transaction.

        Records sharing a primary key with an earlier write of the same sync
        update that row in place.

        Returns:
            Fingerprints in input order
        """
        fingerprints = []

        with self.db_service.transaction() as session:
            repo = get_sync_record_repository(session)
            for record in records:
                digest = fingerprint(record)
                repo.upsert(
                    sync_id=sync_id,
                    sync_run_id=sync_run_id,
                    fingerprint=digest,
                    primary_key=primary_key_value(record, primary_key_field),
                    record=normalize_record(record)
                )
                fingerprints.append(digest)

        logger.debug("Records tracked", sync_id=sync_id, sync_run_id=sync_run_id, count=len(fingerprints))
        return fingerprints

    def is_unchanged(
        self,
        sync_id: int,
        record: Mapping[str, Any],
        primary_key_field: Optional[str] = None
    ) -> bool:
        """True when the stored fingerprint for the record's key matches the record."""
        key = primary_key_value(record, primary_key_field)
        if key is None:
            return False

        with self.db_service.transaction() as session:
            existing = get_sync_record_repository(session).get_by_primary_key(sync_id, key)
            return existing is not None and existing.fingerprint == fingerprint(record)
