"""Storage step: normalizes records and persists them with one fallback write."""

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..core.collaborators import Persistence, invoke
from ..core.logging import get_logger
from ..models.core import NormalizedRecord, StepDefinition, StepType, WriteMode, WriteOptions, WriteResult
from .base import StepHandler
from .extraction import STATUS_EXTRACTED

logger = get_logger(__name__)

DEFAULT_FALLBACK_TABLE = "extracted_json"


def normalize_payload(record: Any) -> Dict[str, Any]:
    """Coerce any record shape into a dict payload.

    JSON strings are decoded first; lists become ``{"items": [...]}`` and
    anything that is not a mapping is wrapped as ``{"data": value}``.
    """
    if isinstance(record, BaseModel):
        record = record.model_dump(mode="json")

    if isinstance(record, (str, bytes)):
        text = record.decode("utf-8", errors="replace") if isinstance(record, bytes) else record
        try:
            record = json.loads(text)
        except ValueError:
            return {"data": text}

    if isinstance(record, dict):
        return dict(record)
    if isinstance(record, (list, tuple)):
        return {"items": list(record)}
    return {"data": record}


def normalize_record(record: Any, source_label: str) -> NormalizedRecord:
    return NormalizedRecord(payload=normalize_payload(record), source_label=source_label)


class StorageStepHandler(StepHandler):
    """Writes records from the run context through ``Persistence``.

    Step config:
        table: primary table (defaults to ``documents``)
        mode: ``insert`` or ``upsert``
        records_key: context key holding the records (``extracted_data``)
        fallback_table: catch-all table used when the primary write fails

    A primary write counts as failed when it raises or reports errors without
    storing anything. Exactly one fallback write follows; the step fails only
    when that fails too.
    """

    step_type = StepType.STORAGE

    def __init__(self, persistence: Persistence, fallback_table: str = DEFAULT_FALLBACK_TABLE):
        self.persistence = persistence
        self.fallback_table = fallback_table

    async def handle(self, step: StepDefinition, context: Dict[str, Any]) -> Dict[str, Any]:
        table = step.config.get("table", "documents")
        mode = WriteMode(step.config.get("mode", WriteMode.INSERT.value))
        fallback_table = step.config.get("fallback_table", self.fallback_table)
        source_label = step.config.get("source_label", step.id)

        raw_records = self._collect(context.get(step.config.get("records_key", "extracted_data")))
        if not raw_records:
            logger.info(f"Step {step.id}: no records to store")
            return {"success": True, "stored_count": 0, "table": table, "used_fallback": False, "storage_errors": []}

        records = [normalize_record(record, source_label) for record in raw_records]

        primary = await self._write(records, WriteOptions(table=table, mode=mode))
        if isinstance(primary, WriteResult):
            logger.info(f"Step {step.id}: stored {primary.stored_count} records in {table}")
            return {
                "success": True,
                "stored_count": primary.stored_count,
                "table": table,
                "used_fallback": False,
                "storage_errors": list(primary.errors),
            }

        primary_errors = primary
        logger.warning(f"Primary write to {table} failed, falling back to {fallback_table}: {primary_errors}")
        fallback_records = [
            NormalizedRecord(
                payload={"target_table": table, "record": record.payload},
                source_label=record.source_label,
                created_at=record.created_at,
            )
            for record in records
        ]
        fallback_result = await self._write(fallback_records, WriteOptions(table=fallback_table, mode=WriteMode.INSERT))
        if isinstance(fallback_result, WriteResult):
            logger.info(f"Step {step.id}: stored {fallback_result.stored_count} records in fallback table {fallback_table}")
            return {
                "success": True,
                "stored_count": fallback_result.stored_count,
                "table": fallback_table,
                "used_fallback": True,
                "storage_errors": primary_errors + list(fallback_result.errors),
            }

        errors = primary_errors + fallback_result
        logger.error(f"Step {step.id}: primary and fallback writes failed: {errors}")
        return {
            "success": False,
            "error": f"Failed to store records in {table} and fallback table {fallback_table}: {'; '.join(errors)}",
            "stored_count": 0,
            "used_fallback": True,
            "storage_errors": errors,
        }

    async def _write(self, records: List[NormalizedRecord], options: WriteOptions):
        """Returns the ``WriteResult`` on success or the list of error messages on failure."""
        try:
            result = await invoke(self.persistence.write, records, options)
        except Exception as e:
            return [f"{options.table}: {e}"]

        if not isinstance(result, WriteResult):
            result = WriteResult.model_validate(result or {})
        if result.errors and result.stored_count == 0:
            return [f"{options.table}: {error}" for error in result.errors]
        return result

    @staticmethod
    def _collect(value: Optional[Any]) -> List[Any]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            return [value]

        records = []
        for entry in value:
            if isinstance(entry, dict) and "status" in entry and "data" in entry and "document_name" in entry:
                if entry["status"] == STATUS_EXTRACTED:
                    records.append(entry["data"])
            else:
                records.append(entry)
        return records
