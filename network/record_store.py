"""JSON-file record store keyed by the provenance-stable record id."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from core.types import ProductRecord
from utils.error_handling import PersistenceError
from utils.helpers import canonical_product_url
from utils.serialization import write_json_atomic


logger = logging.getLogger(__name__)


class JsonRecordStore:
    """Flat JSON file of product records; stands in for a hosted table."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.path = Path(config.get("path", "data/records/products.json"))
        self._records: Dict[str, Dict[str, Any]] | None = None

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._records is not None:
            return self._records

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            data = []
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Cannot read record store {self.path}: {exc}") from exc

        if not isinstance(data, list):
            raise PersistenceError(f"Record store {self.path} must contain a list")

        self._records = {
            item["record_id"]: item for item in data if isinstance(item, dict) and item.get("record_id")
        }
        return self._records

    def _flush(self) -> None:
        try:
            write_json_atomic(self.path, list(self._load().values()))
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Cannot write record store {self.path}: {exc}") from exc

    def _find_by_url(self, product_url: str | None) -> str | None:
        key = canonical_product_url(product_url)
        if key is None:
            return None
        for record_id, item in self._load().items():
            if canonical_product_url(item.get("product_url")) == key:
                return record_id
        return None

    # RecordStore protocol -------------------------------------------------------
    def list_all(self) -> List[Dict[str, Any]]:
        return list(self._load().values())

    def create_many(self, records: List[ProductRecord]) -> int:
        store = self._load()
        created = 0
        for record in records:
            if record.record_id in store:
                continue
            store[record.record_id] = record.to_storage()
            created += 1
        if created:
            self._flush()
            logger.info("Created %s records in %s", created, self.path)
        return created

    def update_many(self, records: List[ProductRecord]) -> int:
        """Replace stored rows matched by record id, or by detail URL when the id moved."""
        store = self._load()
        updated = 0
        for record in records:
            existing_id = record.record_id if record.record_id in store else self._find_by_url(record.product_url)
            if existing_id is None:
                continue
            previous = store.pop(existing_id)
            store[record.record_id] = {**previous, **record.to_storage()}
            updated += 1
        if updated:
            self._flush()
            logger.info("Updated %s records in %s", updated, self.path)
        return updated


__all__ = ["JsonRecordStore"]
