"""
History deduplication: split accepted records into new, updated and unchanged
against what the record store already holds.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.types import ProductRecord, RecordStore
from utils.error_handling import PersistenceError
from utils.helpers import canonical_product_url
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class SeenProduct:
    record_id: Optional[str]
    store: str = ""
    name: str = ""
    has_image: bool = False


@dataclass
class DedupResult:
    new: List[ProductRecord] = field(default_factory=list)
    updated: List[ProductRecord] = field(default_factory=list)
    unchanged: List[ProductRecord] = field(default_factory=list)
    skipped: int = 0

    def summary(self) -> Dict[str, int]:
        return {
            "new": len(self.new),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "skipped": self.skipped,
        }


class Deduplicator:
    """Tracks known products by normalized detail URL."""

    def __init__(self):
        self.seen: Dict[str, SeenProduct] = {}
        self.loaded = False

    def __len__(self) -> int:
        return len(self.seen)

    def load(self, store: RecordStore) -> int:
        """Index the store's records. A store that cannot be read is fatal."""
        try:
            existing = store.list_all()
        except PersistenceError:
            self.loaded = False
            raise
        except Exception as exc:
            self.loaded = False
            raise PersistenceError(f"Cannot load existing products: {exc}") from exc

        for item in existing:
            self._remember(item)
        self.loaded = True
        logger.info(f"Deduplicator loaded {len(self.seen)} existing products")
        return len(self.seen)

    def _remember(self, item: Dict[str, Any]) -> None:
        key = canonical_product_url(item.get("product_url"))
        if key is None:
            return
        self.seen[key] = SeenProduct(
            record_id=item.get("record_id"),
            store=item.get("source") or "",
            name=item.get("name") or "",
            has_image=bool(item.get("image_url")),
        )

    def categorize(self, records: List[ProductRecord]) -> DedupResult:
        if not self.loaded:
            logger.warning("Deduplicator not loaded; treating all products as new")

        result = DedupResult()
        for record in records:
            key = canonical_product_url(record.product_url)
            if key is None:
                logger.debug(f"Skipping product with no valid URL: {record.name}")
                result.skipped += 1
                continue

            existing = self.seen.get(key)
            if existing is None:
                result.new.append(record)
                self.seen[key] = SeenProduct(None, record.source or "", record.name, bool(record.image_url))
            elif self.has_changed(record, existing):
                result.updated.append(record)
                existing.name = record.name or existing.name
                existing.store = record.source or existing.store
                existing.has_image = existing.has_image or bool(record.image_url)
            else:
                result.unchanged.append(record)

        logger.info(
            f"Categorized: {len(result.new)} new, {len(result.updated)} updated, "
            f"{len(result.unchanged)} unchanged"
        )
        return result

    @staticmethod
    def has_changed(record: ProductRecord, existing: SeenProduct) -> bool:
        if record.name and record.name != existing.name:
            return True
        if record.image_url and not existing.has_image:
            return True
        if record.source and record.source != existing.store:
            return True
        return False

    def clear(self) -> None:
        self.seen.clear()
        self.loaded = False
