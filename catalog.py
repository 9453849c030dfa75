import logging
import re
from typing import Optional, List, Dict, Any, Iterable, Protocol

from pydantic import BaseModel

from schemas import CartItem

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def is_uuid(value: str) -> bool:
    return bool(UUID_PATTERN.match(value))


class ProductCatalog(Protocol):
    def find_by_ids(self, ids: Iterable[str]) -> List[dict]: ...

    def find_by_slug_or_id(self, key: str) -> Optional[dict]: ...


class ProductResolutionError(Exception):
    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(
            f"Product not found: {product_name}. Please remove it from your cart and try again."
        )


class ResolvedProduct(BaseModel):
    id: str
    metadata: Optional[Dict[str, Any]] = None

    @property
    def preorder_shipping(self):
        return (self.metadata or {}).get("preorder_shipping")


class CatalogResolver:
    """Maps cart product ids (UUID or slug) to canonical product ids.

    UUIDs are batch-fetched in one query for their metadata; anything else is
    looked up one by one by slug or id. The first unknown product aborts
    resolution.
    """

    def __init__(self, catalog: ProductCatalog):
        self.catalog = catalog

    def resolve(self, items: List[CartItem]) -> Dict[str, ResolvedProduct]:
        uuid_ids = list(dict.fromkeys(it.product_id for it in items if is_uuid(it.product_id)))
        metadata: Dict[str, Optional[dict]] = {}
        if uuid_ids:
            for doc in self.catalog.find_by_ids(uuid_ids):
                metadata[doc["id"]] = doc.get("metadata")

        resolved: Dict[str, ResolvedProduct] = {}
        for it in items:
            if it.product_id in resolved:
                continue
            if is_uuid(it.product_id):
                resolved[it.product_id] = ResolvedProduct(id=it.product_id, metadata=metadata.get(it.product_id))
                continue
            doc = self.catalog.find_by_slug_or_id(it.product_id)
            if not doc or not is_uuid(doc["id"]):
                logger.warning("Cart product %r (%s) did not resolve", it.product_id, it.name)
                raise ProductResolutionError(it.name)
            resolved[it.product_id] = ResolvedProduct(id=doc["id"], metadata=doc.get("metadata"))
        return resolved
