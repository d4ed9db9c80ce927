"""Read and decrement access to the product catalog."""

import logging
from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.checkout import Product

logger = logging.getLogger(__name__)


class ProductCatalog:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_products_by_ids(self, ids: Iterable[UUID]) -> dict[UUID, Product]:
        """Batch load active products; missing or inactive ids are absent."""
        wanted = set(ids)
        if not wanted:
            return {}
        stmt = select(Product).where(Product.id.in_(wanted), Product.is_active.is_(True))
        return {product.id: product for product in self.db.scalars(stmt)}

    def decrement_stock_if_available(self, product_id: UUID, quantity: int) -> bool:
        """Atomically take ``quantity`` units; False when stock is short."""
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Stock decrement refused for product %s (qty %d)", product_id, quantity
            )
            return False
        return True
