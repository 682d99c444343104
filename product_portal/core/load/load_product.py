from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Optional, Union

from product_portal.core.errors import PortalError, StoreLoadError
from product_portal.core.io.load_store import read_aggregate
from product_portal.core.model import PortalAggregate, Portfolio, Product
from product_portal.core.store.document_store import DEFAULT_STORE_KEY, DocumentStore


logger = logging.getLogger(__name__)

NotFoundReason = Literal["unknown_product", "empty_store", "malformed_aggregate"]


@dataclass(frozen=True)
class ProductRef:
    product: Product
    portfolio: Optional[Portfolio]


@dataclass(frozen=True)
class NotFound:
    product_id: str
    reason: NotFoundReason
    errors: list[PortalError] = field(default_factory=list)


LoadResult = Union[ProductRef, NotFound]


class ProductAggregateLoader:
    """Resolves a product and its owning portfolio from the store.

    Every call reads the store; nothing is cached between calls.
    """

    def __init__(self, store: DocumentStore, key: str = DEFAULT_STORE_KEY) -> None:
        self.store = store
        self.key = key

    def load_aggregate(self) -> tuple[Optional[PortalAggregate], list[PortalError]]:
        try:
            text = self.store.get(self.key)
        except StoreLoadError as e:
            logger.warning(f"Unreadable store while loading {self.key}: {e}")
            return None, [e]
        if text is None:
            return None, []
        aggregate, errors = read_aggregate(text, file=self.key)
        if errors:
            logger.warning(
                f"Malformed aggregate under {self.key}: {len(errors)} error(s), first: {errors[0]}"
            )
        return aggregate, errors

    def load(self, product_id: str) -> LoadResult:
        aggregate, errors = self.load_aggregate()
        if aggregate is None:
            if errors:
                return NotFound(product_id=product_id, reason="malformed_aggregate", errors=errors)
            logger.info(f"No aggregate stored under {self.key}")
            return NotFound(product_id=product_id, reason="empty_store")

        product = aggregate.products_by_id.get(product_id)
        if product is None:
            logger.info(f"Product not found: {product_id}")
            return NotFound(product_id=product_id, reason="unknown_product")

        portfolio = aggregate.portfolios_by_id.get(product.portfolio_id)
        if portfolio is None:
            logger.warning(f"Product {product_id} references unknown portfolio {product.portfolio_id}")
        return ProductRef(product=product, portfolio=portfolio)
