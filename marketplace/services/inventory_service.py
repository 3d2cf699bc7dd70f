from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from marketplace.database import UnitOfWork
from marketplace.errors import ConcurrencyConflict
from marketplace.models import Product, ProductStatus
from marketplace.observability import increment_counter, record_event


def _expire_cached(session: Session, product_id: int) -> None:
    # Bulk UPDATEs bypass the identity map
    cached = session.identity_map.get(Session.identity_key(Product, product_id))
    if cached is not None:
        session.expire(cached)


class InventoryLedger:
    """
    Sole writer of ``Product.stock`` and ``Product.sales_count``.

    Every change is a single conditional UPDATE issued inside the caller's
    transaction, so two checkouts racing for the last unit cannot both win:
    the loser sees zero affected rows and the caller's transaction aborts.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)

    def available(self, uow: UnitOfWork, product_id: int) -> Optional[int]:
        return uow.session.execute(
            select(Product.stock).where(Product.productID == product_id)
        ).scalar_one_or_none()

    def reserve(self, uow: UnitOfWork, product_id: int, quantity: int) -> None:
        """Decrement stock and bump the lifetime sale counter, or raise ``ConcurrencyConflict``."""
        with uow.atomic() as session:
            result = session.execute(
                update(Product)
                .where(
                    Product.productID == product_id,
                    Product.stock >= quantity,
                    Product.status == ProductStatus.ACTIVE,
                )
                .values(
                    stock=Product.stock - quantity,
                    sales_count=Product.sales_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            _expire_cached(session, product_id)
            if result.rowcount != 1:
                increment_counter("stock_conflicts_total")
                self.logger.warning(
                    "Conditional stock decrement lost for product %s",
                    product_id,
                    extra={"product_id": product_id, "quantity": quantity},
                )
                raise ConcurrencyConflict(
                    "Stock changed while the order was being placed",
                    {"product_id": product_id, "requested": quantity},
                )
        uow.on_commit(lambda: self._publish(product_id, -quantity, reason="sale"))

    def restore(self, uow: UnitOfWork, product_id: int, quantity: int) -> bool:
        """Give ``quantity`` units back; the sale counter is decremented but never below zero."""
        with uow.atomic() as session:
            result = session.execute(
                update(Product)
                .where(Product.productID == product_id)
                .values(
                    stock=Product.stock + quantity,
                    sales_count=case(
                        (Product.sales_count > 0, Product.sales_count - 1),
                        else_=0,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            _expire_cached(session, product_id)
        if result.rowcount == 0:
            # Product was deleted after purchase; nothing to restore
            self.logger.info("Skipped stock restore for missing product %s", product_id)
            return False
        uow.on_commit(lambda: self._publish(product_id, quantity, reason="cancellation"))
        return True

    def _publish(self, product_id: int, delta: int, reason: str) -> None:
        record_event(
            "inventory_updated",
            {"product_id": product_id, "delta": delta, "reason": reason},
        )
        self.logger.info(
            "Stock for product %d changed by %+d (%s)",
            product_id,
            delta,
            reason,
        )
