import pytest

from marketplace.errors import ConcurrencyConflict
from marketplace.models import Product, ProductStatus
from marketplace.observability import get_counter_value, get_recent_events


def test_reserve_decrements_stock_and_counts_sale(uow, inventory, make_vendor, make_product):
    product_id = make_product(make_vendor(), stock=5)

    with uow.atomic():
        inventory.reserve(uow, product_id, 3)

    product = uow.session.get(Product, product_id)
    assert product.stock == 2
    assert product.sales_count == 1
    events = get_recent_events("inventory_updated")
    assert events[-1]["payload"] == {"product_id": product_id, "delta": -3, "reason": "sale"}


def test_reserve_refuses_to_go_negative(uow, inventory, make_vendor, make_product):
    product_id = make_product(make_vendor(), stock=2)

    with pytest.raises(ConcurrencyConflict):
        inventory.reserve(uow, product_id, 3)

    assert uow.session.get(Product, product_id).stock == 2
    assert get_counter_value("stock_conflicts_total") == 1
    assert get_recent_events("inventory_updated") == []


def test_reserve_rejects_inactive_listing(uow, inventory, make_vendor, make_product):
    product_id = make_product(make_vendor(), stock=10, status=ProductStatus.INACTIVE)

    with pytest.raises(ConcurrencyConflict):
        inventory.reserve(uow, product_id, 1)


def test_restore_returns_stock_and_clamps_sales_count(uow, inventory, make_vendor, make_product):
    product_id = make_product(make_vendor(), stock=4)

    assert inventory.restore(uow, product_id, 2) is True

    product = uow.session.get(Product, product_id)
    assert product.stock == 6
    assert product.sales_count == 0


def test_restore_missing_product_is_a_no_op(uow, inventory):
    assert inventory.restore(uow, 9999, 1) is False


def test_events_are_only_published_after_commit(uow, inventory, make_vendor, make_product):
    product_id = make_product(make_vendor(), stock=5)

    with pytest.raises(RuntimeError):
        with uow.atomic():
            inventory.reserve(uow, product_id, 1)
            raise RuntimeError("abort checkout")

    assert uow.session.get(Product, product_id).stock == 5
    assert get_recent_events("inventory_updated") == []
