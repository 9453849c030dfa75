import pytest

from cart import CartStore, MemoryCartStorage, CartError, InvalidCoupon, compute_totals
from conftest import make_item, SILK_WIG_ID


def test_scenario_totals_without_coupon(storage):
    cart = CartStore(storage)
    cart.add(make_item(product_id="p1", unit_price=100, quantity=2, max_stock=5))
    totals = cart.totals()
    assert totals.subtotal == 200
    assert totals.shipping == 50
    assert totals.total == 250
    assert totals.count == 2


def test_coupon_applies_and_removes(storage):
    cart = CartStore(storage)
    cart.add(make_item(product_id="p1", unit_price=100, quantity=2, max_stock=5))
    cart.apply_coupon("WELCOME20")
    assert cart.totals().total == 230
    cart.remove_coupon()
    assert cart.totals().total == 250


def test_invalid_coupon_keeps_previous(storage):
    cart = CartStore(storage)
    cart.add(make_item())
    cart.apply_coupon("WELCOME20")
    with pytest.raises(InvalidCoupon, match="Invalid coupon code"):
        cart.apply_coupon("FREESTUFF")
    assert cart.coupon.code == "WELCOME20"


@pytest.mark.parametrize("subtotal,shipping", [(0, 50), (250, 50), (500, 50), (500.5, 0), (1200, 0)])
def test_free_shipping_strictly_above_threshold(subtotal, shipping):
    items = [make_item(unit_price=subtotal, quantity=1)] if subtotal else []
    totals = compute_totals(items)
    assert totals.shipping == shipping
    assert totals.total == subtotal + shipping


def test_adding_same_line_twice_merges(storage):
    cart = CartStore(storage)
    cart.add(make_item(quantity=2))
    cart.add(make_item(quantity=3))
    lines = cart.get()
    assert len(lines) == 1
    assert lines[0].quantity == 5


def test_variants_are_separate_lines(storage):
    cart = CartStore(storage)
    cart.add(make_item(variant="Black / 18in"))
    cart.add(make_item(variant="Brown / 22in"))
    cart.add(make_item())
    assert len(cart.get()) == 3


def test_add_never_exceeds_stock(storage):
    cart = CartStore(storage)
    cart.add(make_item(quantity=4, max_stock=5))
    cart.add(make_item(quantity=4, max_stock=5))
    assert cart.get()[0].quantity == 5


def test_add_raises_new_line_to_moq(storage):
    cart = CartStore(storage)
    cart.add(make_item(quantity=1, min_order_qty=3, max_stock=10))
    assert cart.get()[0].quantity == 3


def test_add_out_of_stock_is_refused(storage):
    cart = CartStore(storage)
    with pytest.raises(CartError):
        cart.add(make_item(quantity=1, max_stock=0))
    assert cart.is_empty()


def test_add_refused_when_stock_below_moq(storage):
    cart = CartStore(storage)
    with pytest.raises(CartError, match="out of stock"):
        cart.add(make_item(quantity=1, min_order_qty=3, max_stock=2))
    assert cart.is_empty()


def test_add_signals_mini_cart(storage):
    assert CartStore(storage).add(make_item()) is True


@pytest.mark.parametrize("requested,expected", [(-3, 0), (0, 0), (3, 3), (5, 5), (99, 5)])
def test_set_quantity_clamps(storage, requested, expected):
    cart = CartStore(storage)
    cart.add(make_item(quantity=1, max_stock=5))
    cart.set_quantity(make_item().product_id, requested)
    assert cart.get()[0].quantity == expected


def test_set_quantity_unknown_line_is_noop(storage):
    cart = CartStore(storage)
    cart.add(make_item())
    cart.set_quantity("missing", 3)
    assert cart.get()[0].quantity == 2


def test_remove_matches_variant(storage):
    cart = CartStore(storage)
    cart.add(make_item(variant="Black"))
    cart.add(make_item())
    cart.remove(make_item().product_id, "Black")
    lines = cart.get()
    assert len(lines) == 1
    assert lines[0].variant is None
    cart.remove("missing")
    assert len(cart.get()) == 1


def test_decrement_at_moq_removes_line(storage):
    cart = CartStore(storage)
    cart.add(make_item(quantity=3, min_order_qty=2, max_stock=10))
    pid = make_item().product_id
    cart.decrement(pid)
    assert cart.get()[0].quantity == 2
    cart.decrement(pid)
    assert cart.is_empty()


def test_increment_stops_at_stock(storage):
    cart = CartStore(storage)
    cart.add(make_item(quantity=4, max_stock=5))
    pid = make_item().product_id
    cart.increment(pid)
    cart.increment(pid)
    assert cart.get()[0].quantity == 5


def test_every_mutation_is_persisted(storage):
    cart = CartStore(storage, "cart-1")
    cart.add(make_item())
    cart.add(make_item(product_id=SILK_WIG_ID, slug="silk-wig", unit_price=450, quantity=1))
    cart.apply_coupon("WELCOME20")

    restored = CartStore(storage, "cart-1")
    assert [it.product_id for it in restored.get()] == [it.product_id for it in cart.get()]
    assert restored.coupon.code == "WELCOME20"
    assert restored.totals() == cart.totals()


def test_clear_empties_cart(storage):
    cart = CartStore(storage, "cart-1")
    cart.add(make_item())
    cart.apply_coupon("WELCOME20")
    cart.clear()
    assert CartStore(storage, "cart-1").is_empty()
    assert cart.coupon is None


def test_corrupt_state_falls_back_to_empty():
    storage = MemoryCartStorage()
    storage.save("cart", "{not json")
    cart = CartStore(storage)
    assert cart.is_empty()
    cart.add(make_item())
    assert len(CartStore(storage).get()) == 1


def test_two_stores_on_one_key_last_write_wins(storage):
    # two tabs sharing storage: neither sees the other's pending state
    tab_a = CartStore(storage, "shared")
    tab_b = CartStore(storage, "shared")
    tab_a.add(make_item())
    tab_b.add(make_item(product_id=SILK_WIG_ID, slug="silk-wig"))
    lines = CartStore(storage, "shared").get()
    assert [it.product_id for it in lines] == [SILK_WIG_ID]
