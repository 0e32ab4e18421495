from datetime import datetime, timedelta

import pytest

from customforge import pricing, store


@pytest.fixture
def catalogue(app):
    return store.products, store.coupons


def test_final_price_rounds_to_cents():
    assert pricing.final_price(999.99, 10) == 899.99
    assert pricing.final_price(129.99, 15) == 110.49
    assert pricing.final_price(50, 0) == 50.0


def test_availability_for_keeps_preorder_only_when_empty():
    assert pricing.availability_for(3) == 'In Stock'
    assert pricing.availability_for(0) == 'Out of Stock'
    assert pricing.availability_for(0, 'Preorder') == 'Preorder'
    assert pricing.availability_for(5, 'Preorder') == 'In Stock'


def test_coupon_validity_reasons():
    now = datetime(2026, 1, 15)
    base = {'isActive': True, 'timesUsed': 0, 'usageLimit': None}
    assert pricing.coupon_validity(base, now) == (True, None)
    assert pricing.coupon_validity({**base, 'isActive': False}, now) == (False, 'Coupon is inactive')
    assert pricing.coupon_validity({**base, 'validFrom': '2026-02-01T00:00:00'}, now)[1] == 'Coupon not yet valid'
    assert pricing.coupon_validity({**base, 'validTo': '2026-01-01T00:00:00'}, now)[1] == 'Coupon expired'
    assert pricing.coupon_validity({**base, 'usageLimit': 3, 'timesUsed': 3}, now)[1] == 'Coupon usage limit reached'


def test_percent_discount_is_capped():
    coupon = {'discountType': 'percent', 'discountValue': 15, 'maxDiscount': 100}
    assert pricing.compute_coupon_discount(coupon, 200) == 30.0
    assert pricing.compute_coupon_discount(coupon, 1000) == 100


def test_fixed_discount_never_exceeds_subtotal():
    coupon = {'discountType': 'fixed', 'discountValue': 50}
    assert pricing.compute_coupon_discount(coupon, 30) == 30.0
    assert pricing.compute_coupon_discount(coupon, 0) == 0.0


def test_percent_over_hundred_gives_nothing():
    assert pricing.compute_coupon_discount({'discountType': 'percent', 'discountValue': 150}, 100) == 0.0


def test_cart_totals_with_coupon(catalogue):
    products, coupons = catalogue
    cart = {'items': [{'productId': 'ram-ddr5-32', 'quantity': 2}], 'couponCode': 'save10'}
    totals = pricing.cart_totals(cart, products, coupons)

    assert totals['subtotal'] == 220.98
    assert totals['discount'] == 22.1
    assert totals['total'] == 198.88
    assert totals['coupon']['code'] == 'SAVE10'
    assert totals['couponError'] is None
    assert totals['items'][0]['lineTotal'] == 220.98


def test_cart_totals_reports_coupon_problems(catalogue):
    products, coupons = catalogue
    items = [{'productId': 'ssd-990-pro-2tb', 'quantity': 1}]

    assert pricing.cart_totals({'items': items, 'couponCode': 'NOPE'}, products, coupons)['couponError'] == \
        'Invalid coupon code'
    assert pricing.cart_totals({'items': items, 'couponCode': 'EXPIRED'}, products, coupons)['couponError'] == \
        'Coupon expired'
    assert pricing.cart_totals({'items': items, 'couponCode': 'FLAT50'}, products, coupons)['couponError'] == \
        'Minimum order amount for this coupon is 300.00'
    assert 'not applicable' in pricing.cart_totals({'items': items, 'couponCode': 'GPU15'},
                                                   products, coupons)['couponError']


def test_cart_totals_skips_missing_products(catalogue):
    products, coupons = catalogue
    cart = {'items': [{'productId': 'ghost', 'quantity': 1}, {'productId': 'gpu-gtx-1080', 'quantity': 1}]}
    totals = pricing.cart_totals(cart, products, coupons)
    assert totals['items'] == []
    assert totals['total'] == 0.0
    assert len(totals['warnings']) == 2


def test_cart_totals_warns_on_short_stock(catalogue):
    products, coupons = catalogue
    totals = pricing.cart_totals({'items': [{'productId': 'psu-rm850x', 'quantity': 5}]}, products, coupons)
    assert totals['warnings'][0]['type'] == 'stock'


def test_filter_and_sort_products(catalogue):
    products, _ = catalogue
    gpus = pricing.filter_products(products.values(), {'category': 'gpu'})
    assert sorted(p['id'] for p in gpus) == ['gpu-rtx-4080', 'gpu-rx-7800']

    cheap = pricing.sort_products(pricing.filter_products(products.values(), {'maxPrice': '150'}), 'price_asc')
    prices = [pricing.price_of(p) for p in cheap]
    assert prices == sorted(prices)
    assert all(price <= 150 for price in prices)

    assert [p['id'] for p in pricing.filter_products(products.values(), {'q': 'noctua'})] == ['cool-nh-d15']


def test_paginate_clamps_values():
    page = pricing.paginate(list(range(45)), page=3, limit=20)
    assert page['items'] == list(range(40, 45))
    assert page['pages'] == 3
    assert pricing.page_params({'page': '-4', 'limit': '1000'}) == (1, 100)
    assert pricing.page_params({'page': 'x'}) == (1, 20)
    assert pricing.paginate([], 1, 10)['pages'] == 0


def test_luhn_and_card_brand():
    assert pricing.luhn_valid('4242 4242 4242 4242')
    assert not pricing.luhn_valid('4242 4242 4242 4241')
    assert pricing.card_brand('5555555555554444') == 'mastercard'
    assert pricing.card_brand('378282246310005') == 'amex'
    assert pricing.mask_card('4242424242424242') == '************4242'


def test_find_active_coupon_respects_dates(catalogue):
    _, coupons = catalogue
    assert pricing.find_active_coupon(coupons, ' save10 ')['code'] == 'SAVE10'
    assert pricing.find_active_coupon(coupons, 'PAUSED') is None
    assert pricing.find_active_coupon(coupons, 'SAVE10', datetime.now() + timedelta(days=400)) is None
