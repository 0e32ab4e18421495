import pytest

from customforge import config, store
from tests.conftest import bearer, login

ADMIN = '/api/v1/admin'


def test_admin_routes_need_an_admin(client, demo_headers):
    assert client.get(f'{ADMIN}/analytics/overview').status_code == 401
    assert client.get(f'{ADMIN}/analytics/overview', headers=demo_headers).status_code == 403


def test_admin_cookie_alone_is_not_enough(client):
    client.set_cookie('cf_user', '%7B%22id%22%3A%22usr_admin%22%7D')
    assert client.get(f'{ADMIN}/analytics/overview').status_code == 401


def test_overview(client, admin_headers):
    data = client.get(f'{ADMIN}/analytics/overview', headers=admin_headers).get_json()['data']
    assert data['users']['total'] == 4
    assert data['orders']['total'] == 7
    # paid, shipped and delivered count; cancelled, refunded and pending do not
    assert data['orders']['paid'] == 4
    assert data['products']['lowStock'] == 4
    assert data['reviews']['pending'] == 1


@pytest.mark.parametrize('period, key_length', [('daily', 10), ('monthly', 7)])
def test_sales_buckets(client, admin_headers, period, key_length):
    data = client.get(f'{ADMIN}/analytics/sales?period={period}&days=60',
                      headers=admin_headers).get_json()['data']
    assert data['period'] == period
    assert data['totalOrders'] == 4
    assert all(len(row['date']) == key_length for row in data['revenueData'])
    assert sum(row['orders'] for row in data['revenueData']) == 4
    assert data['topProducts'][0]['productId'] == 'gpu-rtx-4080'


def test_sales_customer_split(client, admin_headers):
    data = client.get(f'{ADMIN}/analytics/sales?days=30', headers=admin_headers).get_json()['data']
    # jordan first ordered 40 days ago, demo 21 days ago
    assert data['customerStats'] == {'totalCustomers': 2, 'newCustomers': 1, 'returningCustomers': 1}


def test_sales_unknown_period_falls_back_to_daily(client, admin_headers):
    data = client.get(f'{ADMIN}/analytics/sales?period=hourly', headers=admin_headers).get_json()['data']
    assert data['period'] == 'daily'


def test_inventory(client, admin_headers):
    data = client.get(f'{ADMIN}/analytics/inventory', headers=admin_headers).get_json()['data']
    assert data['lowStockThreshold'] == config.LOW_STOCK_THRESHOLD
    assert data['stockLevels']['outOfStock'] == 2
    assert {p['id'] for p in data['lowStockProducts']} == {'gpu-rx-7800', 'psu-rm850x', 'gpu-gtx-1080'}
    gpu = next(c for c in data['categoryStock'] if c['category'] == 'GPU')
    assert gpu['productCount'] == 3


def test_users_orders_products_analytics(client, admin_headers):
    users = client.get(f'{ADMIN}/analytics/users', headers=admin_headers).get_json()['data']
    assert users['adminUsers'] == 1
    assert users['activeUsers'] == 3

    orders = client.get(f'{ADMIN}/analytics/orders?days=90', headers=admin_headers).get_json()['data']
    assert orders['statusCounts']['delivered'] == 2
    assert orders['recentOrders'][0]['id'] == 'ord_seed_006'

    products = client.get(f'{ADMIN}/analytics/products', headers=admin_headers).get_json()['data']
    assert products['activeProducts'] == 11


def test_list_users_filters(client, admin_headers):
    data = client.get(f'{ADMIN}/users?role=admin', headers=admin_headers).get_json()['data']
    assert [u['id'] for u in data['items']] == ['usr_admin']

    data = client.get(f'{ADMIN}/users?isActive=false', headers=admin_headers).get_json()['data']
    assert [u['id'] for u in data['items']] == ['usr_sam']

    data = client.get(f'{ADMIN}/users?search=jordan', headers=admin_headers).get_json()['data']
    assert data['total'] == 1
    assert 'password' not in data['items'][0]


def test_user_crud(client, admin_headers):
    resp = client.post(f'{ADMIN}/users', json={'email': 'staff@customforge.dev', 'password': 'staffpass1',
                                               'role': 'admin'}, headers=admin_headers)
    assert resp.status_code == 201
    uid = resp.get_json()['data']['user']['id']

    resp = client.patch(f'{ADMIN}/users/{uid}', json={'name': 'Staff'}, headers=admin_headers)
    assert resp.get_json()['data']['user']['name'] == 'Staff'

    assert client.delete(f'{ADMIN}/users/{uid}', headers=admin_headers).status_code == 200
    assert store.users[uid]['active'] is False

    assert client.delete(f'{ADMIN}/users/usr_admin', headers=admin_headers).status_code == 400
    assert client.get(f'{ADMIN}/users/nope', headers=admin_headers).status_code == 404


def test_create_user_rejects_duplicates(client, admin_headers):
    resp = client.post(f'{ADMIN}/users', json={'email': 'jordan@example.com', 'password': 'longenough'},
                       headers=admin_headers)
    assert resp.status_code == 409


def test_product_crud(client, admin_headers):
    resp = client.post(f'{ADMIN}/products', json={
        'id': 'fan-p12', 'name': 'P12 PWM', 'brand': 'Arctic', 'category': 'Cooling',
        'originalPrice': 10, 'discountPercentage': 20, 'stock': 0
    }, headers=admin_headers)
    product = resp.get_json()['data']['product']
    assert resp.status_code == 201
    assert product['finalPrice'] == 8.0
    assert product['availability'] == 'Out of Stock'

    resp = client.patch(f'{ADMIN}/products/fan-p12', json={'originalPrice': 20}, headers=admin_headers)
    assert resp.get_json()['data']['product']['finalPrice'] == 16.0

    resp = client.patch(f'{ADMIN}/products/fan-p12/stock', json={'stock': 30}, headers=admin_headers)
    assert resp.get_json()['data']['product']['availability'] == 'In Stock'

    assert client.patch(f'{ADMIN}/products/fan-p12', json={'discountPercentage': 120},
                        headers=admin_headers).status_code == 400
    assert client.delete(f'{ADMIN}/products/fan-p12', headers=admin_headers).status_code == 200
    assert 'fan-p12' not in store.products


def test_toggle_product_flags(client, admin_headers):
    client.patch(f'{ADMIN}/products/gpu-rx-7800/toggle-active', headers=admin_headers)
    assert client.get('/api/v1/products/gpu-rx-7800').status_code == 404

    resp = client.patch(f'{ADMIN}/products/gpu-rx-7800/feature', headers=admin_headers)
    assert resp.get_json()['data']['product']['isFeatured'] is True


def test_stock_adjustment_cannot_go_negative(client, admin_headers):
    resp = client.patch(f'{ADMIN}/products/psu-rm850x/stock', json={'adjustment': -5}, headers=admin_headers)
    assert resp.status_code == 400


def test_order_status_transitions(client, admin_headers):
    resp = client.patch(f'{ADMIN}/orders/ord_seed_006/update-status', json={'status': 'delivered'},
                        headers=admin_headers)
    assert resp.status_code == 400

    resp = client.patch(f'{ADMIN}/orders/ord_seed_006/mark-paid', headers=admin_headers)
    order = resp.get_json()['data']['order']
    assert order['isPaid'] is True
    assert order['statusHistory'][-1]['to'] == 'paid'

    client.patch(f'{ADMIN}/orders/ord_seed_006/update-status', json={'status': 'shipped'}, headers=admin_headers)
    resp = client.patch(f'{ADMIN}/orders/ord_seed_006/mark-delivered', headers=admin_headers)
    assert resp.get_json()['data']['order']['deliveredAt']


def test_refund_restores_stock(client, admin_headers):
    before = store.products['psu-rm850x']['stock']
    resp = client.post(f'{ADMIN}/orders/ord_seed_004/refund', headers=admin_headers)
    assert resp.get_json()['data']['order']['status'] == 'refunded'
    assert store.products['psu-rm850x']['stock'] == before + 1

    assert client.patch(f'{ADMIN}/orders/ord_seed_006/refund', headers=admin_headers).status_code == 400


def test_return_flow(client, admin_headers):
    assert client.patch(f'{ADMIN}/orders/ord_seed_002/approve-return', headers=admin_headers).status_code == 400

    # customer asks first
    store.orders['ord_seed_002']['status'] = 'returned'
    store.orders['ord_seed_002']['returnStatus'] = 'requested'
    assert client.put(f'{ADMIN}/orders/ord_seed_002/process-return', headers=admin_headers).status_code == 400

    client.patch(f'{ADMIN}/orders/ord_seed_002/approve-return', headers=admin_headers)
    before = store.products['gpu-rtx-4080']['stock']
    resp = client.put(f'{ADMIN}/orders/ord_seed_002/process-return', headers=admin_headers)
    order = resp.get_json()['data']['order']
    assert order['status'] == 'refunded'
    assert order['returnStatus'] == 'completed'
    assert store.products['gpu-rtx-4080']['stock'] == before + 1


def test_list_orders_by_status(client, admin_headers):
    data = client.get(f'{ADMIN}/orders?status=delivered', headers=admin_headers).get_json()['data']
    assert {o['id'] for o in data['items']} == {'ord_seed_001', 'ord_seed_002'}
    assert client.get(f'{ADMIN}/orders?status=lost', headers=admin_headers).status_code == 400


def test_coupon_crud(client, admin_headers):
    resp = client.post(f'{ADMIN}/coupons', json={'code': 'spring20', 'discountType': 'percent',
                                                 'discountValue': 20}, headers=admin_headers)
    assert resp.status_code == 201
    assert resp.get_json()['data']['coupon']['code'] == 'SPRING20'

    assert client.post(f'{ADMIN}/coupons', json={'code': 'SPRING20', 'discountType': 'percent',
                                                 'discountValue': 5}, headers=admin_headers).status_code == 409

    resp = client.patch(f'{ADMIN}/coupons/SPRING20', json={'code': 'SPRING25', 'discountValue': 25},
                        headers=admin_headers)
    assert resp.get_json()['data']['coupon']['discountValue'] == 25
    assert 'SPRING25' in store.coupons and 'SPRING20' not in store.coupons

    resp = client.patch(f'{ADMIN}/coupons/SPRING25/toggle', headers=admin_headers)
    assert resp.get_json()['data']['coupon']['isActive'] is False

    assert client.delete(f'{ADMIN}/coupons/SPRING25', headers=admin_headers).status_code == 200
    assert client.get(f'{ADMIN}/coupons/SPRING25', headers=admin_headers).status_code == 404


@pytest.mark.parametrize('payload', [
    {'code': 'AB', 'discountType': 'percent', 'discountValue': 10},
    {'code': 'ABC', 'discountType': 'bogo', 'discountValue': 10},
    {'code': 'ABC', 'discountType': 'percent', 'discountValue': 150},
    {'code': 'ABC', 'discountType': 'fixed', 'discountValue': 0},
    {'code': 'ABC', 'discountType': 'fixed', 'discountValue': 5, 'maxDiscount': 'twenty'},
    {'code': 'ABC', 'discountType': 'fixed', 'discountValue': 5, 'usageLimit': 1.5},
    {'code': 'ABC', 'discountType': 'fixed', 'discountValue': 5, 'minPurchase': -5},
])
def test_coupon_validation(client, admin_headers, payload):
    assert client.post(f'{ADMIN}/coupons', json=payload, headers=admin_headers).status_code == 400


def test_coupon_numbers_are_stored_as_numbers(client, admin_headers):
    resp = client.post(f'{ADMIN}/coupons', json={'code': 'CAP20', 'discountType': 'percent', 'discountValue': '10',
                                                 'maxDiscount': '20', 'usageLimit': '5'}, headers=admin_headers)
    coupon = resp.get_json()['data']['coupon']
    assert resp.status_code == 201
    assert coupon['maxDiscount'] == 20.0
    assert coupon['usageLimit'] == 5
    assert coupon['minPurchase'] == 0

    client.post('/api/v1/cart/items', json={'productId': 'gpu-rtx-4080'})
    resp = client.post('/api/v1/cart/coupon', json={'code': 'CAP20'})
    assert resp.status_code == 200
    assert resp.get_json()['data']['cart']['discount'] == 20.0

    assert client.patch(f'{ADMIN}/coupons/CAP20', json={'usageLimit': 'lots'},
                        headers=admin_headers).status_code == 400
    resp = client.patch(f'{ADMIN}/coupons/CAP20', json={'maxDiscount': None, 'minPurchase': '100'},
                        headers=admin_headers)
    assert resp.get_json()['data']['coupon']['maxDiscount'] is None
    assert store.coupons['CAP20']['minPurchase'] == 100.0


def test_coupon_list_flags_validity(client, admin_headers):
    items = client.get(f'{ADMIN}/coupons', headers=admin_headers).get_json()['data']['items']
    expired = next(c for c in items if c['code'] == 'EXPIRED')
    assert expired['isValid'] is False
    assert expired['invalidReason'] == 'Coupon expired'
    assert client.get(f'{ADMIN}/coupons/cpn_save10', headers=admin_headers).get_json()['data']['coupon']['code'] == \
        'SAVE10'


def test_moderate_review_recalculates_rating(client, admin_headers):
    data = client.get(f'{ADMIN}/reviews?status=pending', headers=admin_headers).get_json()['data']
    assert [r['id'] for r in data['items']] == ['rev_seed_3']

    resp = client.patch(f'{ADMIN}/reviews/rev_seed_3/moderate', json={'action': 'approve'}, headers=admin_headers)
    assert resp.get_json()['data']['review']['status'] == 'approved'
    assert store.products['ram-ddr5-32']['ratings'] == {'average': 2.0, 'totalReviews': 1}

    assert client.patch(f'{ADMIN}/reviews/rev_seed_3/moderate', json={'action': 'ban'},
                        headers=admin_headers).status_code == 400


def test_delete_review(client, admin_headers):
    assert client.delete(f'{ADMIN}/reviews/rev_seed_1', headers=admin_headers).status_code == 200
    assert store.products['gpu-rtx-4080']['ratings'] == {'average': 4.0, 'totalReviews': 1}
    assert client.delete(f'{ADMIN}/products/cpu-i7-14700k/reviews/rev_seed_2',
                         headers=admin_headers).status_code == 404


def test_product_reviews_include_pending(client, admin_headers):
    items = client.get(f'{ADMIN}/products/ram-ddr5-32/reviews', headers=admin_headers).get_json()['data']['items']
    assert [r['status'] for r in items] == ['pending']


def test_logs(client, admin_headers):
    login(client, password='wrong-password')
    client.get('/api/v1/products/nope')

    data = client.get(f'{ADMIN}/logs?level=warning', headers=admin_headers).get_json()['data']
    assert any(e['action'] == 'login_failed' for e in data['items'])

    access = client.get(f'{ADMIN}/logs/access', headers=admin_headers).get_json()['data']
    assert all(e['type'] == 'access' for e in access['items'])

    stats = client.get(f'{ADMIN}/logs/stats', headers=admin_headers).get_json()['data']
    assert stats['byType']['access'] >= 2

    dates = client.get(f'{ADMIN}/logs/dates/available', headers=admin_headers).get_json()['data']['dates']
    assert len(dates) == 1

    first_id = store.audit_log[0]['id']
    assert client.get(f'{ADMIN}/logs/{first_id}', headers=admin_headers).get_json()['data']['log']['id'] == first_id
    assert client.get(f'{ADMIN}/logs/999999', headers=admin_headers).status_code == 404


def test_audit_log_keeps_only_the_newest_entries(client, monkeypatch):
    monkeypatch.setattr(config, 'AUDIT_LOG_LIMIT', 3)
    for _ in range(5):
        client.get('/api/v1/health')
    ids = [e['id'] for e in store.audit_log]
    assert len(ids) == 3
    assert ids == sorted(set(ids))
    assert ids[-1] >= 5


def test_error_logs_capture_unhandled_exceptions(client, admin_headers, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError('catalogue exploded')

    monkeypatch.setattr('customforge.pricing.filter_products', boom)
    resp = client.get('/api/v1/products')
    assert resp.status_code == 500
    assert resp.get_json()['error'] == 'Internal server error'

    errors = client.get(f'{ADMIN}/logs/errors', headers=admin_headers).get_json()['data']['items']
    crash = next(e for e in errors if e['action'] == 'unhandled_error')
    assert crash['type'] == 'error'
    assert crash['data']['type'] == 'RuntimeError'


def test_new_admin_token_works(client, app):
    store.users['usr_jordan']['role'] = 'admin'
    assert client.get(f'{ADMIN}/logs/stats', headers=bearer(store.users['usr_jordan'], app)).status_code == 200
