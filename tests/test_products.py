from customforge import store
from tests.conftest import read_cookie

API = '/api/v1'


def test_health(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.get_json()['data']['status'] == 'ok'


def test_list_products_hides_inactive_and_reports_facets(client):
    resp = client.get(f'{API}/products')
    data = resp.get_json()['data']

    assert resp.status_code == 200
    assert data['total'] == 11
    assert 'gpu-gtx-1080' not in [p['id'] for p in data['items']]
    assert 'GPU' in data['categories']
    assert 'Corsair' in data['brands']


def test_list_products_filters_sorts_and_pages(client):
    data = client.get(f'{API}/products?category=CPU&sort=price_desc').get_json()['data']
    assert [p['id'] for p in data['items']] == ['cpu-ryzen-7800x3d', 'cpu-i7-14700k']

    page = client.get(f'{API}/products?limit=5&page=3').get_json()['data']
    assert page['pages'] == 3
    assert len(page['items']) == 1


def test_featured_top_and_categories(client):
    featured = client.get(f'{API}/products/featured').get_json()['data']['items']
    assert sorted(p['id'] for p in featured) == ['cpu-ryzen-7800x3d', 'gpu-rtx-4080', 'ram-ddr5-32']

    top = client.get(f'{API}/products/top').get_json()['data']['items']
    assert len(top) == 8
    assert top[0]['id'] == 'ram-ddr5-32'

    categories = client.get(f'{API}/products/categories').get_json()['data']['items']
    assert categories == sorted(categories)


def test_search_and_category_routes(client):
    assert client.get(f'{API}/products/search').get_json()['data']['items'] == []
    found = client.get(f'{API}/products/search?q=ryzen').get_json()['data']['items']
    assert [p['id'] for p in found] == ['cpu-ryzen-7800x3d']

    cooling = client.get(f'{API}/products/category/cooling').get_json()['data']['items']
    assert len(cooling) == 2


def test_get_product_and_404(client):
    item = client.get(f'{API}/products/gpu-rtx-4080').get_json()['data']['item']
    assert item['finalPrice'] == 899.99
    assert item['specifications'][0] == {'key': 'Memory', 'value': '16GB GDDR6X'}

    assert client.get(f'{API}/products/nope').status_code == 404
    assert client.get(f'{API}/products/gpu-gtx-1080').status_code == 404


def test_related_excludes_itself(client):
    related = client.get(f'{API}/products/gpu-rtx-4080/related').get_json()['data']['items']
    assert [p['id'] for p in related] == ['gpu-rx-7800']


def test_reviews_only_show_approved(client):
    items = client.get(f'{API}/products/ram-ddr5-32/reviews').get_json()['data']['items']
    assert items == []
    items = client.get(f'{API}/products/gpu-rtx-4080/reviews').get_json()['data']['items']
    assert [r['id'] for r in items] == ['rev_seed_2', 'rev_seed_1']


def test_new_review_waits_for_moderation(client, demo_headers):
    resp = client.post(f'{API}/products/cpu-i7-14700k/reviews', json={'rating': 5, 'comment': 'Fast'},
                       headers=demo_headers)
    assert resp.status_code == 201
    review = resp.get_json()['data']['review']
    assert review['status'] == 'pending'
    assert review['userId'] == 'usr_demo'
    assert client.get(f'{API}/products/cpu-i7-14700k/reviews').get_json()['data']['items'] == []


def test_review_rating_is_validated(client):
    resp = client.post(f'{API}/products/cpu-i7-14700k/reviews', json={'rating': 9})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Rating must be between 1-5'


def test_review_without_login_needs_demo_fallback(client, app):
    app.config['DEMO_USER_FALLBACK'] = False
    resp = client.post(f'{API}/products/cpu-i7-14700k/reviews', json={'rating': 4})
    assert resp.status_code == 401


def test_wishlist_toggle_is_idempotent(client):
    client.post(f'{API}/products/ssd-990-pro-2tb/wishlist')
    resp = client.post(f'{API}/products/ssd-990-pro-2tb/wishlist')
    assert resp.get_json()['data']['count'] == 1

    entries = read_cookie(client, 'cf_wishlist')
    assert entries[0]['productId'] == 'ssd-990-pro-2tb'

    items = client.get(f'{API}/products/wishlist').get_json()['data']['items']
    assert [p['id'] for p in items] == ['ssd-990-pro-2tb']

    client.delete(f'{API}/products/ssd-990-pro-2tb/wishlist')
    assert read_cookie(client, 'cf_wishlist') == []


def test_wishlist_rejects_unknown_product(client):
    assert client.post(f'{API}/products/nope/wishlist').status_code == 404


def test_unknown_route_uses_error_envelope(client):
    resp = client.get(f'{API}/definitely/not/here')
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'Not found'


def test_requests_are_access_logged(client):
    client.get(f'{API}/products/featured')
    entry = store.audit_log[-1]
    assert entry['type'] == 'access'
    assert entry['data']['path'] == f'{API}/products/featured'
    assert entry['data']['status'] == 200
