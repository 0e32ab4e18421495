"""
Admin dashboard handlers, mounted at /api/v1/admin.

Every route needs an authenticated admin (401 anonymous, 403 otherwise).
Unlike the storefront these read and write the shared store directly.
"""
import math
from collections import Counter
from datetime import datetime, timedelta

from flask import Blueprint, request

from customforge import config, pricing, store, tokens
from customforge.helpers import (
    admin_required, body, created, err, gen_id, get_auth_user, log_action,
    mark_paid, now_iso, ok, restore_stock, send_notification,
    set_order_status, validate_email
)

bp = Blueprint('admin', __name__)

# statuses each status may move to from the dashboard
ORDER_TRANSITIONS = {
    'pending': ['paid', 'cancelled'],
    'paid': ['shipped', 'cancelled', 'refunded'],
    'shipped': ['delivered'],
    'delivered': ['returned', 'refunded'],
    'returned': ['refunded'],
    'cancelled': [],
    'refunded': []
}

REVENUE_EXCLUDED = ('cancelled', 'refunded')


def _admin_id():
    return get_auth_user()['id']


def _days_arg(default=30):
    try:
        return max(1, int(request.args.get('days') or default))
    except ValueError:
        return default


def _parse(ts):
    return datetime.fromisoformat(ts)


def _revenue_orders(orders):
    return [o for o in orders if o.get('isPaid') and o['status'] not in REVENUE_EXCLUDED]


def period_key(ts, period='daily'):
    d = _parse(ts)
    if period == 'weekly':
        year, week, _ = d.isocalendar()
        return f"{year}-W{week:02d}"
    if period == 'monthly':
        return d.strftime('%Y-%m')
    return d.strftime('%Y-%m-%d')


# ---------- ANALYTICS ----------

@bp.route('/analytics/overview', methods=['GET'])
@admin_required
def analytics_overview():
    orders = list(store.orders.values())
    paid = _revenue_orders(orders)
    low_stock = [p for p in store.products.values()
                 if p.get('isActive', True) and p['stock'] <= config.LOW_STOCK_THRESHOLD]
    return ok({
        'users': {'total': len(store.users)},
        'orders': {
            'total': len(orders),
            'paid': len(paid),
            'revenue': round(sum(o['total'] for o in paid), 2)
        },
        'products': {'total': len(store.products), 'lowStock': len(low_stock)},
        'reviews': {'pending': len([r for r in store.reviews.values() if r['status'] == 'pending'])}
    })


@bp.route('/analytics/sales', methods=['GET'])
@admin_required
def analytics_sales():
    period = request.args.get('period')
    if period not in ('daily', 'weekly', 'monthly'):
        period = 'daily'
    days = _days_arg()
    end = datetime.now()
    start = end - timedelta(days=days)

    in_range = [o for o in store.orders.values() if start <= _parse(o['createdAt']) <= end]
    valid = _revenue_orders(in_range)

    total_sales = sum(o['total'] for o in valid)
    buckets = {}
    for o in valid:
        key = period_key(o['createdAt'], period)
        bucket = buckets.setdefault(key, {'period': key, 'orders': 0, 'sales': 0.0})
        bucket['orders'] += 1
        bucket['sales'] += o['total']

    revenue_data = []
    for key in sorted(buckets):
        b = buckets[key]
        revenue_data.append({
            'date': key,
            'orders': b['orders'],
            'revenue': round(b['sales'], 2),
            'avgOrderValue': round(b['sales'] / b['orders'], 2)
        })

    # top products by revenue
    agg = {}
    for o in valid:
        for item in o['items']:
            p = agg.setdefault(item['productId'], {
                'productId': item['productId'],
                'name': item.get('name'),
                'totalQuantity': 0,
                'totalRevenue': 0.0
            })
            p['totalQuantity'] += item['quantity']
            p['totalRevenue'] += item['quantity'] * item['price']
    top_products = sorted(agg.values(), key=lambda x: x['totalRevenue'], reverse=True)[:10]
    for p in top_products:
        p['totalRevenue'] = round(p['totalRevenue'], 2)

    # a customer is new when their first paid order falls inside the window
    first_order = {}
    for o in _revenue_orders(store.orders.values()):
        uid = o.get('userId')
        if uid and (uid not in first_order or o['createdAt'] < first_order[uid]):
            first_order[uid] = o['createdAt']
    customers = set(o['userId'] for o in valid if o.get('userId'))
    new_customers = len([uid for uid in customers if _parse(first_order[uid]) >= start])

    return ok({
        'totalRevenue': round(total_sales, 2),
        'totalOrders': len(valid),
        'avgOrderValue': round(total_sales / len(valid), 2) if valid else 0,
        'revenueData': revenue_data,
        'topProducts': top_products,
        'customerStats': {
            'totalCustomers': len(customers),
            'newCustomers': new_customers,
            'returningCustomers': len(customers) - new_customers
        },
        'period': period,
        'range': {'startDate': start.isoformat(), 'endDate': end.isoformat()}
    })


@bp.route('/analytics/inventory', methods=['GET'])
@admin_required
def analytics_inventory():
    threshold = config.LOW_STOCK_THRESHOLD
    items = list(store.products.values())
    total_stock = sum(p['stock'] for p in items)

    low = [p for p in items if 0 < p['stock'] <= threshold]
    out = [p for p in items if p['stock'] <= 0]

    categories = {}
    for p in items:
        c = categories.setdefault(p['category'], {
            'category': p['category'], 'totalStock': 0, 'productCount': 0, 'lowStockCount': 0
        })
        c['totalStock'] += p['stock']
        c['productCount'] += 1
        if p['stock'] <= threshold:
            c['lowStockCount'] += 1
    for c in categories.values():
        c['avgStock'] = round(c['totalStock'] / c['productCount'])

    def brief(p):
        return {'id': p['id'], 'name': p['name'], 'sku': p['sku'], 'stock': p['stock'],
                'category': p['category'], 'salesCount': p.get('salesCount', 0)}

    top_selling = sorted([p for p in items if p.get('salesCount', 0) > 0],
                         key=lambda p: p['salesCount'], reverse=True)[:10]

    return ok({
        'stockLevels': {
            'totalStock': total_stock,
            'avgStock': round(total_stock / len(items)) if items else 0,
            'inStock': len([p for p in items if p['stock'] > threshold]),
            'lowStock': len(low),
            'outOfStock': len(out)
        },
        'lowStockThreshold': threshold,
        'categoryStock': sorted(categories.values(), key=lambda c: c['category']),
        'lowStockProducts': [brief(p) for p in low[:10]],
        'outOfStockProducts': [brief(p) for p in out[:10]],
        'topSellingProducts': [brief(p) for p in top_selling]
    })


@bp.route('/analytics/users', methods=['GET'])
@admin_required
def analytics_users():
    days = _days_arg()
    start = datetime.now() - timedelta(days=days)
    accounts = list(store.users.values())
    return ok({
        'totalUsers': len(accounts),
        'activeUsers': len([u for u in accounts if u.get('active', True)]),
        'verifiedUsers': len([u for u in accounts if u.get('isEmailVerified')]),
        'newUsers': len([u for u in accounts if _parse(u['createdAt']) >= start]),
        'adminUsers': len([u for u in accounts if u['role'] == 'admin']),
        'twoFactorUsers': len([u for u in accounts if u.get('twoFactorEnabled')]),
        'period': {'days': days, 'startDate': start.isoformat()}
    })


@bp.route('/analytics/orders', methods=['GET'])
@admin_required
def analytics_orders():
    days = _days_arg()
    start = datetime.now() - timedelta(days=days)
    orders = sorted([o for o in store.orders.values() if _parse(o['createdAt']) >= start],
                    key=lambda o: o['createdAt'], reverse=True)

    by_date = {}
    for o in orders:
        date = o['createdAt'][:10]
        bucket = by_date.setdefault(date, {'date': date, 'orders': 0, 'delivered': 0})
        bucket['orders'] += 1
        if o['status'] == 'delivered':
            bucket['delivered'] += 1

    recent = []
    for o in orders[:10]:
        owner = store.users.get(o.get('userId'))
        recent.append({
            'id': o['id'],
            'customer': owner['name'] if owner else 'Guest',
            'amount': pricing.format_price(o['total']),
            'status': o['status'].capitalize()
        })

    return ok({
        'totalOrders': len(orders),
        'paidOrders': len([o for o in orders if o.get('isPaid')]),
        'totalRevenue': round(sum(o['total'] for o in _revenue_orders(orders)), 2),
        'statusCounts': dict(Counter(o['status'] for o in orders)),
        'ordersData': [by_date[d] for d in sorted(by_date)],
        'recentOrders': recent,
        'period': {'days': days, 'startDate': start.isoformat()}
    })


@bp.route('/analytics/products', methods=['GET'])
@admin_required
def analytics_products():
    items = list(store.products.values())
    return ok({
        'totalProducts': len(items),
        'activeProducts': len([p for p in items if p.get('isActive', True)]),
        'featuredProducts': len([p for p in items if p.get('isFeatured')]),
        'lowStock': len([p for p in items if 0 < p['stock'] <= config.LOW_STOCK_THRESHOLD]),
        'outOfStock': len([p for p in items if p['stock'] == 0]),
        'byCategory': dict(Counter(p['category'] for p in items))
    })


# ---------- USERS ----------

@bp.route('/users', methods=['GET'])
@admin_required
def list_users():
    search = request.args.get('search', '').strip().lower()
    role = request.args.get('role')
    is_active = request.args.get('isActive')
    sort_by = request.args.get('sortBy', 'createdAt')
    sort_order = request.args.get('sortOrder', 'desc')

    result = []
    for u in store.users.values():
        # filters
        if search and search not in u['email'].lower() and search not in u.get('name', '').lower():
            continue
        if role and u['role'] != role:
            continue
        if is_active in ('true', 'false') and u.get('active', True) != (is_active == 'true'):
            continue
        result.append(store.safe_user(u))

    if sort_by not in ('createdAt', 'name', 'email', 'lastLogin'):
        sort_by = 'createdAt'
    result.sort(key=lambda u: u.get(sort_by) or '', reverse=sort_order != 'asc')

    page, limit = pricing.page_params(request.args)
    return ok(pricing.paginate(result, page, limit))


@bp.route('/users/<uid>', methods=['GET'])
@admin_required
def get_user(uid):
    if uid not in store.users:
        return err('User not found', 404)
    user_orders = [o for o in store.orders.values() if o.get('userId') == uid]
    spent = sum(o['total'] for o in _revenue_orders(user_orders))
    return ok({
        'user': store.safe_user(store.users[uid]),
        'orderCount': len(user_orders),
        'totalSpent': round(spent, 2)
    })


@bp.route('/users', methods=['POST'])
@admin_required
def create_user():
    data = body()
    email = str(data.get('email', '')).strip().lower()
    password = data.get('password') or ''
    role = data.get('role', 'user')

    if not email or not validate_email(email):
        return err('A valid email is required', 400)
    if len(password) < config.PASSWORD_MIN_LENGTH:
        return err(f'Password must be at least {config.PASSWORD_MIN_LENGTH} characters', 400)
    if role not in ('user', 'admin'):
        return err('Role must be user or admin', 400)
    if store.find_user_by_email(email):
        return err('Email already registered', 409)

    uid = gen_id('usr')
    store.users[uid] = {
        'id': uid,
        'name': str(data.get('name') or email.split('@')[0]).strip(),
        'email': email,
        'password': tokens.hash_password(password),
        'role': role,
        'phone': str(data.get('phone') or ''),
        'avatar': None,
        'isEmailVerified': bool(data.get('isEmailVerified', True)),
        'twoFactorEnabled': False,
        'twoFactorSecret': None,
        'active': True,
        'lastLogin': None,
        'createdAt': now_iso(),
        'updatedAt': now_iso()
    }
    log_action('admin_create_user', _admin_id(), {'userId': uid, 'role': role})
    return created({'user': store.safe_user(store.users[uid])})


@bp.route('/users/<uid>', methods=['PATCH'])
@admin_required
def update_user(uid):
    user = store.users.get(uid)
    if not user:
        return err('User not found', 404)
    data = body()

    if 'email' in data:
        email = str(data['email']).strip().lower()
        if not validate_email(email):
            return err('Invalid email format', 400)
        other = store.find_user_by_email(email)
        if other and other['id'] != uid:
            return err('Email already registered', 409)
        user['email'] = email
    if 'role' in data:
        if data['role'] not in ('user', 'admin'):
            return err('Role must be user or admin', 400)
        if uid == _admin_id() and data['role'] != 'admin':
            return err('You cannot remove your own admin role', 400)
        user['role'] = data['role']
    for field in ('name', 'phone', 'avatar'):
        if field in data:
            user[field] = data[field]
    if 'active' in data:
        user['active'] = bool(data['active'])
    if 'isEmailVerified' in data:
        user['isEmailVerified'] = bool(data['isEmailVerified'])
    user['updatedAt'] = now_iso()

    log_action('admin_update_user', _admin_id(), {'userId': uid, 'fields': sorted(data.keys())})
    return ok({'user': store.safe_user(user)})


@bp.route('/users/<uid>', methods=['DELETE'])
@admin_required
def delete_user(uid):
    user = store.users.get(uid)
    if not user:
        return err('User not found', 404)
    if uid == _admin_id():
        return err('You cannot delete your own account', 400)

    # soft delete so order history keeps its owner
    user['active'] = False
    user['updatedAt'] = now_iso()
    log_action('admin_delete_user', _admin_id(), {'userId': uid}, level='warning')
    return ok({'message': 'User deactivated', 'user': store.safe_user(user)})


# ---------- PRODUCTS ----------

def _product_problem(data, partial=False):
    if not partial and not str(data.get('name') or '').strip():
        return 'Product name is required'
    for field in ('originalPrice', 'stock'):
        if field in data:
            try:
                if float(data[field]) < 0:
                    return f'{field} cannot be negative'
            except (TypeError, ValueError):
                return f'{field} must be a number'
    if 'discountPercentage' in data:
        try:
            discount = float(data['discountPercentage'] or 0)
        except (TypeError, ValueError):
            return 'discountPercentage must be a number'
        if discount < 0 or discount > 100:
            return 'discountPercentage must be between 0 and 100'
    return None


@bp.route('/products', methods=['GET'])
@admin_required
def list_products():
    search = request.args.get('search', '').strip().lower()
    category = request.args.get('category', '').strip().lower()

    result = []
    for p in store.products.values():
        if search and search not in p['name'].lower() and search not in p['sku'].lower():
            continue
        if category and p['category'].lower() != category:
            continue
        result.append(p)
    result.sort(key=lambda p: p['createdAt'], reverse=True)

    page, limit = pricing.page_params(request.args)
    return ok(pricing.paginate(result, page, limit))


@bp.route('/products', methods=['POST'])
@admin_required
def create_product():
    data = body()
    problem = _product_problem(data)
    if problem:
        return err(problem, 400)

    pid = str(data.get('id') or gen_id('prd'))
    if pid in store.products:
        return err('Product id already exists', 409)

    store.products[pid] = store.make_product({**data, 'id': pid}, now_iso())
    log_action('admin_create_product', _admin_id(), {'productId': pid})
    return created({'product': store.products[pid]})


@bp.route('/products/<pid>', methods=['PATCH'])
@admin_required
def update_product(pid):
    product = store.products.get(pid)
    if not product:
        return err('Product not found', 404)
    data = body()
    problem = _product_problem(data, partial=True)
    if problem:
        return err(problem, 400)

    merged = {**product, **{k: v for k, v in data.items() if k != 'id'}}
    merged.pop('finalPrice', None)
    # keep Preorder unless stock comes back
    merged['availability'] = product['availability'] if 'availability' not in data else data['availability']
    merged['updatedAt'] = now_iso()
    store.products[pid] = store.make_product(merged)

    log_action('admin_update_product', _admin_id(), {'productId': pid, 'fields': sorted(data.keys())})
    return ok({'product': store.products[pid]})


@bp.route('/products/<pid>', methods=['DELETE'])
@admin_required
def delete_product(pid):
    if pid not in store.products:
        return err('Product not found', 404)
    del store.products[pid]
    for rid in [r['id'] for r in store.reviews.values() if r['productId'] == pid]:
        del store.reviews[rid]
    log_action('admin_delete_product', _admin_id(), {'productId': pid}, level='warning')
    return ok({'message': 'Product deleted'})


@bp.route('/products/<pid>/toggle-active', methods=['PATCH'])
@admin_required
def toggle_product_active(pid):
    product = store.products.get(pid)
    if not product:
        return err('Product not found', 404)
    product['isActive'] = not product.get('isActive', True)
    product['updatedAt'] = now_iso()
    log_action('admin_toggle_product', _admin_id(), {'productId': pid, 'isActive': product['isActive']})
    return ok({'product': product})


@bp.route('/products/<pid>/feature', methods=['PATCH'])
@admin_required
def toggle_product_featured(pid):
    product = store.products.get(pid)
    if not product:
        return err('Product not found', 404)
    product['isFeatured'] = not product.get('isFeatured', False)
    product['updatedAt'] = now_iso()
    return ok({'product': product})


@bp.route('/products/<pid>/stock', methods=['PATCH'])
@admin_required
def update_product_stock(pid):
    product = store.products.get(pid)
    if not product:
        return err('Product not found', 404)
    data = body()
    try:
        if 'stock' in data:
            new_stock = int(data['stock'])
        else:
            new_stock = product['stock'] + int(data.get('adjustment', 0))
    except (TypeError, ValueError):
        return err('Stock must be an integer', 400)
    if new_stock < 0:
        return err('Stock cannot be negative', 400)

    old = product['stock']
    product['stock'] = new_stock
    product['availability'] = pricing.availability_for(new_stock, product['availability'])
    product['updatedAt'] = now_iso()

    log_action('admin_update_stock', _admin_id(), {
        'productId': pid, 'old': old, 'new': new_stock, 'reason': data.get('reason', 'manual adjustment')
    })
    return ok({'product': product})


@bp.route('/products/<pid>/reviews', methods=['GET'])
@admin_required
def list_product_reviews(pid):
    if pid not in store.products:
        return err('Product not found', 404)
    items = sorted([r for r in store.reviews.values() if r['productId'] == pid],
                   key=lambda r: r['createdAt'], reverse=True)
    return ok({'items': items})


# ---------- ORDERS ----------

@bp.route('/orders', methods=['GET'])
@admin_required
def list_orders():
    status = request.args.get('status')
    if status and status not in config.ORDER_STATUSES:
        return err('Invalid status filter', 400)
    result = [o for o in store.orders.values() if not status or o['status'] == status]
    result.sort(key=lambda o: o['createdAt'], reverse=True)
    page, limit = pricing.page_params(request.args)
    return ok(pricing.paginate(result, page, limit))


@bp.route('/orders/<oid>', methods=['GET'])
@admin_required
def get_order(oid):
    order = store.orders.get(oid)
    if not order:
        return err('Order not found', 404)
    owner = store.users.get(order.get('userId'))
    return ok({'order': order, 'customer': store.safe_user(owner) if owner else None})


def _move_order(order, status):
    """(order, error) after a validated transition; stock follows cancel/refund"""
    if status not in config.ORDER_STATUSES:
        return None, f'Invalid status: {status}'
    if status not in ORDER_TRANSITIONS[order['status']]:
        return None, f"Cannot change status from {order['status']} to {status}"

    if status in ('cancelled', 'refunded') and order['status'] != 'returned':
        restore_stock(order['items'], order['id'])
    if status == 'paid':
        mark_paid(order, _admin_id())
    else:
        set_order_status(order, status, _admin_id())
    if status == 'delivered':
        order['deliveredAt'] = now_iso()
    if status == 'refunded':
        order['refundedAt'] = now_iso()
        order['refundAmount'] = order['total']

    log_action('admin_order_status', _admin_id(), {'orderId': order['id'], 'status': status})
    send_notification(order.get('userId'), f'order_{status}', f"Your order {order['id']} is now {status}",
                      {'orderId': order['id']})
    return order, None


def _order_action(oid, status):
    order = store.orders.get(oid)
    if not order:
        return err('Order not found', 404)
    order, problem = _move_order(order, status)
    if problem:
        return err(problem, 400)
    return ok({'order': order})


@bp.route('/orders/<oid>/update-status', methods=['PATCH'])
@admin_required
def update_order_status(oid):
    status = body().get('status')
    if not status:
        return err('Status is required', 400)
    return _order_action(oid, status)


@bp.route('/orders/<oid>/mark-paid', methods=['PATCH'])
@admin_required
def mark_order_paid(oid):
    order = store.orders.get(oid)
    if order and order.get('isPaid'):
        return err('Order is already paid', 400)
    return _order_action(oid, 'paid')


@bp.route('/orders/<oid>/mark-delivered', methods=['PATCH'])
@admin_required
def mark_order_delivered(oid):
    return _order_action(oid, 'delivered')


@bp.route('/orders/<oid>/refund', methods=['PATCH', 'POST'])
@admin_required
def refund_order(oid):
    order = store.orders.get(oid)
    if order and not order.get('isPaid'):
        return err('Only paid orders can be refunded', 400)
    return _order_action(oid, 'refunded')


@bp.route('/orders/<oid>/approve-return', methods=['PATCH'])
@admin_required
def approve_return(oid):
    order = store.orders.get(oid)
    if not order:
        return err('Order not found', 404)
    if order['status'] != 'returned' or order.get('returnStatus') != 'requested':
        return err('No pending return request for this order', 400)
    order['returnStatus'] = 'approved'
    order['updatedAt'] = now_iso()
    log_action('admin_approve_return', _admin_id(), {'orderId': oid})
    return ok({'order': order})


@bp.route('/orders/<oid>/process-return', methods=['PUT'])
@admin_required
def process_return(oid):
    order = store.orders.get(oid)
    if not order:
        return err('Order not found', 404)
    if order['status'] != 'returned' or order.get('returnStatus') != 'approved':
        return err('Return must be approved before it is processed', 400)

    # returned goods go back on the shelf, then the money goes back
    restore_stock(order['items'], oid)
    order['returnStatus'] = 'completed'
    order, problem = _move_order(order, 'refunded')
    if problem:
        return err(problem, 400)
    return ok({'order': order})


# ---------- COUPONS ----------

# optional numeric fields and whether they must be whole numbers
COUPON_NUMBER_FIELDS = {'minPurchase': False, 'maxDiscount': False, 'usageLimit': True, 'perUserLimit': True}


def _coupon_problem(data, partial=False):
    if not partial or 'code' in data:
        code = pricing.normalize_code(data.get('code'))
        if not config.COUPON_MIN_CODE_LENGTH <= len(code) <= config.COUPON_MAX_CODE_LENGTH:
            return (f'Coupon code must be between {config.COUPON_MIN_CODE_LENGTH} '
                    f'and {config.COUPON_MAX_CODE_LENGTH} characters')
    if not partial or 'discountType' in data:
        if data.get('discountType') not in ('percent', 'fixed'):
            return 'discountType must be percent or fixed'
    if not partial or 'discountValue' in data:
        try:
            value = float(data.get('discountValue'))
        except (TypeError, ValueError):
            return 'discountValue must be a number'
        if value <= 0:
            return 'discountValue must be positive'
        if data.get('discountType') == 'percent' and value > config.COUPON_MAX_PERCENT:
            return 'Percentage discount cannot exceed 100'
    for field, integer in COUPON_NUMBER_FIELDS.items():
        if data.get(field) is None:
            continue
        try:
            _coupon_number(data[field], integer)
        except (TypeError, ValueError):
            kind = 'a whole number' if integer else 'a number'
            return f'{field} must be {kind} of at least 0'
    return None


def _coupon_number(value, integer=False):
    if isinstance(value, bool):
        raise TypeError(value)
    number = float(value)
    if not math.isfinite(number) or number < 0 or (integer and not number.is_integer()):
        raise ValueError(value)
    return int(number) if integer else number


def _coerce_coupon_numbers(data):
    """numeric coupon fields from a validated body, None kept as no limit"""
    return {field: None if data[field] is None else _coupon_number(data[field], integer)
            for field, integer in COUPON_NUMBER_FIELDS.items() if field in data}


def _find_coupon(key):
    """coupons are addressed by code or by id"""
    coupon = store.coupons.get(pricing.normalize_code(key))
    if coupon:
        return coupon
    return next((c for c in store.coupons.values() if c['id'] == key), None)


@bp.route('/coupons', methods=['GET'])
@admin_required
def list_coupons():
    items = sorted(store.coupons.values(), key=lambda c: c['createdAt'], reverse=True)
    result = []
    for c in items:
        valid, reason = pricing.coupon_validity(c)
        result.append({**c, 'isValid': valid, 'invalidReason': reason})
    return ok({'items': result})


@bp.route('/coupons/<key>', methods=['GET'])
@admin_required
def get_coupon(key):
    coupon = _find_coupon(key)
    if not coupon:
        return err('Coupon not found', 404)
    return ok({'coupon': coupon})


@bp.route('/coupons', methods=['POST'])
@admin_required
def create_coupon():
    data = body()
    problem = _coupon_problem(data)
    if problem:
        return err(problem, 400)

    code = pricing.normalize_code(data['code'])
    if code in store.coupons:
        return err('Coupon code already exists', 409)

    numbers = _coerce_coupon_numbers(data)
    store.coupons[code] = {
        'id': gen_id('cpn'),
        'code': code,
        'discountType': data['discountType'],
        'discountValue': float(data['discountValue']),
        'minPurchase': numbers.get('minPurchase') or 0,
        'maxDiscount': numbers.get('maxDiscount'),
        'validFrom': data.get('validFrom'),
        'validTo': data.get('validTo'),
        'isActive': bool(data.get('isActive', True)),
        'usageLimit': numbers.get('usageLimit'),
        'timesUsed': 0,
        'perUserLimit': numbers.get('perUserLimit'),
        'applicableProducts': list(data.get('applicableProducts') or []),
        'excludedProducts': list(data.get('excludedProducts') or []),
        'description': data.get('description', ''),
        'createdAt': now_iso(),
        'updatedAt': now_iso()
    }
    log_action('admin_create_coupon', _admin_id(), {'code': code})
    return created({'coupon': store.coupons[code]})


@bp.route('/coupons/<key>', methods=['PATCH'])
@admin_required
def update_coupon(key):
    coupon = _find_coupon(key)
    if not coupon:
        return err('Coupon not found', 404)
    data = body()
    problem = _coupon_problem({**{'discountType': coupon['discountType']}, **data}, partial=True)
    if problem:
        return err(problem, 400)

    if 'code' in data:
        new_code = pricing.normalize_code(data['code'])
        if new_code != coupon['code']:
            if new_code in store.coupons:
                return err('Coupon code already exists', 409)
            del store.coupons[coupon['code']]
            coupon['code'] = new_code
            store.coupons[new_code] = coupon

    for field in ('discountType', 'discountValue', 'minPurchase', 'maxDiscount', 'validFrom', 'validTo',
                  'isActive', 'usageLimit', 'perUserLimit', 'applicableProducts', 'excludedProducts',
                  'description'):
        if field in data:
            coupon[field] = data[field]
    coupon.update(_coerce_coupon_numbers(data))
    if 'discountValue' in data:
        coupon['discountValue'] = float(data['discountValue'])
    if coupon.get('minPurchase') is None:
        coupon['minPurchase'] = 0
    coupon['updatedAt'] = now_iso()

    log_action('admin_update_coupon', _admin_id(), {'code': coupon['code']})
    return ok({'coupon': coupon})


@bp.route('/coupons/<key>', methods=['DELETE'])
@admin_required
def delete_coupon(key):
    coupon = _find_coupon(key)
    if not coupon:
        return err('Coupon not found', 404)
    del store.coupons[coupon['code']]
    log_action('admin_delete_coupon', _admin_id(), {'code': coupon['code']}, level='warning')
    return ok({'message': 'Coupon deleted'})


@bp.route('/coupons/<key>/toggle', methods=['PATCH'])
@admin_required
def toggle_coupon(key):
    coupon = _find_coupon(key)
    if not coupon:
        return err('Coupon not found', 404)
    coupon['isActive'] = not coupon.get('isActive', True)
    coupon['updatedAt'] = now_iso()
    return ok({'coupon': coupon})


# ---------- REVIEWS ----------

@bp.route('/reviews', methods=['GET'])
@admin_required
def list_reviews():
    status = request.args.get('status')
    result = []
    for r in store.reviews.values():
        if status and r['status'] != status:
            continue
        product = store.products.get(r['productId'])
        result.append({**r, 'productName': product['name'] if product else None})
    result.sort(key=lambda r: r['createdAt'], reverse=True)
    page, limit = pricing.page_params(request.args)
    return ok(pricing.paginate(result, page, limit))


@bp.route('/reviews/<rid>/moderate', methods=['PATCH'])
@admin_required
def moderate_review(rid):
    review = store.reviews.get(rid)
    if not review:
        return err('Review not found', 404)
    action = body().get('action')
    if action not in ('approve', 'reject'):
        return err('Action must be approve or reject', 400)

    review['status'] = 'approved' if action == 'approve' else 'rejected'
    review['moderatedBy'] = _admin_id()
    review['moderatedAt'] = now_iso()
    store.recalc_ratings(review['productId'])

    log_action('admin_moderate_review', _admin_id(), {'reviewId': rid, 'action': action})
    return ok({'review': review})


@bp.route('/reviews/<rid>', methods=['DELETE'])
@bp.route('/products/<pid>/reviews/<rid>', methods=['DELETE'])
@admin_required
def delete_review(rid, pid=None):
    review = store.reviews.get(rid)
    if not review or (pid and review['productId'] != pid):
        return err('Review not found', 404)
    del store.reviews[rid]
    store.recalc_ratings(review['productId'])
    log_action('admin_delete_review', _admin_id(), {'reviewId': rid})
    return ok({'message': 'Review deleted'})


# ---------- LOGS ----------

def _filtered_logs(level=None, type=None):
    level = level or request.args.get('level')
    type = type or request.args.get('type')
    date = request.args.get('date')
    search = request.args.get('search', '').lower()

    result = []
    for e in store.audit_log:
        if level and e['level'] != level:
            continue
        if type and e['type'] != type:
            continue
        if date and not e['ts'].startswith(date):
            continue
        if search and search not in e['action'].lower():
            continue
        result.append(e)
    # newest first
    return sorted(result, key=lambda e: (e['ts'], e['id']), reverse=True)


def _log_page(level=None, type=None):
    page, limit = pricing.page_params(request.args, default_limit=50)
    return ok(pricing.paginate(_filtered_logs(level, type), page, limit))


@bp.route('/logs', methods=['GET'])
@admin_required
def list_logs():
    return _log_page()


@bp.route('/logs/errors', methods=['GET'])
@admin_required
def error_logs():
    return _log_page(level='error')


@bp.route('/logs/access', methods=['GET'])
@admin_required
def access_logs():
    return _log_page(type='access')


@bp.route('/logs/dates/available', methods=['GET'])
@admin_required
def log_dates():
    return ok({'dates': sorted(set(e['ts'][:10] for e in store.audit_log), reverse=True)})


@bp.route('/logs/stats', methods=['GET'])
@admin_required
def log_stats():
    entries = store.audit_log
    return ok({
        'total': len(entries),
        'byLevel': dict(Counter(e['level'] for e in entries)),
        'byType': dict(Counter(e['type'] for e in entries)),
        'topActions': [{'action': a, 'count': n} for a, n in Counter(e['action'] for e in entries).most_common(10)],
        'lastEntryAt': entries[-1]['ts'] if entries else None
    })


@bp.route('/logs/<int:log_id>', methods=['GET'])
@admin_required
def get_log(log_id):
    entry = next((e for e in store.audit_log if e['id'] == log_id), None)
    if not entry:
        return err('Log entry not found', 404)
    return ok({'log': entry})
