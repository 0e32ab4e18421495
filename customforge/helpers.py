import json
import logging
import re
import uuid
from datetime import datetime
from functools import wraps
from urllib.parse import quote, unquote

from flask import current_app, g, has_request_context, jsonify, request

from customforge import config, store, tokens

logger = logging.getLogger('customforge')

EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

DEMO_USER = {
    'id': 'usr_demo',
    'name': 'Demo User',
    'email': 'demo@customforge.dev',
    'role': 'user',
    'isEmailVerified': True,
    'twoFactorEnabled': False,
}


def gen_id(prefix):
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def now_iso():
    return datetime.now().isoformat()


def validate_email(email):
    return EMAIL_RE.match(email or '') is not None


# ---------- ENVELOPE ----------

def ok(data, status=200):
    return jsonify({'data': data}), status


def created(data):
    return ok(data, 201)


def err(message='Bad Request', status=400, details=None, headers=None):
    payload = {'error': message, 'message': message}
    if details is not None:
        payload['details'] = details
    resp = jsonify(payload)
    resp.status_code = status
    if headers:
        resp.headers.update(headers)
    return resp


def body():
    """request JSON as a dict; missing or malformed bodies read as empty"""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ---------- COOKIES ----------

def get_json_cookie(key, fallback):
    raw = request.cookies.get(key)
    if not raw:
        return fallback
    try:
        return json.loads(unquote(raw))
    except ValueError:
        logger.warning('discarding unreadable cookie %s', key)
        return fallback


def set_json_cookie(resp, key, value, max_age_days=None):
    days = config.COOKIE_MAX_AGE_DAYS if max_age_days is None else max_age_days
    resp.set_cookie(
        key,
        quote(json.dumps(value, separators=(',', ':'))),
        max_age=60 * 60 * 24 * days,
        path='/',
        samesite='Lax',
        httponly=False
    )
    return resp


def clear_cookie(resp, key):
    resp.delete_cookie(key, path='/')
    return resp


def with_cookies(result, **values):
    """attach JSON cookies to an (response, status) pair"""
    resp, status = result
    for key, value in values.items():
        set_json_cookie(resp, key, value)
    return resp, status


# ---------- AUDIT LOG ----------

def log_action(action, user_id=None, data=None, level='info', type='app'):
    entry = {
        'id': store.audit_log[-1]['id'] + 1 if store.audit_log else 1,
        'ts': now_iso(),
        'level': level,
        'type': type,
        'action': action,
        'user': user_id,
        'data': data,
        'ip': request.remote_addr if has_request_context() else None
    }
    store.audit_log.append(entry)
    # oldest entries drop off once the log is full
    if len(store.audit_log) > config.AUDIT_LOG_LIMIT:
        del store.audit_log[:-config.AUDIT_LOG_LIMIT]
    log = logger.error if level == 'error' else logger.warning if level == 'warning' else logger.info
    log('%s user=%s data=%s', action, user_id, data)
    return entry


def send_notification(user_id, type, message, data=None):
    # queued only; delivery belongs to the mail service
    store.notifications.append({
        'id': gen_id('notif'),
        'user_id': user_id,
        'type': type,
        'message': message,
        'data': data,
        'created': now_iso(),
        'sent': False
    })


# ---------- AUTH ----------

def _bearer_token():
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[len('Bearer '):].strip()
    return None


def get_auth_user():
    """Resolve the caller from a bearer token, then the cf_user cookie.

    Returns the stored account (not the cookie snapshot) so a deactivated
    or deleted account stops resolving immediately.
    """
    if 'auth_user' in g:
        return g.auth_user

    user = None
    token = _bearer_token()
    if token:
        try:
            payload = tokens.read_access_token(token, current_app.config['SECRET_KEY'])
            user = store.users.get(payload.get('uid'))
        except tokens.TokenError:
            user = None
    else:
        snapshot = get_json_cookie(config.USER_COOKIE, None)
        if isinstance(snapshot, dict):
            user = store.users.get(snapshot.get('id'))

    if user and not user.get('active', True):
        user = None
    g.auth_user = user
    return user


def require_auth():
    """current account, or the demo user when the fallback is switched on"""
    user = get_auth_user()
    if user:
        return user
    if current_app.config.get('DEMO_USER_FALLBACK'):
        # resolves to the seeded demo account when it exists
        return store.users.get(DEMO_USER['id']) or dict(DEMO_USER)
    return None


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not get_auth_user():
            return err('Not authenticated', 401)
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        user = get_auth_user()
        # the cf_user cookie is readable by the browser, so admin needs a signed token
        if not user or not _bearer_token():
            return err('Not authenticated', 401)
        if user.get('role') != 'admin':
            return err('Admin access only', 403)
        return f(*args, **kwargs)
    return decorated


# ---------- STOCK & ORDER STATE ----------

def deduct_stock(items, order_id=None):
    for item in items:
        product = store.products.get(item['productId'])
        if not product:
            continue
        qty = item['quantity']
        product['stock'] = max(0, product['stock'] - qty)
        product['salesCount'] = product.get('salesCount', 0) + qty
        if product['stock'] == 0 and product.get('availability') != 'Preorder':
            product['availability'] = 'Out of Stock'
        product['updatedAt'] = now_iso()
        if product['stock'] <= config.LOW_STOCK_THRESHOLD:
            log_action('low_stock', data={'productId': product['id'], 'stock': product['stock'],
                                          'orderId': order_id}, level='warning')


def restore_stock(items, order_id=None):
    for item in items:
        product = store.products.get(item['productId'])
        if not product:  # product may have been deleted since
            continue
        product['stock'] += item['quantity']
        product['salesCount'] = max(0, product.get('salesCount', 0) - item['quantity'])
        if product['stock'] > 0:
            product['availability'] = 'In Stock'
        product['updatedAt'] = now_iso()
    log_action('restore_stock', data={'orderId': order_id})


def set_order_status(order, status, changed_by='system'):
    old = order['status']
    order['status'] = status
    order['updatedAt'] = now_iso()
    order.setdefault('statusHistory', []).append({
        'from': old,
        'to': status,
        'changedAt': order['updatedAt'],
        'changedBy': changed_by
    })
    return order


def mark_paid(order, changed_by='system', payment_method_id=None):
    order['isPaid'] = True
    order['paidAt'] = now_iso()
    if payment_method_id:
        order['paymentMethodId'] = payment_method_id
    return set_order_status(order, 'paid', changed_by)
