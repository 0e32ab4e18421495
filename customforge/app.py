"""
CustomForge storefront API

Mock request handlers for the storefront and the admin dashboard. Customer
state rides in cookies (cf_cart, cf_orders, cf_user, cf_wishlist,
cf_addresses, cf_methods); catalogue, coupons, accounts and the audit log
live in customforge.store.

Every handler answers with {"data": ...} or {"error": ...}.
"""
import logging
import secrets
from datetime import datetime, timedelta

from flask import Flask, current_app, request
from werkzeug.exceptions import HTTPException

from customforge import config, pricing, store, tokens
from customforge.admin import bp as admin_bp
from customforge.helpers import (
    body, clear_cookie, created, deduct_stock, err, gen_id, get_auth_user,
    get_json_cookie, log_action, login_required, logger, mark_paid, now_iso,
    ok, require_auth, restore_stock, send_notification, set_json_cookie,
    set_order_status, validate_email, with_cookies
)

API = config.API_PREFIX

app = Flask(__name__)
app.config.from_mapping(
    SECRET_KEY=config.SECRET_KEY,
    DEMO_USER_FALLBACK=config.DEMO_USER_FALLBACK,
    REQUIRE_EMAIL_VERIFICATION=config.REQUIRE_EMAIL_VERIFICATION,
)
app.json.sort_keys = False
app.register_blueprint(admin_bp, url_prefix=f'{API}/admin')


# ============== COOKIE STATE ==============

def load_cart():
    raw = get_json_cookie(config.CART_COOKIE, {'items': []})
    if not isinstance(raw, dict):
        raw = {'items': []}
    items = []
    for item in raw.get('items') or []:
        if not isinstance(item, dict) or not item.get('productId'):
            continue
        try:
            qty = int(item.get('quantity', 0))
        except (TypeError, ValueError):
            continue
        if qty > 0:
            items.append({'productId': str(item['productId']), 'quantity': qty})
    return {'items': items, 'couponCode': raw.get('couponCode') or None}


def cart_view(cart):
    totals = pricing.cart_totals(cart, store.products, store.coupons)
    return {'couponCode': cart.get('couponCode'), **totals}


def cart_response(cart, status=200, **extra):
    return with_cookies(ok({'cart': cart_view(cart), **extra}, status), **{config.CART_COOKIE: cart})


def _order_stub(order):
    # the cookie keeps a compact copy; the full record is in store.orders
    return {
        'id': order['id'],
        'status': order['status'],
        'items': [{'productId': i['productId'], 'quantity': i['quantity']} for i in order['items']],
        'total': order['total'],
        'createdAt': order['createdAt']
    }


def order_owner():
    user = require_auth()
    return user['id'] if user else 'guest'


def load_orders():
    raw = get_json_cookie(config.ORDERS_COOKIE, [])
    if not isinstance(raw, list):
        return []
    owner = order_owner()
    result = []
    for entry in raw:
        if not isinstance(entry, dict) or 'id' not in entry:
            continue
        order = store.orders.get(entry['id'])
        if order is None:
            result.append(entry)
        # a server-side order is only visible to the account that placed it
        elif order['userId'] == owner:
            result.append(order)
    result.sort(key=lambda o: o.get('createdAt', ''), reverse=True)
    return result


def find_order(oid):
    for order in load_orders():
        if order['id'] == oid:
            return order
    return None


def save_orders(resp, orders):
    set_json_cookie(resp, config.ORDERS_COOKIE, [_order_stub(o) for o in orders])
    return resp


def load_wishlist():
    raw = get_json_cookie(config.WISHLIST_COOKIE, [])
    if not isinstance(raw, list):
        return []
    entries = []
    for entry in raw:
        # older cookies stored bare product ids
        if isinstance(entry, str):
            entries.append({'productId': entry, 'addedAt': None})
        elif isinstance(entry, dict) and entry.get('productId'):
            entries.append({'productId': entry['productId'], 'addedAt': entry.get('addedAt')})
    return entries


def load_list_cookie(key):
    raw = get_json_cookie(key, [])
    return [x for x in raw if isinstance(x, dict) and x.get('id')] if isinstance(raw, list) else []


def public_product(p):
    return dict(p)


def active_products():
    return [p for p in store.products.values() if p.get('isActive', True)]


# ============== ROUTES ==============

@app.route(f'{API}/health')
@app.route('/health')
def health():
    return ok({'status': 'ok', 'mock': True, 'timestamp': now_iso()})


# ---------- AUTH ----------

def session_response(user, status=200, message=None):
    secret = current_app.config['SECRET_KEY']
    user['lastLogin'] = now_iso()
    data = {'token': tokens.issue_access_token(user, secret), 'user': store.safe_user(user)}
    if message:
        data['message'] = message
    resp, status = ok(data, status)
    set_json_cookie(resp, config.USER_COOKIE, store.safe_user(user))
    resp.set_cookie(
        config.REFRESH_COOKIE,
        tokens.issue_refresh_token(user, secret),
        max_age=config.REFRESH_TOKEN_DAYS * 86400,
        path='/',
        samesite='Lax',
        httponly=True
    )
    return resp, status


def check_new_password(password, confirm):
    if not password:
        return 'Password is required'
    if len(password) < config.PASSWORD_MIN_LENGTH:
        return f'Password must be at least {config.PASSWORD_MIN_LENGTH} characters'
    if confirm is not None and password != confirm:
        return 'Passwords do not match'
    return None


def _record_failed_login(email):
    fl = store.failed_logins.setdefault(email, {'count': 0, 'last_attempt': None})
    fl['count'] += 1
    fl['last_attempt'] = now_iso()


@app.route(f'{API}/auth/register', methods=['POST'])
def register():
    data = body()
    email = str(data.get('email', '')).strip().lower()
    password = data.get('password', '')
    name = str(data.get('name', '')).strip()

    if not email or not password:
        return err('Email and password required', 400)
    if not validate_email(email):
        return err('Invalid email format', 400)
    problem = check_new_password(password, data.get('passwordConfirm'))
    if problem:
        return err(problem, 400)
    if store.find_user_by_email(email):
        return err('Email already registered', 409)

    uid = gen_id('usr')
    store.users[uid] = {
        'id': uid,
        'name': name or email.split('@')[0],
        'email': email,
        'password': tokens.hash_password(password),
        'role': 'user',
        'phone': '',
        'avatar': None,
        'isEmailVerified': False,
        'twoFactorEnabled': False,
        'twoFactorSecret': None,
        'active': True,
        'lastLogin': None,
        'createdAt': now_iso(),
        'updatedAt': now_iso()
    }
    user = store.users[uid]

    verification = tokens.issue_email_token(user, current_app.config['SECRET_KEY'])
    send_notification(uid, 'verify_email', f'Welcome to CustomForge, {user["name"]}!',
                      {'token': verification, 'url': f'{API}/auth/verify-email/{verification}'})
    log_action('register', uid)

    return with_cookies(created({
        'user': store.safe_user(user),
        'message': 'User registered successfully. Please check your email to verify your account.'
    }), **{config.USER_COOKIE: store.safe_user(user)})


@app.route(f'{API}/auth/login', methods=['POST'])
def login():
    data = body()
    email = str(data.get('email', '')).strip().lower()
    password = data.get('password', '')

    if not email or not password:
        return err('Please provide email and password', 400)

    fl = store.failed_logins.get(email)
    if fl and fl['count'] >= config.FAILED_LOGIN_LIMIT:
        lockout_until = datetime.fromisoformat(fl['last_attempt']) + timedelta(minutes=config.LOCKOUT_MINUTES)
        if datetime.now() < lockout_until:
            remaining = max(1, (lockout_until - datetime.now()).seconds // 60)
            return err(f'Too many login attempts. Try again in {remaining} minutes', 429)
        del store.failed_logins[email]

    user = store.find_user_by_email(email)
    if not user or not tokens.check_password(password, user['password']):
        _record_failed_login(email)
        log_action('login_failed', data={'email': email}, level='warning')
        return err('Incorrect email or password', 401)

    if not user.get('active', True):
        return err('Account is deactivated. Contact support.', 403)

    if current_app.config.get('REQUIRE_EMAIL_VERIFICATION') and not user.get('isEmailVerified'):
        return err('Please verify your email first', 403)

    if user.get('twoFactorEnabled'):
        code = data.get('twoFactorToken') or request.headers.get('X-2FA-Token')
        if not code:
            return err('Two-factor authentication token is required for this account', 401,
                       headers={'X-2FA-Required': 'true'})
        if not tokens.verify_totp(user.get('twoFactorSecret'), code):
            _record_failed_login(email)
            return err('Invalid two-factor authentication token', 401,
                       headers={'X-2FA-Required': 'true'})

    store.failed_logins.pop(email, None)
    log_action('login', user['id'])
    return session_response(user)


@app.route(f'{API}/auth/logout', methods=['GET', 'POST'])
def logout():
    user = get_auth_user()
    resp, status = ok({'message': 'Logged out successfully'})
    clear_cookie(resp, config.USER_COOKIE)
    clear_cookie(resp, config.REFRESH_COOKIE)
    log_action('logout', user['id'] if user else None)
    return resp, status


@app.route(f'{API}/auth/refresh', methods=['POST'])
def refresh():
    token = request.cookies.get(config.REFRESH_COOKIE) or body().get('refreshToken')
    if not token:
        return err('Not authenticated', 401)
    try:
        payload = tokens.read_refresh_token(token, current_app.config['SECRET_KEY'])
    except tokens.TokenError as e:
        return err(str(e), 401)

    user = store.users.get(payload.get('uid'))
    if not user or not user.get('active', True):
        return err('User not found or inactive', 401)

    log_action('token_refresh', user['id'])
    return session_response(user)


@app.route(f'{API}/auth/verify-email/<token>', methods=['GET'])
def verify_email(token):
    try:
        payload = tokens.read_email_token(token, current_app.config['SECRET_KEY'])
    except tokens.TokenError:
        return err('Token is invalid or has expired', 400)

    user = store.users.get(payload.get('uid'))
    if not user or user['email'] != payload.get('email'):
        return err('Token is invalid or has expired', 400)

    user['isEmailVerified'] = True
    user['updatedAt'] = now_iso()
    log_action('verify_email', user['id'])
    return session_response(user, message='Email verified successfully')


@app.route(f'{API}/auth/send-verification-email', methods=['POST'])
@login_required
def send_verification_email():
    user = get_auth_user()
    if user.get('isEmailVerified'):
        return err('Email already verified', 400)
    verification = tokens.issue_email_token(user, current_app.config['SECRET_KEY'])
    send_notification(user['id'], 'verify_email', 'Verify your CustomForge email',
                      {'token': verification, 'url': f'{API}/auth/verify-email/{verification}'})
    return ok({'message': 'Verification email sent successfully'})


@app.route(f'{API}/auth/forgot-password', methods=['POST'])
def forgot_password():
    email = str(body().get('email', '')).strip().lower()
    user = store.find_user_by_email(email)
    if not user:
        return err('No user with that email', 404)

    reset = tokens.issue_reset_token(user, current_app.config['SECRET_KEY'])
    send_notification(user['id'], 'password_reset', 'Reset your CustomForge password',
                      {'token': reset, 'url': f'/reset-password/{reset}'})
    log_action('forgot_password', user['id'])
    return ok({'message': 'Password reset token sent to email'})


@app.route(f'{API}/auth/reset-password/<token>', methods=['POST'])
def reset_password(token):
    try:
        payload = tokens.read_reset_token(token, current_app.config['SECRET_KEY'])
    except tokens.TokenError:
        return err('Token is invalid or has expired', 400)

    user = store.users.get(payload.get('uid'))
    # a used token no longer matches the stored hash
    if not user or user['password'][-8:] != payload.get('pw'):
        return err('Token is invalid or has expired', 400)

    data = body()
    problem = check_new_password(data.get('password'), data.get('passwordConfirm', ''))
    if problem:
        return err(problem, 400)

    user['password'] = tokens.hash_password(data['password'])
    user['passwordChangedAt'] = now_iso()
    store.failed_logins.pop(user['email'], None)
    log_action('reset_password', user['id'])
    return session_response(user, message='Password reset successful')


@app.route(f'{API}/auth/update-password', methods=['PATCH'])
@login_required
def update_password():
    user = get_auth_user()
    data = body()
    current = data.get('passwordCurrent')
    if not current or not data.get('password') or not data.get('passwordConfirm'):
        return err('Please provide current password, new password and passwordConfirm', 400)
    if not tokens.check_password(current, user['password']):
        return err('Your current password is wrong.', 401)
    problem = check_new_password(data['password'], data['passwordConfirm'])
    if problem:
        return err(problem, 400)

    user['password'] = tokens.hash_password(data['password'])
    user['passwordChangedAt'] = now_iso()
    log_action('update_password', user['id'])
    return session_response(user, message='Password updated successfully')


@app.route(f'{API}/auth/2fa/enable', methods=['POST'])
@login_required
def enable_two_factor():
    user = get_auth_user()
    password = body().get('password')
    if not password:
        return err('Password is required to enable two-factor authentication', 400)
    if not tokens.check_password(password, user['password']):
        return err('Incorrect password', 401)

    secret = tokens.generate_totp_secret()
    user['twoFactorSecret'] = secret
    user['twoFactorEnabled'] = False
    log_action('2fa_secret_issued', user['id'])
    return ok({'secret': secret, 'otpauthUrl': tokens.otpauth_url(secret, user['email'])})


@app.route(f'{API}/auth/2fa/verify', methods=['POST'])
@login_required
def verify_two_factor():
    user = get_auth_user()
    code = body().get('token')
    if not code:
        return err('Verification token is required', 400)
    if not user.get('twoFactorSecret'):
        return err('2FA is not initialized for this user', 400)
    if not tokens.verify_totp(user['twoFactorSecret'], code):
        return err('Invalid verification code', 400)

    user['twoFactorEnabled'] = True
    user['updatedAt'] = now_iso()
    log_action('2fa_enabled', user['id'])
    return with_cookies(ok({'message': 'Two-factor authentication enabled successfully', 'verified': True}),
                        **{config.USER_COOKIE: store.safe_user(user)})


@app.route(f'{API}/auth/2fa/disable', methods=['DELETE'])
@login_required
def disable_two_factor():
    user = get_auth_user()
    data = body()
    if not data.get('password') or not data.get('token'):
        return err('Password and two-factor token are required to disable 2FA', 400)
    if not tokens.check_password(data['password'], user['password']):
        return err('Incorrect password', 401)
    if not tokens.verify_totp(user.get('twoFactorSecret'), data['token']):
        return err('Invalid verification code', 400)

    user['twoFactorEnabled'] = False
    user['twoFactorSecret'] = None
    user['updatedAt'] = now_iso()
    log_action('2fa_disabled', user['id'])
    return with_cookies(ok({'message': 'Two-factor authentication disabled successfully'}),
                        **{config.USER_COOKIE: store.safe_user(user)})


# ---------- USERS ----------

@app.route(f'{API}/users/me', methods=['GET'])
@login_required
def get_me():
    return ok({'user': store.safe_user(get_auth_user())})


@app.route(f'{API}/users/update-me', methods=['PATCH'])
@login_required
def update_me():
    user = get_auth_user()
    data = body()
    if 'password' in data or 'passwordConfirm' in data:
        return err('This route is not for password updates. Please use /auth/update-password.', 400)

    # fields that can be updated
    if 'name' in data:
        name = str(data['name']).strip()
        if not name:
            return err('Name cannot be empty', 400)
        user['name'] = name
    if 'phone' in data:
        user['phone'] = str(data['phone'] or '').strip()
    if 'avatar' in data:
        user['avatar'] = data['avatar']
    user['updatedAt'] = now_iso()

    log_action('update_profile', user['id'])
    return with_cookies(ok({'user': store.safe_user(user)}), **{config.USER_COOKIE: store.safe_user(user)})


@app.route(f'{API}/users/delete-me', methods=['DELETE'])
@login_required
def delete_me():
    user = get_auth_user()
    user['active'] = False
    user['updatedAt'] = now_iso()
    log_action('delete_account', user['id'], level='warning')

    resp, status = ok({'message': 'Account deleted'})
    for key in (config.USER_COOKIE, config.REFRESH_COOKIE, config.CART_COOKIE, config.WISHLIST_COOKIE,
                config.ADDRESSES_COOKIE, config.METHODS_COOKIE, config.ORDERS_COOKIE):
        clear_cookie(resp, key)
    return resp, status


@app.route(f'{API}/users/wishlist', methods=['GET'])
def user_wishlist():
    items = []
    for entry in load_wishlist():
        product = store.products.get(entry['productId'])
        items.append({
            'id': f"w_{entry['productId']}",
            'productId': entry['productId'],
            'product': public_product(product) if product else None,
            'addedAt': entry['addedAt']
        })
    return ok({'items': items})


@app.route(f'{API}/users/orders', methods=['GET'])
def user_orders():
    return ok({'items': load_orders()})


# addresses

ADDRESS_FIELDS = ['label', 'name', 'line1', 'line2', 'city', 'state', 'postalCode', 'country', 'phone']
ADDRESS_REQUIRED = ['line1', 'city', 'postalCode', 'country']


@app.route(f'{API}/users/addresses', methods=['GET'])
def list_addresses():
    return ok({'items': load_list_cookie(config.ADDRESSES_COOKIE)})


@app.route(f'{API}/users/addresses', methods=['POST'])
def add_address():
    data = body()
    missing = [f for f in ADDRESS_REQUIRED if not str(data.get(f) or '').strip()]
    if missing:
        return err('Missing required address fields', 400, {'missing': missing})

    addresses = load_list_cookie(config.ADDRESSES_COOKIE)
    address = {'id': gen_id('addr')}
    for field in ADDRESS_FIELDS:
        address[field] = str(data.get(field) or '').strip()
    address['label'] = address['label'] or 'Home'
    address['isDefault'] = bool(data.get('isDefault')) or not addresses
    address['createdAt'] = now_iso()

    # if this is default, unset other defaults
    if address['isDefault']:
        for a in addresses:
            a['isDefault'] = False
    addresses.append(address)

    return with_cookies(created({'address': address}), **{config.ADDRESSES_COOKIE: addresses})


def _find_by_id(items, item_id):
    for item in items:
        if item['id'] == item_id:
            return item
    return None


@app.route(f'{API}/users/addresses/<aid>', methods=['PATCH'])
def update_address(aid):
    addresses = load_list_cookie(config.ADDRESSES_COOKIE)
    address = _find_by_id(addresses, aid)
    if not address:
        return err('Address not found', 404)

    data = body()
    for field in ADDRESS_FIELDS:
        if field in data:
            value = str(data[field] or '').strip()
            if field in ADDRESS_REQUIRED and not value:
                return err(f'{field} cannot be empty', 400)
            address[field] = value
    if data.get('isDefault'):
        for a in addresses:
            a['isDefault'] = a is address

    return with_cookies(ok({'address': address}), **{config.ADDRESSES_COOKIE: addresses})


@app.route(f'{API}/users/addresses/<aid>/default', methods=['PATCH'])
def set_default_address(aid):
    addresses = load_list_cookie(config.ADDRESSES_COOKIE)
    address = _find_by_id(addresses, aid)
    if not address:
        return err('Address not found', 404)
    for a in addresses:
        a['isDefault'] = a is address
    return with_cookies(ok({'address': address}), **{config.ADDRESSES_COOKIE: addresses})


@app.route(f'{API}/users/addresses/<aid>', methods=['DELETE'])
def delete_address(aid):
    addresses = load_list_cookie(config.ADDRESSES_COOKIE)
    address = _find_by_id(addresses, aid)
    if not address:
        return err('Address not found', 404)
    addresses.remove(address)
    if address.get('isDefault') and addresses:
        addresses[0]['isDefault'] = True
    return with_cookies(ok({'message': 'Address deleted'}), **{config.ADDRESSES_COOKIE: addresses})


# payment methods

def _build_payment_method(data):
    """Returns (method, error). Raw card numbers are reduced to brand + last4."""
    now = datetime.now()
    try:
        exp_month = int(12 if data.get('expMonth') is None else data['expMonth'])
        exp_year = int(now.year + 3 if data.get('expYear') is None else data['expYear'])
    except (TypeError, ValueError):
        return None, 'Invalid expiry date'
    if exp_month < 1 or exp_month > 12:
        return None, 'Invalid expiry month'
    if (exp_year, exp_month) < (now.year, now.month):
        return None, 'Card has expired'

    card_number = data.get('cardNumber')
    if card_number:
        if not pricing.luhn_valid(card_number):
            return None, 'Invalid card number'
        brand = pricing.card_brand(card_number)
        last4 = pricing.mask_card(card_number)[-4:]
    else:
        brand = str(data.get('brand') or 'visa').lower()
        last4 = str(data.get('last4') or '4242')
        if len(last4) != 4 or not last4.isdigit():
            return None, 'last4 must be 4 digits'

    return {
        'id': gen_id('pm'),
        'type': 'card',
        'brand': brand,
        'last4': last4,
        'expMonth': exp_month,
        'expYear': exp_year,
        'isDefault': False,
        'createdAt': now_iso()
    }, None


@app.route(f'{API}/users/payment-methods', methods=['GET'])
@app.route(f'{API}/payment/payment-methods', methods=['GET'])
def list_payment_methods():
    return ok({'items': load_list_cookie(config.METHODS_COOKIE)})


@app.route(f'{API}/users/payment-methods', methods=['POST'])
@app.route(f'{API}/payment/payment-methods', methods=['POST'])
def add_payment_method():
    methods = load_list_cookie(config.METHODS_COOKIE)
    method, problem = _build_payment_method(body())
    if problem:
        return err(problem, 400)
    if not methods or body().get('isDefault'):
        for m in methods:
            m['isDefault'] = False
        method['isDefault'] = True
    methods.insert(0, method)
    log_action('add_payment_method', data={'brand': method['brand'], 'last4': method['last4']})
    return with_cookies(created({'method': method}), **{config.METHODS_COOKIE: methods})


@app.route(f'{API}/users/payment-methods/<mid>', methods=['PATCH'])
def update_payment_method(mid):
    methods = load_list_cookie(config.METHODS_COOKIE)
    method = _find_by_id(methods, mid)
    if not method:
        return err('Payment method not found', 404)

    data = body()
    merged, problem = _build_payment_method({
        'brand': method['brand'], 'last4': method['last4'],
        'expMonth': data.get('expMonth', method['expMonth']),
        'expYear': data.get('expYear', method['expYear'])
    })
    if problem:
        return err(problem, 400)
    method['expMonth'] = merged['expMonth']
    method['expYear'] = merged['expYear']
    return with_cookies(ok({'method': method}), **{config.METHODS_COOKIE: methods})


@app.route(f'{API}/users/payment-methods/<mid>/default', methods=['PATCH'])
def set_default_payment_method(mid):
    methods = load_list_cookie(config.METHODS_COOKIE)
    method = _find_by_id(methods, mid)
    if not method:
        return err('Payment method not found', 404)
    for m in methods:
        m['isDefault'] = m is method
    return with_cookies(ok({'method': method}), **{config.METHODS_COOKIE: methods})


@app.route(f'{API}/users/payment-methods/<mid>', methods=['DELETE'])
def delete_payment_method(mid):
    methods = load_list_cookie(config.METHODS_COOKIE)
    method = _find_by_id(methods, mid)
    if not method:
        return err('Payment method not found', 404)
    methods.remove(method)
    if method.get('isDefault') and methods:
        methods[0]['isDefault'] = True
    return with_cookies(ok({'message': 'Payment method deleted'}), **{config.METHODS_COOKIE: methods})


# ---------- PRODUCTS ----------

@app.route(f'{API}/products', methods=['GET'])
def list_products():
    filtered = pricing.filter_products(store.products.values(), request.args)
    filtered = pricing.sort_products(filtered, request.args.get('sort'))
    page, limit = pricing.page_params(request.args)
    result = pricing.paginate([public_product(p) for p in filtered], page, limit)

    catalogue = active_products()
    result['categories'] = sorted(set(p['category'] for p in catalogue))
    result['brands'] = sorted(set(p['brand'] for p in catalogue))
    return ok(result)


@app.route(f'{API}/products/featured', methods=['GET'])
def featured_products():
    return ok({'items': [public_product(p) for p in active_products() if p.get('isFeatured')]})


@app.route(f'{API}/products/top', methods=['GET'])
def top_products():
    top = pricing.sort_products(active_products(), 'popular')[:config.TOP_LIMIT]
    return ok({'items': [public_product(p) for p in top]})


@app.route(f'{API}/products/categories', methods=['GET'])
def product_categories():
    return ok({'items': sorted(set(p['category'] for p in active_products()))})


@app.route(f'{API}/products/search', methods=['GET'])
def search_products():
    q = request.args.get('q', '').strip()
    if not q:
        return ok({'items': []})
    found = pricing.filter_products(store.products.values(), {'q': q})
    return ok({'items': [public_product(p) for p in found]})


@app.route(f'{API}/products/category/<category>', methods=['GET'])
def products_by_category(category):
    found = pricing.filter_products(store.products.values(), {'category': category})
    return ok({'items': [public_product(p) for p in found]})


@app.route(f'{API}/products/wishlist', methods=['GET'])
def wishlist_products():
    ids = [e['productId'] for e in load_wishlist()]
    return ok({'items': [public_product(store.products[pid]) for pid in ids if pid in store.products]})


def _get_active_product(pid):
    product = store.products.get(pid)
    if not product or not product.get('isActive', True):
        return None
    return product


@app.route(f'{API}/products/<pid>', methods=['GET'])
def get_product(pid):
    product = _get_active_product(pid)
    if not product:
        return err('Product not found', 404)
    return ok({'item': public_product(product)})


@app.route(f'{API}/products/<pid>/related', methods=['GET'])
def related_products(pid):
    product = _get_active_product(pid)
    if not product:
        return err('Product not found', 404)
    related = [p for p in active_products()
               if p['category'] == product['category'] and p['id'] != pid]
    return ok({'items': [public_product(p) for p in related[:config.RELATED_LIMIT]]})


@app.route(f'{API}/products/<pid>/reviews', methods=['GET'])
def product_reviews(pid):
    if pid not in store.products:
        return err('Product not found', 404)
    approved = [r for r in store.reviews.values() if r['productId'] == pid and r['status'] == 'approved']
    approved.sort(key=lambda r: r.get('createdAt', ''), reverse=True)
    return ok({'items': approved})


@app.route(f'{API}/products/<pid>/reviews', methods=['POST'])
def add_product_review(pid):
    if not _get_active_product(pid):
        return err('Product not found', 404)

    data = body()
    try:
        rating = int(data.get('rating') or 0)
    except (TypeError, ValueError):
        rating = 0
    if rating < 1 or rating > 5:
        return err('Rating must be between 1-5', 400)
    comment = str(data.get('comment') or '').strip()
    if len(comment) > config.REVIEW_MAX_LENGTH:
        return err(f'Review cannot exceed {config.REVIEW_MAX_LENGTH} characters', 400)

    user = require_auth()
    if not user:
        return err('Not authenticated', 401)

    rid = gen_id('rev')
    store.reviews[rid] = {
        'id': rid,
        'productId': pid,
        'userId': user['id'],
        'user': user.get('name') or 'Anonymous',
        'rating': rating,
        'comment': comment,
        'status': 'pending',  # needs moderation
        'createdAt': now_iso()
    }
    log_action('add_review', user['id'], {'productId': pid, 'rating': rating})
    return created({'review': store.reviews[rid]})


@app.route(f'{API}/products/<pid>/wishlist', methods=['POST'])
def add_to_wishlist(pid):
    if not _get_active_product(pid):
        return err('Product not found', 404)
    entries = load_wishlist()
    if not any(e['productId'] == pid for e in entries):
        entries.append({'productId': pid, 'addedAt': now_iso()})
    return with_cookies(ok({'message': 'Added to wishlist', 'count': len(entries)}),
                        **{config.WISHLIST_COOKIE: entries})


@app.route(f'{API}/products/<pid>/wishlist', methods=['DELETE'])
def remove_from_wishlist(pid):
    entries = [e for e in load_wishlist() if e['productId'] != pid]
    return with_cookies(ok({'message': 'Removed from wishlist', 'count': len(entries)}),
                        **{config.WISHLIST_COOKIE: entries})


# ---------- CART ----------

@app.route(f'{API}/cart', methods=['GET'])
def get_cart():
    return cart_response(load_cart())


@app.route(f'{API}/cart', methods=['POST'])
def replace_cart():
    data = body()
    items = data.get('items') or []
    if not isinstance(items, list):
        return err('items must be a list', 400)

    merged = {}
    for item in items:
        if not isinstance(item, dict) or not item.get('productId'):
            return err('Each item needs a productId', 400)
        try:
            qty = int(item.get('quantity', 1))
        except (TypeError, ValueError):
            return err('Quantity must be a number', 400)
        if qty <= 0:
            continue
        pid = str(item['productId'])
        merged[pid] = merged.get(pid, 0) + qty

    cart = {
        'items': [{'productId': pid, 'quantity': qty} for pid, qty in merged.items()],
        'couponCode': pricing.normalize_code(data.get('couponCode')) or None
    }
    return cart_response(cart, 201)


@app.route(f'{API}/cart', methods=['DELETE'])
def clear_cart():
    resp, status = ok({'message': 'Cart cleared'})
    set_json_cookie(resp, config.CART_COOKIE, {'items': [], 'couponCode': None})
    return resp, status


@app.route(f'{API}/cart/items', methods=['POST'])
def add_to_cart():
    data = body()
    pid = data.get('productId')
    try:
        qty = int(data.get('quantity', 1))
    except (TypeError, ValueError):
        return err('Quantity must be a number', 400)

    product = store.products.get(pid)
    if not product:
        return err('Product not found', 404)
    if not product.get('isActive', True):
        return err('This product is no longer available', 400)
    if qty < 1:
        return err('Quantity must be at least 1', 400)

    cart = load_cart()
    line = next((i for i in cart['items'] if i['productId'] == pid), None)
    new_qty = qty + (line['quantity'] if line else 0)

    if new_qty > config.MAX_QTY_PER_LINE:
        return err(f'Cannot have more than {config.MAX_QTY_PER_LINE} of this item', 400)
    if product['availability'] != 'Preorder' and product['stock'] < new_qty:
        return err('Insufficient stock', 400, {'available': product['stock']})

    if line:
        line['quantity'] = new_qty
    else:
        cart['items'].append({'productId': pid, 'quantity': qty})

    return cart_response(cart, message='Added to cart')


@app.route(f'{API}/cart/<pid>', methods=['PATCH'])
def update_cart_item(pid):
    try:
        qty = int(body().get('quantity', 0))
    except (TypeError, ValueError):
        return err('Quantity must be a number', 400)

    cart = load_cart()
    if qty <= 0:
        cart['items'] = [i for i in cart['items'] if i['productId'] != pid]
        return cart_response(cart)

    if qty > config.MAX_QTY_PER_LINE:
        return err(f'Maximum {config.MAX_QTY_PER_LINE} per item', 400)
    line = next((i for i in cart['items'] if i['productId'] == pid), None)
    if line:
        line['quantity'] = qty
    else:
        cart['items'].append({'productId': pid, 'quantity': qty})
    return cart_response(cart)


@app.route(f'{API}/cart/<pid>', methods=['DELETE'])
def remove_cart_item(pid):
    cart = load_cart()
    cart['items'] = [i for i in cart['items'] if i['productId'] != pid]
    return cart_response(cart)


@app.route(f'{API}/cart/coupon', methods=['POST'])
def apply_coupon():
    data = body()
    code = pricing.normalize_code(data.get('code') or data.get('couponCode'))
    if not code:
        return err('Coupon code is required', 400)

    cart = load_cart()
    if not cart['items']:
        return err('Cannot apply coupon to an empty cart', 400)

    if not pricing.find_active_coupon(store.coupons, code):
        return err('Invalid or expired coupon', 400)

    totals = pricing.cart_totals({**cart, 'couponCode': code}, store.products, store.coupons)
    if totals['couponError']:
        return err(f"Coupon cannot be applied: {totals['couponError']}", 400)

    cart['couponCode'] = code
    log_action('apply_coupon', data={'code': code})
    return cart_response(cart, message='Coupon applied to cart')


@app.route(f'{API}/cart/coupon', methods=['DELETE'])
def remove_coupon():
    cart = load_cart()
    cart['couponCode'] = None
    return cart_response(cart, message='Coupon removed from cart')


# ---------- ORDERS ----------

@app.route(f'{API}/orders', methods=['GET'])
def list_orders():
    return ok({'items': load_orders()})


def _resolve_address(data):
    """(address, error) from addressId, an inline address, or the default one"""
    addresses = load_list_cookie(config.ADDRESSES_COOKIE)
    if data.get('addressId'):
        address = _find_by_id(addresses, data['addressId'])
        if not address:
            return None, 'Address not found'
        return address, None
    inline = data.get('address')
    if isinstance(inline, dict):
        missing = [f for f in ADDRESS_REQUIRED if not str(inline.get(f) or '').strip()]
        if missing:
            return None, f"Address is missing {', '.join(missing)}"
        return {f: str(inline.get(f) or '').strip() for f in ADDRESS_FIELDS}, None
    return next((a for a in addresses if a.get('isDefault')), None), None


@app.route(f'{API}/orders', methods=['POST'])
def create_order():
    data = body()
    cart = load_cart()

    raw_items = data.get('items') or cart['items']
    merged = {}
    for item in raw_items:
        try:
            qty = int(item.get('quantity', 0))
        except (TypeError, ValueError, AttributeError):
            return err('Invalid order item', 400)
        if qty <= 0:
            return err('Quantity must be at least 1', 400)
        # repeated lines for one product are checked against stock as one
        pid = str(item.get('productId'))
        merged[pid] = merged.get(pid, 0) + qty
    items = [{'productId': pid, 'quantity': qty} for pid, qty in merged.items()]

    if not items:
        return err('Cart is empty', 400)

    # validate stock
    for item in items:
        product = store.products.get(item['productId'])
        if not product or not product.get('isActive', True):
            return err(f"Product {item['productId']} is not available", 400)
        if product['availability'] != 'Preorder' and product['stock'] < item['quantity']:
            return err(f"Insufficient stock for {product['name']}", 400,
                       {'productId': product['id'], 'available': product['stock']})

    address, problem = _resolve_address(data)
    if problem:
        return err(problem, 400)

    payment_method_id = data.get('paymentMethodId')
    if payment_method_id and not _find_by_id(load_list_cookie(config.METHODS_COOKIE), payment_method_id):
        return err('Payment method not found', 400)

    coupon_code = pricing.normalize_code(data['couponCode'] if 'couponCode' in data else cart['couponCode'])
    totals = pricing.cart_totals({'items': items, 'couponCode': coupon_code or None},
                                 store.products, store.coupons)
    if totals['couponError']:
        return err(f"Coupon cannot be applied: {totals['couponError']}", 400)

    oid = gen_id('ord')
    order = {
        'id': oid,
        'userId': order_owner(),
        'items': [
            {'productId': l['productId'], 'name': l['name'], 'price': l['unitPrice'], 'quantity': l['quantity']}
            for l in totals['items']
        ],
        'address': address,
        'paymentMethodId': payment_method_id,
        'couponCode': totals['coupon']['code'] if totals['coupon'] else None,
        'subtotal': totals['subtotal'],
        'discount': totals['discount'],
        'total': totals['total'],
        'status': 'pending',
        'isPaid': False,
        'paidAt': None,
        'deliveredAt': None,
        'statusHistory': [],
        'createdAt': now_iso(),
        'updatedAt': now_iso()
    }

    store.orders[oid] = order
    deduct_stock(order['items'], oid)
    if order['couponCode']:
        store.coupons[order['couponCode']]['timesUsed'] += 1

    log_action('create_order', order['userId'], {'orderId': oid, 'total': order['total']})
    send_notification(order['userId'], 'order_created', f'Your order {oid} has been created', {'orderId': oid})

    resp, status = created({'order': order})
    save_orders(resp, [order] + load_orders())
    set_json_cookie(resp, config.CART_COOKIE, {'items': [], 'couponCode': None})
    return resp, status


@app.route(f'{API}/orders/<oid>', methods=['GET'])
def get_order(oid):
    order = find_order(oid)
    if not order:
        return err('Order not found', 404)
    return ok({'order': order})


@app.route(f'{API}/orders/<oid>/payment-status', methods=['GET'])
def order_payment_status(oid):
    order = find_order(oid)
    if not order:
        return err('Order not found', 404)
    paid = order.get('isPaid') or order['status'] in ('paid', 'shipped', 'delivered')
    return ok({'status': 'paid' if paid else 'pending'})


def _update_customer_order(oid, mutate, **extra):
    orders = load_orders()
    order = next((o for o in orders if o['id'] == oid), None)
    if not order:
        return err('Order not found', 404)
    problem = mutate(order)
    if problem:
        return err(problem, 400)
    if oid in store.orders:
        store.orders[oid] = order
    resp, status = ok({**extra, 'order': order})
    save_orders(resp, orders)
    return resp, status


@app.route(f'{API}/orders/<oid>/cancel', methods=['PUT'])
def cancel_order(oid):
    reason = body().get('reason') or 'Customer requested cancellation'

    def cancel(order):
        # can only cancel pending or paid orders
        if order['status'] not in ('pending', 'paid'):
            return 'Order cannot be cancelled'
        # stock was only ever deducted for orders placed against this server
        if oid in store.orders:
            restore_stock(order['items'], oid)
        set_order_status(order, 'cancelled', 'customer')
        order['cancelReason'] = reason
        log_action('cancel_order', order.get('userId'), {'orderId': oid, 'reason': reason})
        return None

    return _update_customer_order(oid, cancel)


@app.route(f'{API}/orders/<oid>/return', methods=['POST'])
def request_return(oid):
    reason = body().get('reason') or 'Customer requested return'

    def request_it(order):
        if order['status'] != 'delivered':
            return 'Only delivered orders can be returned'
        set_order_status(order, 'returned', 'customer')
        order['returnStatus'] = 'requested'
        order['returnReason'] = reason
        log_action('request_return', order.get('userId'), {'orderId': oid, 'reason': reason})
        return None

    return _update_customer_order(oid, request_it)


# ---------- PAYMENT ----------

@app.route(f'{API}/payment/create-intent', methods=['POST'])
def create_payment_intent():
    data = body()
    order = None
    if data.get('orderId'):
        order = find_order(data['orderId'])
        if not order:
            return err('Order not found', 404)
        amount = int(round(order['total'] * 100))
    else:
        try:
            amount = int(data.get('amount') or 0)
        except (TypeError, ValueError):
            return err('Amount must be an integer number of cents', 400)
    if amount < 0:
        return err('Amount cannot be negative', 400)

    intent_id = f"pi_{secrets.token_hex(12)}"
    intent = {
        'id': intent_id,
        'clientSecret': f"{intent_id}_secret_{secrets.token_hex(8)}",
        'amount': amount,
        'currency': str(data.get('currency') or 'usd').lower(),
        'status': 'requires_payment_method',
        'orderId': order['id'] if order else None
    }
    if order and order['id'] in store.orders:
        store.orders[order['id']]['paymentIntentId'] = intent_id
    return created({'intent': intent})


@app.route(f'{API}/payment/process', methods=['POST'])
def process_payment():
    data = body()
    oid = data.get('orderId')
    method_id = data.get('paymentMethodId')
    if method_id and not _find_by_id(load_list_cookie(config.METHODS_COOKIE), method_id):
        return err('Payment method not found', 400)

    def pay(order):
        if order['status'] != 'pending' or order.get('isPaid'):
            return 'Order cannot be paid'
        mark_paid(order, 'customer', method_id)
        log_action('pay_order', order.get('userId'), {'orderId': oid})
        send_notification(order.get('userId'), 'payment_received', f'Payment received for order {oid}',
                          {'orderId': oid})
        return None

    return _update_customer_order(oid, pay, status='succeeded')


@app.route(f'{API}/payment/webhook', methods=['POST'])
def payment_webhook():
    data = body()
    event = data.get('type')
    payload = data.get('data') or {}
    oid = payload.get('orderId')

    order = store.orders.get(oid)
    if event == 'payment_intent.succeeded' and order and order['status'] == 'pending':
        mark_paid(order, 'webhook')
        log_action('webhook_payment', order['userId'], {'orderId': oid, 'event': event})
    else:
        log_action('webhook_ignored', data={'orderId': oid, 'event': event})
    return ok({'received': True})


# ============== ERROR HANDLERS ==============

@app.errorhandler(404)
def not_found(e):
    return err('Not found', 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return err('Method not allowed', 405)


@app.errorhandler(Exception)
def handle_exception(e):
    if isinstance(e, HTTPException):
        return err(e.description, e.code)
    # in debug mode, let it bubble up
    if app.debug:
        raise e
    logger.exception('unhandled error on %s %s', request.method, request.path)
    log_action('unhandled_error', data={'error': str(e), 'type': type(e).__name__, 'path': request.path},
               level='error', type='error')
    return err('Internal server error', 500)


@app.after_request
def record_access(response):
    if request.path.startswith(API):
        level = 'error' if response.status_code >= 500 else 'warning' if response.status_code >= 400 else 'info'
        user = get_auth_user() if request.endpoint else None
        log_action('request', user['id'] if user else None, {
            'method': request.method,
            'path': request.path,
            'status': response.status_code
        }, level=level, type='access')
    return response


# ============== STARTUP ==============

store.init_data()


def main():
    logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    logger.info('CustomForge mock API: %d products, %d coupons', len(store.products), len(store.coupons))
    app.run(host=config.HOST, port=config.PORT, debug=config.DEBUG)


if __name__ == '__main__':
    main()
