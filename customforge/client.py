"""
Python client for the CustomForge API.

ApiClient wraps a requests.Session (the session's cookie jar plays the part
of the browser's cookies) and unwraps the {"data"} / {"error"} envelope.
AuthClient drives login, the 2FA challenge and token refresh on top of it.
CartStore and WishlistStore are local state a UI keeps between calls.
"""
import json
import logging

import requests

from customforge import config, pricing

logger = logging.getLogger('customforge.client')

DEFAULT_BASE_URL = f'http://localhost:{config.PORT}'
TWO_FACTOR_HEADER = 'X-2FA-Required'


class ApiError(Exception):
    def __init__(self, message, status=0, details=None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details


class AuthError(ApiError):
    pass


class TwoFactorRequired(AuthError):
    """Password accepted; the account wants a TOTP code before issuing a session."""


class ApiResponse:
    def __init__(self, data=None, error=None, status=0, headers=None):
        self.data = data
        self.error = error
        self.status = status
        self.headers = headers or {}

    @property
    def ok(self):
        return self.error is None

    def __repr__(self):
        return f'<ApiResponse status={self.status} ok={self.ok}>'


class AuthStore:
    """Where the current access token and user live between requests."""

    def __init__(self):
        self.access_token = None
        self.user = None
        self.requires_two_factor = False

    def set_token(self, token):
        self.access_token = token

    def set_user(self, user):
        self.user = user

    def set_requires_two_factor(self, value):
        self.requires_two_factor = bool(value)

    def clear_auth(self):
        self.access_token = None
        self.user = None
        self.requires_two_factor = False

    @property
    def is_authenticated(self):
        return self.access_token is not None


class ApiClient:
    def __init__(self, base_url=DEFAULT_BASE_URL, session=None, auth_store=None, timeout=10):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.auth = auth_store or AuthStore()
        self.timeout = timeout

    def url(self, path):
        return f"{self.base_url}{config.API_PREFIX}/{path.lstrip('/')}"

    def _send(self, method, path, json=None, params=None, headers=None):
        headers = dict(headers or {})
        if self.auth.access_token:
            headers['Authorization'] = f'Bearer {self.auth.access_token}'
        try:
            resp = self.session.request(method, self.url(path), json=json, params=params,
                                        headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning('%s %s failed: %s', method, path, e)
            return ApiResponse(error=ApiError(f'Network error: {e}', 0), status=0)

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if resp.status_code >= 400:
            message = payload.get('error') or payload.get('message') or f'Request failed ({resp.status_code})'
            error = ApiError(message, resp.status_code, payload.get('details'))
            return ApiResponse(error=error, status=resp.status_code, headers=resp.headers)
        return ApiResponse(data=payload.get('data'), status=resp.status_code, headers=resp.headers)

    def request(self, method, path, json=None, params=None, headers=None):
        result = self._send(method, path, json, params, headers)
        # one silent refresh, never for the auth endpoints themselves
        if result.status == 401 and not path.lstrip('/').startswith('auth/'):
            if self.refresh():
                result = self._send(method, path, json, params, headers)
        return result

    def refresh(self):
        result = self._send('POST', '/auth/refresh')
        if not result.ok:
            logger.info('token refresh failed: %s', result.error)
            self.auth.clear_auth()
            return False
        self.auth.set_token(result.data['token'])
        self.auth.set_user(result.data.get('user'))
        return True

    def get(self, path, params=None):
        return self.request('GET', path, params=params)

    def post(self, path, json=None):
        return self.request('POST', path, json=json)

    def put(self, path, json=None):
        return self.request('PUT', path, json=json)

    def patch(self, path, json=None):
        return self.request('PATCH', path, json=json)

    def delete(self, path, json=None):
        return self.request('DELETE', path, json=json)


class AuthClient:
    """Login state machine: anonymous -> two_factor_required -> authenticated."""

    ANONYMOUS = 'anonymous'
    TWO_FACTOR_REQUIRED = 'two_factor_required'
    AUTHENTICATED = 'authenticated'

    def __init__(self, api=None):
        self.api = api or ApiClient()
        self.store = self.api.auth
        self._pending = None

    @property
    def state(self):
        if self.store.access_token:
            return self.AUTHENTICATED
        if self.store.requires_two_factor:
            return self.TWO_FACTOR_REQUIRED
        return self.ANONYMOUS

    def _call(self, method, path, json=None, fallback='Request failed'):
        result = self.api.request(method, f'/auth/{path}', json=json)
        if not result.ok:
            raise AuthError(result.error.message or fallback, result.status, result.error.details)
        return result.data

    def _start_session(self, data):
        self.store.set_token(data['token'])
        self.store.set_user(data['user'])
        self.store.set_requires_two_factor(False)
        self._pending = None
        return data

    def register(self, email, password, name=None, password_confirm=None):
        payload = {'email': email, 'password': password, 'name': name}
        if password_confirm is not None:
            payload['passwordConfirm'] = password_confirm
        return self._call('POST', 'register', payload, 'Registration failed')

    def login(self, email, password, two_factor_token=None):
        payload = {'email': email, 'password': password}
        if two_factor_token:
            payload['twoFactorToken'] = two_factor_token
        result = self.api.request('POST', '/auth/login', json=payload)

        if result.status == 401 and result.headers.get(TWO_FACTOR_HEADER):
            self.store.set_requires_two_factor(True)
            self._pending = (email, password)
            raise TwoFactorRequired(result.error.message, 401)
        if not result.ok:
            raise AuthError(result.error.message or 'Login failed', result.status, result.error.details)
        return self._start_session(result.data)

    def verify_two_factor_for_login(self, token):
        if not self._pending:
            raise AuthError('No login is waiting for a two-factor code', 400)
        email, password = self._pending
        return self.login(email, password, two_factor_token=token)

    def logout(self):
        try:
            return self._call('POST', 'logout', fallback='Logout failed')
        finally:
            self.store.clear_auth()
            self._pending = None

    def refresh_token(self):
        if not self.api.refresh():
            raise AuthError('Token refresh failed', 401)
        return self.store.access_token

    def verify_email(self, token):
        data = self._call('GET', f'verify-email/{token}', fallback='Email verification failed')
        return self._start_session(data)

    def send_verification_email(self):
        return self._call('POST', 'send-verification-email')

    def forgot_password(self, email):
        return self._call('POST', 'forgot-password', {'email': email})

    def reset_password(self, token, password, password_confirm=None):
        data = self._call('POST', f'reset-password/{token}', {
            'password': password,
            'passwordConfirm': password if password_confirm is None else password_confirm
        }, 'Password reset failed')
        return self._start_session(data)

    def update_password(self, current, password, password_confirm=None):
        data = self._call('PATCH', 'update-password', {
            'passwordCurrent': current,
            'password': password,
            'passwordConfirm': password if password_confirm is None else password_confirm
        }, 'Password update failed')
        return self._start_session(data)

    def enable_two_factor(self, password):
        return self._call('POST', '2fa/enable', {'password': password})

    def verify_two_factor(self, token):
        data = self._call('POST', '2fa/verify', {'token': token})
        if self.store.user:
            self.store.user['twoFactorEnabled'] = True
        return data

    def disable_two_factor(self, password, token):
        data = self._call('DELETE', '2fa/disable', {'password': password, 'token': token})
        if self.store.user:
            self.store.user['twoFactorEnabled'] = False
        return data


# ---------- LOCAL STORES ----------

class CartStore:
    """Cart lines held on the client as full product records plus a quantity."""

    def __init__(self, items=None, coupon_code=None):
        self.items = list(items or [])
        self.coupon_code = coupon_code

    def _line(self, product_id):
        return next((i for i in self.items if i['product']['id'] == product_id), None)

    def add_item(self, product, quantity=1):
        if quantity <= 0:
            return
        line = self._line(product['id'])
        if line:
            line['quantity'] = min(config.MAX_QTY_PER_LINE, line['quantity'] + quantity)
        else:
            self.items.append({'product': product, 'quantity': min(config.MAX_QTY_PER_LINE, quantity)})

    def remove_item(self, product_id):
        self.items = [i for i in self.items if i['product']['id'] != product_id]

    def update_qty(self, product_id, quantity):
        if quantity <= 0:
            self.remove_item(product_id)
            return
        line = self._line(product_id)
        if line:
            line['quantity'] = min(config.MAX_QTY_PER_LINE, quantity)

    def clear(self):
        self.items = []
        self.coupon_code = None

    @property
    def count(self):
        return sum(i['quantity'] for i in self.items)

    @property
    def subtotal(self):
        return round(sum(pricing.price_of(i['product']) * i['quantity'] for i in self.items), 2)

    def to_payload(self):
        return {
            'items': [{'productId': i['product']['id'], 'quantity': i['quantity']} for i in self.items],
            'couponCode': self.coupon_code
        }

    def sync(self, api):
        """push the local cart to the server; returns the priced server cart"""
        result = api.post('/cart', json=self.to_payload())
        if not result.ok:
            raise result.error
        return result.data['cart']

    def dump(self):
        return json.dumps({'items': self.items, 'couponCode': self.coupon_code})

    @classmethod
    def load(cls, raw):
        try:
            state = json.loads(raw) if raw else {}
        except ValueError:
            logger.warning('discarding unreadable cart state')
            state = {}
        if not isinstance(state, dict):
            state = {}
        lines = state.get('items')
        items = [i for i in lines if cls._valid_line(i)] if isinstance(lines, list) else []
        return cls(items, state.get('couponCode'))

    @staticmethod
    def _valid_line(line):
        if not isinstance(line, dict) or not isinstance(line.get('product'), dict):
            return False
        quantity = line.get('quantity')
        return bool(line['product'].get('id')) and isinstance(quantity, int) and quantity > 0


class WishlistStore:
    def __init__(self, items=None):
        self.items = list(items or [])

    def contains(self, product_id):
        return any(p['id'] == product_id for p in self.items)

    def toggle(self, product):
        """add or remove; returns True when the product is now wishlisted"""
        if self.contains(product['id']):
            self.items = [p for p in self.items if p['id'] != product['id']]
            return False
        self.items.append(product)
        return True

    def dump(self):
        return json.dumps(self.items)

    @classmethod
    def load(cls, raw):
        try:
            items = json.loads(raw) if raw else []
        except ValueError:
            items = []
        return cls([p for p in items if isinstance(p, dict) and p.get('id')] if isinstance(items, list) else [])
