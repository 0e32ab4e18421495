import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# ============== CONFIGURATION ==============

SECRET_KEY = os.getenv('CF_SECRET_KEY', 'customforge-dev-secret')
API_PREFIX = '/api/v1'

# tokens
ACCESS_TOKEN_MINUTES = int(os.getenv('CF_ACCESS_TOKEN_MINUTES', '15'))
REFRESH_TOKEN_DAYS = int(os.getenv('CF_REFRESH_TOKEN_DAYS', '7'))
EMAIL_TOKEN_HOURS = 24
RESET_TOKEN_MINUTES = 10
TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1  # accept one step either side for clock drift
TOTP_ISSUER = 'CustomForge'

# cookies
COOKIE_MAX_AGE_DAYS = int(os.getenv('CF_COOKIE_MAX_AGE_DAYS', '7'))
CART_COOKIE = 'cf_cart'
ORDERS_COOKIE = 'cf_orders'
USER_COOKIE = 'cf_user'
WISHLIST_COOKIE = 'cf_wishlist'
ADDRESSES_COOKIE = 'cf_addresses'
METHODS_COOKIE = 'cf_methods'
REFRESH_COOKIE = 'cf_refresh'

# accounts
PASSWORD_MIN_LENGTH = int(os.getenv('CF_PASSWORD_MIN_LENGTH', '8'))
FAILED_LOGIN_LIMIT = 5
LOCKOUT_MINUTES = 15
DEMO_USER_FALLBACK = _env_bool('CF_DEMO_USER_FALLBACK', True)
REQUIRE_EMAIL_VERIFICATION = _env_bool('CF_REQUIRE_EMAIL_VERIFICATION', False)

# catalogue / cart
MAX_QTY_PER_LINE = 20
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
LOW_STOCK_THRESHOLD = 5
RELATED_LIMIT = 4
TOP_LIMIT = 8
REVIEW_MAX_LENGTH = 2000

# audit log
AUDIT_LOG_LIMIT = int(os.getenv('CF_AUDIT_LOG_LIMIT', '5000'))

# coupons
COUPON_MIN_CODE_LENGTH = 3
COUPON_MAX_CODE_LENGTH = 50
COUPON_MAX_PERCENT = 100

ORDER_STATUSES = ['pending', 'paid', 'shipped', 'delivered', 'cancelled', 'returned', 'refunded']

# server
HOST = os.getenv('CF_HOST', '127.0.0.1')
PORT = int(os.getenv('CF_PORT', '5000'))
DEBUG = _env_bool('CF_DEBUG', False)
