"""Password hashing, signed tokens and TOTP codes.

Access, refresh, email-verification and password-reset tokens are all
itsdangerous timed tokens over the user id; each kind gets its own salt so
one can never be replayed as another.
"""
import hashlib
import hmac
import secrets

import pyotp
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from customforge import config

ACCESS_SALT = 'cf-access'
REFRESH_SALT = 'cf-refresh'
VERIFY_SALT = 'cf-verify-email'
RESET_SALT = 'cf-reset-password'

PBKDF2_ROUNDS = 120000


class TokenError(Exception):
    """Raised when a signed token is malformed, tampered with or expired."""

    def __init__(self, message, expired=False):
        super().__init__(message)
        self.expired = expired


# ---------- PASSWORDS ----------

def hash_password(password, salt=None):
    salt = salt or secrets.token_hex(8)
    digest = hashlib.pbkdf2_hmac('sha256', password.encode(), salt.encode(), PBKDF2_ROUNDS)
    return f"{salt}${digest.hex()}"


def check_password(password, stored):
    if not stored or '$' not in stored:
        return False
    salt, _ = stored.split('$', 1)
    return hmac.compare_digest(hash_password(password or '', salt), stored)


# ---------- SIGNED TOKENS ----------

def _serializer(salt, secret_key=None):
    return URLSafeTimedSerializer(secret_key or config.SECRET_KEY, salt=salt)


def sign(user_id, salt, secret_key=None, **claims):
    payload = {'uid': user_id, **claims}
    return _serializer(salt, secret_key).dumps(payload)


def unsign(token, salt, max_age, secret_key=None):
    """Return the payload of a token or raise TokenError."""
    try:
        return _serializer(salt, secret_key).loads(token, max_age=max_age)
    except SignatureExpired:
        raise TokenError('Token has expired', expired=True)
    except BadSignature:
        raise TokenError('Invalid token')


def issue_access_token(user, secret_key=None):
    return sign(user['id'], ACCESS_SALT, secret_key, role=user.get('role', 'user'))


def read_access_token(token, secret_key=None):
    return unsign(token, ACCESS_SALT, config.ACCESS_TOKEN_MINUTES * 60, secret_key)


def issue_refresh_token(user, secret_key=None):
    # nonce keeps two refresh tokens issued in the same second distinct
    return sign(user['id'], REFRESH_SALT, secret_key, n=secrets.token_hex(4))


def read_refresh_token(token, secret_key=None):
    return unsign(token, REFRESH_SALT, config.REFRESH_TOKEN_DAYS * 86400, secret_key)


def issue_email_token(user, secret_key=None):
    return sign(user['id'], VERIFY_SALT, secret_key, email=user['email'])


def read_email_token(token, secret_key=None):
    return unsign(token, VERIFY_SALT, config.EMAIL_TOKEN_HOURS * 3600, secret_key)


def issue_reset_token(user, secret_key=None):
    # binding the current hash makes the token single-use
    return sign(user['id'], RESET_SALT, secret_key, pw=user['password'][-8:])


def read_reset_token(token, secret_key=None):
    return unsign(token, RESET_SALT, config.RESET_TOKEN_MINUTES * 60, secret_key)


# ---------- TOTP ----------

def _totp(secret):
    return pyotp.TOTP(secret, digits=config.TOTP_DIGITS, interval=config.TOTP_STEP_SECONDS)


def generate_totp_secret():
    return pyotp.random_base32()


def otpauth_url(secret, email, issuer=config.TOTP_ISSUER):
    return _totp(secret).provisioning_uri(name=email, issuer_name=issuer)


def verify_totp(secret, code, at=None, window=config.TOTP_WINDOW):
    if not secret or not code:
        return False
    code = str(code).strip().replace(' ', '')
    return _totp(secret).verify(code, for_time=at, valid_window=window)
