"""Cart totals, coupon rules, catalogue filtering and pagination.

Everything here is plain functions over dicts so both the request handlers
and the client-side stores can share it.
"""
import math
import re
from datetime import datetime

from customforge import config


def final_price(original_price, discount_percentage=0):
    """price after the product's own discount, rounded to cents"""
    original_price = float(original_price or 0)
    if not discount_percentage:
        return original_price
    return round(original_price * (1 - float(discount_percentage) / 100), 2)


def price_of(product):
    if product.get('finalPrice') is not None:
        return float(product['finalPrice'])
    return final_price(product.get('originalPrice', 0), product.get('discountPercentage', 0))


def format_price(value):
    return f"${value:,.2f}"


def availability_for(stock, current=None):
    if stock > 0:
        return 'In Stock'
    if current == 'Preorder':
        return 'Preorder'
    return 'Out of Stock'


# ---------- COUPONS ----------

def _parse_ts(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def normalize_code(code):
    return str(code or '').strip().upper()


def coupon_validity(coupon, now=None):
    """(valid, reason) for date range, active flag and usage limit"""
    now = now or datetime.now()
    if not coupon.get('isActive', True):
        return False, 'Coupon is inactive'
    valid_from = _parse_ts(coupon.get('validFrom'))
    if valid_from and valid_from > now:
        return False, 'Coupon not yet valid'
    valid_to = _parse_ts(coupon.get('validTo'))
    if valid_to and valid_to < now:
        return False, 'Coupon expired'
    limit = coupon.get('usageLimit')
    if limit is not None and coupon.get('timesUsed', 0) >= limit:
        return False, 'Coupon usage limit reached'
    return True, None


def coupon_applicability(coupon, product_ids):
    ids = [str(pid) for pid in product_ids]
    allowed = set(str(p) for p in coupon.get('applicableProducts') or [])
    if allowed and not all(pid in allowed for pid in ids):
        return False, 'Coupon is not applicable to some products in the cart'
    excluded = set(str(p) for p in coupon.get('excludedProducts') or [])
    if excluded and any(pid in excluded for pid in ids):
        return False, 'Coupon cannot be applied to one or more products'
    return True, None


def compute_coupon_discount(coupon, subtotal):
    amount = float(subtotal or 0)
    if amount <= 0:
        return 0.0

    value = float(coupon.get('discountValue', 0))
    if coupon.get('discountType') == 'percent':
        if value > config.COUPON_MAX_PERCENT:
            return 0.0
        discount = amount * value / 100
    else:
        discount = value

    cap = coupon.get('maxDiscount')
    if cap is not None and cap >= 0 and discount > cap:
        discount = cap
    if discount > amount:
        discount = amount
    return round(discount, 2)


def find_active_coupon(coupons, code, now=None):
    """Lookup by code that also enforces validity; None when unusable."""
    code = normalize_code(code)
    if len(code) < config.COUPON_MIN_CODE_LENGTH:
        return None
    coupon = coupons.get(code)
    if not coupon:
        return None
    valid, _ = coupon_validity(coupon, now)
    return coupon if valid else None


# ---------- CART ----------

def cart_totals(cart, products, coupons, now=None):
    lines = []
    warnings = []
    subtotal = 0.0

    for item in cart.get('items', []):
        pid = item.get('productId')
        qty = int(item.get('quantity') or 0)
        product = products.get(pid)
        if not product or not product.get('isActive', True):
            warnings.append({
                'type': 'product',
                'productId': pid,
                'message': 'Product no longer available'
            })
            continue

        unit_price = price_of(product)
        line_total = round(unit_price * qty, 2)
        lines.append({
            'productId': pid,
            'name': product['name'],
            'image': (product.get('images') or [None])[0],
            'quantity': qty,
            'unitPrice': unit_price,
            'lineTotal': line_total,
            'availableStock': product.get('stock')
        })
        subtotal += line_total

        stock = product.get('stock')
        if isinstance(stock, int) and stock < qty:
            warnings.append({
                'type': 'stock',
                'productId': pid,
                'message': f"Only {stock} unit(s) available for {product['name']}"
            })

    discount = 0.0
    coupon_summary = None
    coupon_error = None
    code = normalize_code(cart.get('couponCode'))

    if code:
        coupon = coupons.get(code)
        if not coupon:
            coupon_error = 'Invalid coupon code'
        else:
            valid, reason = coupon_validity(coupon, now)
            min_purchase = coupon.get('minPurchase') or 0
            if not valid:
                coupon_error = reason
            elif subtotal < min_purchase:
                coupon_error = f"Minimum order amount for this coupon is {min_purchase:.2f}"
            else:
                valid, reason = coupon_applicability(coupon, [l['productId'] for l in lines])
                if not valid:
                    coupon_error = reason
                else:
                    discount = compute_coupon_discount(coupon, subtotal)
                    coupon_summary = {
                        'code': coupon['code'],
                        'discountType': coupon['discountType'],
                        'discountValue': coupon['discountValue'],
                        'discountAmount': discount
                    }

    return {
        'items': lines,
        'subtotal': round(subtotal, 2),
        'discount': round(discount, 2),
        'total': round(max(0.0, subtotal - discount), 2),
        'coupon': coupon_summary,
        'couponError': coupon_error,
        'warnings': warnings
    }


# ---------- CATALOGUE ----------

def _number(value, default=None):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def filter_products(products, params):
    q = (params.get('q') or params.get('search') or '').strip().lower()
    category = (params.get('category') or '').strip().lower()
    brand = (params.get('brand') or '').strip().lower()
    min_price = _number(params.get('minPrice'))
    max_price = _number(params.get('maxPrice'))
    rating = _number(params.get('rating'))

    result = []
    for p in products:
        if not p.get('isActive', True):
            continue

        if q:
            haystack = ' '.join([p.get('name', ''), p.get('description', ''), p.get('brand', '')]).lower()
            if q not in haystack:
                continue

        if category and p.get('category', '').lower() != category:
            continue
        if brand and p.get('brand', '').lower() != brand:
            continue

        price = price_of(p)
        if min_price is not None and price < min_price:
            continue
        if max_price is not None and price > max_price:
            continue

        if rating is not None and p.get('ratings', {}).get('average', 0) < rating:
            continue

        result.append(p)
    return result


def sort_products(items, sort=None):
    if sort == 'price_asc':
        return sorted(items, key=price_of)
    if sort == 'price_desc':
        return sorted(items, key=price_of, reverse=True)
    if sort == 'rating':
        return sorted(items, key=lambda p: p.get('ratings', {}).get('average', 0), reverse=True)
    if sort == 'newest':
        return sorted(items, key=lambda p: p.get('createdAt', ''), reverse=True)
    if sort == 'popular':
        return sorted(items, key=lambda p: p.get('salesCount', 0), reverse=True)
    return list(items)


def page_params(args, default_limit=None):
    """clamp page/limit query values coming from a request"""
    default_limit = default_limit or config.DEFAULT_PAGE_SIZE
    try:
        page = int(args.get('page') or 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(args.get('limit') or default_limit)
    except (TypeError, ValueError):
        limit = default_limit
    return max(1, page), min(config.MAX_PAGE_SIZE, max(1, limit))


def paginate(items, page=1, limit=None):
    page, limit = page_params({'page': page, 'limit': limit})
    total = len(items)
    start = (page - 1) * limit
    return {
        'items': items[start:start + limit],
        'total': total,
        'page': page,
        'limit': limit,
        'pages': math.ceil(total / limit) if total else 0
    }


# ---------- CARDS ----------

def luhn_valid(card_number):
    digits = re.sub(r'\D', '', card_number or '')
    if len(digits) < 12 or len(digits) > 19:
        return False
    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def card_brand(card_number):
    digits = re.sub(r'\D', '', card_number or '')
    if digits.startswith('4'):
        return 'visa'
    if digits[:2] in ('51', '52', '53', '54', '55') or '2221' <= digits[:4] <= '2720':
        return 'mastercard'
    if digits[:2] in ('34', '37'):
        return 'amex'
    if digits.startswith('6011') or digits.startswith('65'):
        return 'discover'
    return 'card'


def mask_card(card_number):
    """mask credit card number for display"""
    digits = re.sub(r'\D', '', card_number or '')
    if len(digits) < 4:
        return '****'
    return '*' * (len(digits) - 4) + digits[-4:]
