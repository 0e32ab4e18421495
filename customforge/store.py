"""In-memory storage shared by the storefront and admin handlers.

Customer-owned state (cart, orders, wishlist, addresses, payment methods,
session snapshot) lives in cookies; this module holds what a real backend
would keep server-side: the catalogue, coupons, accounts, reviews, server
copies of orders, the audit log and outbound notifications.
"""
from datetime import datetime, timedelta

from customforge import tokens
from customforge.pricing import availability_for, final_price

# ============== DATA STORAGE ==============
products = {}
coupons = {}
users = {}
reviews = {}
orders = {}
audit_log = []
notifications = []
failed_logins = {}

DEMO_PASSWORD = 'password123'
ADMIN_PASSWORD = 'admin12345'
ADMIN_TOTP_SECRET = 'JBSWY3DPEHPK3PXP'

_seed_hashes = {}


def _seed_hash(password):
    # pbkdf2 is slow on purpose; seeds are re-hashed on every reset otherwise
    if password not in _seed_hashes:
        _seed_hashes[password] = tokens.hash_password(password)
    return _seed_hashes[password]


def _ago(days=0, hours=0):
    return (datetime.now() - timedelta(days=days, hours=hours)).isoformat()


def make_product(data, now=None):
    """build a catalogue record from loose input, deriving finalPrice and availability"""
    now = now or datetime.now().isoformat()
    original = float(data.get('originalPrice', data.get('price', 0)) or 0)
    discount = float(data.get('discountPercentage') or 0)
    stock = int(data.get('stock', 0) or 0)
    specs = data.get('specifications') or []
    if isinstance(specs, dict):
        specs = [{'key': str(k), 'value': str(v)} for k, v in specs.items()]
    return {
        'id': data['id'],
        'name': str(data.get('name') or 'Unnamed Product'),
        'brand': str(data.get('brand') or 'Unknown'),
        'category': str(data.get('category') or 'Misc'),
        'sku': str(data.get('sku') or data['id']),
        'originalPrice': original,
        'discountPercentage': discount,
        'finalPrice': final_price(original, discount),
        'stock': stock,
        'availability': availability_for(stock, data.get('availability')),
        'warranty': data.get('warranty') or '1 year limited warranty',
        'isFeatured': bool(data.get('isFeatured', False)),
        'isActive': bool(data.get('isActive', True)),
        'salesCount': int(data.get('salesCount', 0) or 0),
        'ratings': data.get('ratings') or {'average': 0, 'totalReviews': 0},
        'images': data.get('images') or ['/gaming-product-image.jpg'],
        'description': data.get('description') or 'High-performance component for gamers and creators.',
        'specifications': specs,
        'features': list(data.get('features') or []),
        'createdAt': data.get('createdAt') or now,
        'updatedAt': data.get('updatedAt') or now
    }


# ============== INIT DATA ==============

CATALOGUE = [
    {'id': 'gpu-rtx-4080', 'name': 'GeForce RTX 4080 Super', 'brand': 'NVIDIA', 'category': 'GPU',
     'sku': 'GPU-4080S', 'originalPrice': 999.99, 'discountPercentage': 10, 'stock': 12,
     'isFeatured': True, 'salesCount': 140, 'ratings': {'average': 4.8, 'totalReviews': 212},
     'description': '16GB GDDR6X graphics card for 4K gaming and ray tracing.',
     'specifications': {'Memory': '16GB GDDR6X', 'Boost Clock': '2550 MHz'}, 'createdAt': _ago(120)},
    {'id': 'gpu-rx-7800', 'name': 'Radeon RX 7800 XT', 'brand': 'AMD', 'category': 'GPU',
     'sku': 'GPU-7800XT', 'originalPrice': 499.99, 'stock': 3, 'salesCount': 95,
     'ratings': {'average': 4.6, 'totalReviews': 130},
     'description': '16GB graphics card built for high refresh 1440p gaming.', 'createdAt': _ago(90)},
    {'id': 'cpu-ryzen-7800x3d', 'name': 'Ryzen 7 7800X3D', 'brand': 'AMD', 'category': 'CPU',
     'sku': 'CPU-7800X3D', 'originalPrice': 449.0, 'discountPercentage': 5, 'stock': 25,
     'isFeatured': True, 'salesCount': 210, 'ratings': {'average': 4.9, 'totalReviews': 340},
     'description': '8-core gaming processor with 3D V-Cache.', 'createdAt': _ago(200)},
    {'id': 'cpu-i7-14700k', 'name': 'Core i7-14700K', 'brand': 'Intel', 'category': 'CPU',
     'sku': 'CPU-14700K', 'originalPrice': 409.99, 'stock': 18, 'salesCount': 120,
     'ratings': {'average': 4.5, 'totalReviews': 98},
     'description': '20-core desktop processor for gaming and streaming.', 'createdAt': _ago(60)},
    {'id': 'mb-x670e', 'name': 'ROG Strix X670E-E', 'brand': 'ASUS', 'category': 'Motherboard',
     'sku': 'MB-X670E', 'originalPrice': 479.99, 'stock': 7, 'salesCount': 40,
     'ratings': {'average': 4.4, 'totalReviews': 51},
     'description': 'AM5 motherboard with PCIe 5.0 and WiFi 6E.', 'createdAt': _ago(150)},
    {'id': 'ram-ddr5-32', 'name': 'Vengeance DDR5 32GB (2x16GB)', 'brand': 'Corsair', 'category': 'RAM',
     'sku': 'RAM-D5-32', 'originalPrice': 129.99, 'discountPercentage': 15, 'stock': 60,
     'isFeatured': True, 'salesCount': 310, 'ratings': {'average': 4.7, 'totalReviews': 410},
     'description': 'DDR5-6000 memory kit tuned for AMD EXPO and Intel XMP.', 'createdAt': _ago(30)},
    {'id': 'ssd-990-pro-2tb', 'name': '990 PRO 2TB NVMe', 'brand': 'Samsung', 'category': 'Storage',
     'sku': 'SSD-990P-2T', 'originalPrice': 189.99, 'stock': 40, 'salesCount': 260,
     'ratings': {'average': 4.8, 'totalReviews': 520},
     'description': 'PCIe 4.0 NVMe SSD with 7450 MB/s reads.', 'createdAt': _ago(45)},
    {'id': 'psu-rm850x', 'name': 'RM850x 850W Gold', 'brand': 'Corsair', 'category': 'PSU',
     'sku': 'PSU-RM850X', 'originalPrice': 149.99, 'stock': 2, 'salesCount': 75,
     'ratings': {'average': 4.6, 'totalReviews': 188},
     'description': 'Fully modular 80 PLUS Gold power supply.', 'createdAt': _ago(100)},
    {'id': 'case-o11-dynamic', 'name': 'O11 Dynamic EVO', 'brand': 'Lian Li', 'category': 'Case',
     'sku': 'CASE-O11E', 'originalPrice': 159.99, 'stock': 0, 'availability': 'Preorder',
     'salesCount': 55, 'ratings': {'average': 4.7, 'totalReviews': 76},
     'description': 'Dual-chamber mid tower with tempered glass panels.', 'createdAt': _ago(10)},
    {'id': 'cool-nh-d15', 'name': 'NH-D15 chromax.black', 'brand': 'Noctua', 'category': 'Cooling',
     'sku': 'COOL-NHD15', 'originalPrice': 119.95, 'stock': 0, 'salesCount': 88,
     'ratings': {'average': 4.9, 'totalReviews': 230},
     'description': 'Dual-tower CPU air cooler with two NF-A15 fans.', 'createdAt': _ago(300)},
    {'id': 'cool-kraken-360', 'name': 'Kraken 360 RGB', 'brand': 'NZXT', 'category': 'Cooling',
     'sku': 'COOL-KR360', 'originalPrice': 179.99, 'discountPercentage': 20, 'stock': 9,
     'salesCount': 33, 'ratings': {'average': 4.2, 'totalReviews': 41},
     'description': '360mm all-in-one liquid cooler with LCD pump head.', 'createdAt': _ago(5)},
    {'id': 'gpu-gtx-1080', 'name': 'GeForce GTX 1080', 'brand': 'NVIDIA', 'category': 'GPU',
     'sku': 'GPU-1080', 'originalPrice': 299.99, 'stock': 4, 'isActive': False,
     'salesCount': 500, 'ratings': {'average': 4.3, 'totalReviews': 900},
     'description': 'Legacy graphics card, retired from the catalogue.', 'createdAt': _ago(900)},
]


def init_data():
    now = datetime.now()

    for raw in CATALOGUE:
        products[raw['id']] = make_product(raw)

    # coupons
    coupons['SAVE10'] = {
        'id': 'cpn_save10', 'code': 'SAVE10', 'discountType': 'percent', 'discountValue': 10,
        'minPurchase': 0, 'maxDiscount': None, 'validFrom': None,
        'validTo': (now + timedelta(days=365)).isoformat(), 'isActive': True,
        'usageLimit': 1000, 'timesUsed': 0, 'perUserLimit': None,
        'applicableProducts': [], 'excludedProducts': [],
        'description': '10% off everything', 'createdAt': _ago(30), 'updatedAt': _ago(30)
    }
    coupons['FLAT50'] = {
        'id': 'cpn_flat50', 'code': 'FLAT50', 'discountType': 'fixed', 'discountValue': 50,
        'minPurchase': 300, 'maxDiscount': None, 'validFrom': None,
        'validTo': (now + timedelta(days=90)).isoformat(), 'isActive': True,
        'usageLimit': 500, 'timesUsed': 12, 'perUserLimit': 1,
        'applicableProducts': [], 'excludedProducts': [],
        'description': '$50 off orders over $300', 'createdAt': _ago(20), 'updatedAt': _ago(20)
    }
    coupons['GPU15'] = {
        'id': 'cpn_gpu15', 'code': 'GPU15', 'discountType': 'percent', 'discountValue': 15,
        'minPurchase': 0, 'maxDiscount': 100, 'validFrom': None, 'validTo': None,
        'isActive': True, 'usageLimit': None, 'timesUsed': 0, 'perUserLimit': None,
        'applicableProducts': ['gpu-rtx-4080', 'gpu-rx-7800'], 'excludedProducts': [],
        'description': '15% off graphics cards, capped at $100', 'createdAt': _ago(7), 'updatedAt': _ago(7)
    }
    coupons['NOCOOL'] = {
        'id': 'cpn_nocool', 'code': 'NOCOOL', 'discountType': 'fixed', 'discountValue': 20,
        'minPurchase': 0, 'maxDiscount': None, 'validFrom': None, 'validTo': None,
        'isActive': True, 'usageLimit': None, 'timesUsed': 0, 'perUserLimit': None,
        'applicableProducts': [], 'excludedProducts': ['cool-kraken-360', 'cool-nh-d15'],
        'description': '$20 off, cooling excluded', 'createdAt': _ago(7), 'updatedAt': _ago(7)
    }
    coupons['EXPIRED'] = {
        'id': 'cpn_expired', 'code': 'EXPIRED', 'discountType': 'percent', 'discountValue': 25,
        'minPurchase': 0, 'maxDiscount': None, 'validFrom': _ago(60),
        'validTo': _ago(30), 'isActive': True, 'usageLimit': None, 'timesUsed': 40,
        'perUserLimit': None, 'applicableProducts': [], 'excludedProducts': [],
        'description': 'Last season promo', 'createdAt': _ago(60), 'updatedAt': _ago(30)
    }
    coupons['PAUSED'] = {
        'id': 'cpn_paused', 'code': 'PAUSED', 'discountType': 'percent', 'discountValue': 5,
        'minPurchase': 0, 'maxDiscount': None, 'validFrom': None, 'validTo': None,
        'isActive': False, 'usageLimit': None, 'timesUsed': 0, 'perUserLimit': None,
        'applicableProducts': [], 'excludedProducts': [],
        'description': 'Disabled by admin', 'createdAt': _ago(15), 'updatedAt': _ago(2)
    }

    # accounts
    users['usr_demo'] = {
        'id': 'usr_demo', 'name': 'CustomForge Gamer', 'email': 'demo@customforge.dev',
        'password': _seed_hash(DEMO_PASSWORD), 'role': 'user', 'phone': '',
        'avatar': None, 'isEmailVerified': True, 'twoFactorEnabled': False,
        'twoFactorSecret': None, 'active': True, 'lastLogin': None,
        'createdAt': _ago(200), 'updatedAt': _ago(200)
    }
    users['usr_admin'] = {
        'id': 'usr_admin', 'name': 'Forge Admin', 'email': 'admin@customforge.dev',
        'password': _seed_hash(ADMIN_PASSWORD), 'role': 'admin', 'phone': '',
        'avatar': None, 'isEmailVerified': True, 'twoFactorEnabled': True,
        'twoFactorSecret': ADMIN_TOTP_SECRET, 'active': True, 'lastLogin': None,
        'createdAt': _ago(400), 'updatedAt': _ago(400)
    }
    users['usr_jordan'] = {
        'id': 'usr_jordan', 'name': 'Jordan Reyes', 'email': 'jordan@example.com',
        'password': _seed_hash(DEMO_PASSWORD), 'role': 'user', 'phone': '555-0134',
        'avatar': None, 'isEmailVerified': True, 'twoFactorEnabled': False,
        'twoFactorSecret': None, 'active': True, 'lastLogin': None,
        'createdAt': _ago(90), 'updatedAt': _ago(90)
    }
    users['usr_sam'] = {
        'id': 'usr_sam', 'name': 'Sam Okafor', 'email': 'sam@example.com',
        'password': _seed_hash(DEMO_PASSWORD), 'role': 'user', 'phone': '',
        'avatar': None, 'isEmailVerified': False, 'twoFactorEnabled': False,
        'twoFactorSecret': None, 'active': False, 'lastLogin': None,
        'createdAt': _ago(12), 'updatedAt': _ago(3)
    }

    # order history for the dashboard
    seeded = [
        ('ord_seed_001', 'usr_jordan', [('cpu-ryzen-7800x3d', 1), ('ram-ddr5-32', 2)], 'delivered', 40),
        ('ord_seed_002', 'usr_demo', [('gpu-rtx-4080', 1)], 'delivered', 21),
        ('ord_seed_003', 'usr_jordan', [('ssd-990-pro-2tb', 2)], 'shipped', 9),
        ('ord_seed_004', 'usr_demo', [('psu-rm850x', 1), ('cool-kraken-360', 1)], 'paid', 4),
        ('ord_seed_005', 'usr_sam', [('gpu-rx-7800', 1)], 'cancelled', 3),
        ('ord_seed_006', 'usr_jordan', [('mb-x670e', 1)], 'pending', 1),
        ('ord_seed_007', 'usr_demo', [('ram-ddr5-32', 1)], 'refunded', 15),
    ]
    for oid, uid, lines, status, days in seeded:
        items = [
            {'productId': pid, 'name': products[pid]['name'],
             'price': products[pid]['finalPrice'], 'quantity': qty}
            for pid, qty in lines
        ]
        subtotal = round(sum(i['price'] * i['quantity'] for i in items), 2)
        paid = status in ('paid', 'shipped', 'delivered', 'refunded')
        orders[oid] = {
            'id': oid, 'userId': uid, 'items': items, 'address': None,
            'paymentMethodId': None, 'couponCode': None,
            'subtotal': subtotal, 'discount': 0.0, 'total': subtotal,
            'status': status, 'isPaid': paid,
            'paidAt': _ago(days) if paid else None,
            'deliveredAt': _ago(days - 2) if status == 'delivered' else None,
            'statusHistory': [], 'createdAt': _ago(days), 'updatedAt': _ago(days)
        }

    # reviews
    reviews['rev_seed_1'] = {
        'id': 'rev_seed_1', 'productId': 'gpu-rtx-4080', 'userId': 'usr_demo',
        'user': 'CustomForge Gamer', 'rating': 5, 'comment': 'Excellent performance!',
        'status': 'approved', 'createdAt': _ago(18)
    }
    reviews['rev_seed_2'] = {
        'id': 'rev_seed_2', 'productId': 'gpu-rtx-4080', 'userId': 'usr_jordan',
        'user': 'Jordan Reyes', 'rating': 4, 'comment': 'Great value for money',
        'status': 'approved', 'createdAt': _ago(12)
    }
    reviews['rev_seed_3'] = {
        'id': 'rev_seed_3', 'productId': 'ram-ddr5-32', 'userId': 'usr_jordan',
        'user': 'Jordan Reyes', 'rating': 2, 'comment': 'One stick arrived dead',
        'status': 'pending', 'createdAt': _ago(1)
    }


def reset_data():
    for collection in (products, coupons, users, reviews, orders, failed_logins):
        collection.clear()
    del audit_log[:]
    del notifications[:]
    init_data()


def find_user_by_email(email):
    email = (email or '').strip().lower()
    for u in users.values():
        if u['email'] == email:
            return u
    return None


def safe_user(user):
    """account record without the password hash or 2FA secret"""
    return {k: v for k, v in user.items() if k not in ('password', 'twoFactorSecret')}


def recalc_ratings(product_id):
    product = products.get(product_id)
    if not product:
        return
    approved = [r for r in reviews.values()
                if r['productId'] == product_id and r['status'] == 'approved']
    if approved:
        product['ratings'] = {
            'average': round(sum(r['rating'] for r in approved) / len(approved), 1),
            'totalReviews': len(approved)
        }
    else:
        product['ratings'] = {'average': 0, 'totalReviews': 0}
