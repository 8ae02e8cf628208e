"""
Säkerhetsmodul för fastighetsadmin - rate limiting, säkerhetsheaders och sanering av indata
"""
import os
import re
import time
from collections import defaultdict, deque
from functools import wraps
from threading import Lock
from urllib.parse import urlparse

from flask import request, jsonify

# ========== RATE LIMITING ==========

class SimpleRateLimiter:
    def __init__(self):
        self.requests = defaultdict(deque)
        self.lock = Lock()

    def is_allowed(self, key, max_requests, window_seconds):
        """Kontrollera om request är tillåten"""
        now = time.time()
        cutoff = now - window_seconds

        with self.lock:
            bucket = self.requests[key]
            while bucket and bucket[0] < cutoff:
                bucket.popleft()

            if len(bucket) >= max_requests:
                return False

            bucket.append(now)
            return True

    def cleanup(self, max_age_seconds=3600):
        """Rensa gamla entries (körs från before_request)"""
        cutoff = time.time() - max_age_seconds

        with self.lock:
            empty = []
            for key, times in self.requests.items():
                while times and times[0] < cutoff:
                    times.popleft()
                if not times:
                    empty.append(key)
            for key in empty:
                del self.requests[key]

    def reset(self):
        with self.lock:
            self.requests.clear()

# Global instans
rate_limiter = SimpleRateLimiter()

def rate_limit(max_requests=60, window_seconds=60):
    """Decorator för rate limiting per klient-IP och endpoint"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # IP efter ProxyFix
            key = f"{request.remote_addr or 'unknown'}:{request.endpoint}"

            if not rate_limiter.is_allowed(key, max_requests, window_seconds):
                return jsonify({
                    'error': 'För många förfrågningar. Vänta en stund och försök igen.'
                }), 429

            return f(*args, **kwargs)
        return decorated_function
    return decorator

def rate_limit_auth(max_requests=20, window_seconds=300):
    """Striktare gräns för inloggning och lösenordsflöden"""
    return rate_limit(max_requests, window_seconds)

# ========== SÄKERHETSHEADERS ==========

def _supabase_origin():
    parsed = urlparse(os.getenv('SUPABASE_URL') or '')
    if not parsed.scheme or not parsed.netloc:
        return ''
    return f"{parsed.scheme}://{parsed.netloc}"

def build_csp():
    supabase = _supabase_origin()
    connect = "'self'"
    img = "'self' data: blob: https:"
    if supabase:
        connect = f"{connect} {supabase} wss://{urlparse(supabase).netloc}"
        img = f"{img} {supabase}"
    return (
        "default-src 'self'; "
        "script-src 'self'; "
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
        f"img-src {img}; "
        "font-src 'self' data: https://fonts.gstatic.com; "
        f"connect-src {connect}; "
        "frame-src 'none'; "
        "object-src 'none'"
    )

def add_security_headers(response):
    """Lägg till säkerhetsheaders till response"""
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'

    # HTTPS bakom proxy
    if request.headers.get('X-Forwarded-Proto') == 'https':
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

    response.headers['Content-Security-Policy'] = build_csp()
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    response.headers['Permissions-Policy'] = (
        'accelerometer=(), camera=(), geolocation=(), '
        'gyroscope=(), magnetometer=(), microphone=(), '
        'payment=(), usb=()'
    )

    # API-svar innehåller personuppgifter
    if request.path.startswith('/api/'):
        response.headers['Cache-Control'] = 'no-store'

    return response

def init_security_headers(app):
    """Initiera säkerhetsheaders för Flask app"""
    @app.after_request
    def set_security_headers(response):
        return add_security_headers(response)

# ========== SANERING ==========

def sanitize_string(value, max_length=100):
    """Sanitera sträng för säker lagring"""
    if not value:
        return ""

    # Ta bort farliga tecken
    value = re.sub(r'[<>&\'"\\]', '', str(value))

    return value[:max_length].strip()
