import os
import tempfile


def _get_int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        print(f"WARNING: {name} is not an integer, using default {default}")
        return default


def _get_float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        print(f"WARNING: {name} is not a number, using default {default}")
        return default


# Rate limiting (fixed window per IP on the submit endpoint)
RATE_LIMIT_REQUESTS = _get_int_env("RATE_LIMIT_REQUESTS", 3)
RATE_LIMIT_WINDOW = _get_int_env("RATE_LIMIT_WINDOW", 3600)  # 1 hour in seconds

# Abuse tracking
ABUSE_HISTORY_WINDOW = _get_int_env("ABUSE_HISTORY_WINDOW", 86400)  # 24 hours
ABUSE_SWEEP_INTERVAL = _get_int_env("ABUSE_SWEEP_INTERVAL", 3600)
MAX_SUBMISSIONS_PER_HOUR = _get_int_env("MAX_SUBMISSIONS_PER_HOUR", 5)

# Google reCAPTCHA v3
RECAPTCHA_SECRET_KEY = os.getenv("RECAPTCHA_SECRET_KEY")
RECAPTCHA_MIN_SCORE = _get_float_env("RECAPTCHA_MIN_SCORE", 0.5)
RECAPTCHA_FAILURE_LIMIT = _get_int_env("RECAPTCHA_FAILURE_LIMIT", 3)
RECAPTCHA_TIMEOUT = _get_int_env("RECAPTCHA_TIMEOUT", 10)

# Uploads
MAX_FILE_SIZE = _get_int_env("MAX_FILE_SIZE", 10 * 1024 * 1024)  # 10MB
MAX_FILES = _get_int_env("MAX_FILES", 5)
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(tempfile.gettempdir(), "contact-documents"))
STALE_UPLOAD_AGE = _get_int_env("STALE_UPLOAD_AGE", 86400)
FILE_VALIDATION_WORKERS = _get_int_env("FILE_VALIDATION_WORKERS", 5)

# Resend configuration (primary email provider)
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
RESEND_FROM_EMAIL = os.getenv("RESEND_FROM_EMAIL")
RESEND_FROM_NAME = os.getenv("RESEND_FROM_NAME", "Swagat Odisha")

# SMTP configuration (fallback transport)
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = _get_int_env("SMTP_PORT", 587)
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_USE_SSL = os.getenv("SMTP_USE_SSL", "FALSE").upper() == "TRUE"

CONTACT_EMAIL = os.getenv("CONTACT_EMAIL")
DELIVERY_WORKERS = _get_int_env("DELIVERY_WORKERS", 4)

# DEBUG Environment Variables
DEBUG_MODE = os.getenv("DEBUG_MODE", "FALSE").upper()  # TRUE or FALSE
DEBUG_EMAIL = os.getenv("DEBUG_EMAIL")  # Email address for debug emails

TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "TRUE").upper() == "TRUE"


def is_debug_mode() -> bool:
    """Check if debug mode is enabled"""
    return DEBUG_MODE == "TRUE"


def get_notification_email() -> str:
    """Get the appropriate email for admin notifications based on debug mode"""
    if is_debug_mode() and DEBUG_EMAIL:
        print(f"DEBUG MODE: Using debug email {DEBUG_EMAIL}")
        return DEBUG_EMAIL
    return CONTACT_EMAIL or SMTP_USER
