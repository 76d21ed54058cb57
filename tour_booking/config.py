import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# "development" or "production" - error details are only exposed outside production
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION = ENVIRONMENT == "production"

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookings.db")

# Firebase Configuration (staff identity provider)
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH")

# Stripe Configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
PAYMENT_LINK_TTL_HOURS = int(os.getenv("PAYMENT_LINK_TTL_HOURS", "24"))

# Signed customer links (availability feedback, payment success)
FEEDBACK_LINK_SECRET = os.getenv("FEEDBACK_LINK_SECRET")
if not FEEDBACK_LINK_SECRET:
    import secrets
    import warnings

    warnings.warn(
        "FEEDBACK_LINK_SECRET not set! Using a random per-process secret - links will not survive a restart",
        RuntimeWarning,
        stacklevel=2,
    )
    FEEDBACK_LINK_SECRET = secrets.token_urlsafe(32)
FEEDBACK_LINK_TTL_DAYS = int(os.getenv("FEEDBACK_LINK_TTL_DAYS", "2"))

# Public site base URL used to build customer-facing links
SITE_URL = os.getenv("SITE_URL", "http://localhost:3000").rstrip("/")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "EY Travel Egypt <noreply@eytravelegypt.com>")
STAFF_NOTIFICATION_EMAIL = os.getenv("STAFF_NOTIFICATION_EMAIL", "info@eytravelegypt.com")
BUSINESS_NAME = os.getenv("BUSINESS_NAME", "EY Travel Egypt")

# Human-facing booking reference prefix, e.g. EYT-1718000000000-123456
REQUEST_ID_PREFIX = os.getenv("REQUEST_ID_PREFIX", "EYT")

ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "https://eytravelegypt.com,https://www.eytravelegypt.com,http://localhost:3000",
).split(",")
