"""
Security utilities for signed customer links

Customer-facing URLs (availability feedback, payment success) carry a
short-lived JWT that binds a booking requestId to exactly one purpose.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from urllib.parse import quote

import bleach
from jose import ExpiredSignatureError, JWTError
from jose import jwt as jose_jwt

from .config import FEEDBACK_LINK_SECRET, FEEDBACK_LINK_TTL_DAYS, SITE_URL

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class LinkPurpose(str, Enum):
    FEEDBACK = "feedback-link"
    PAYMENT_SUCCESS = "payment-success-link"


# ============================================================================
# JWT TOKENS
# ============================================================================


def create_jwt_token(
    data: dict[str, Any], secret: str, expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT token

    Args:
        data: Data to encode in the token
        secret: HMAC signing secret
        expires_delta: Token expiration time (default 15 minutes)
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta if expires_delta is not None else timedelta(minutes=15))

    to_encode.update({"iat": now, "exp": expire})
    return jose_jwt.encode(to_encode, secret, algorithm=ALGORITHM)


def verify_jwt_token(token: str, secret: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        logger.info(f"⌛ Link token expired: {mask_sensitive_data(token)}")
        return None
    except JWTError as e:
        logger.warning(f"⚠️ Link token verification failed: {e}")
        return None


class FeedbackLinkCodec:
    """Signs and verifies purpose-scoped booking link tokens"""

    def __init__(
        self,
        secret: str = FEEDBACK_LINK_SECRET,
        base_url: str = SITE_URL,
        ttl: timedelta = timedelta(days=FEEDBACK_LINK_TTL_DAYS),
    ):
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.ttl = ttl

    def sign(self, request_id: str, purpose: LinkPurpose, ttl: Optional[timedelta] = None) -> str:
        return create_jwt_token(
            {"requestId": request_id, "type": purpose.value},
            self.secret,
            expires_delta=ttl or self.ttl,
        )

    def verify(self, token: Optional[str], purpose: LinkPurpose) -> Optional[str]:
        """Return the requestId bound to the token, or None when it is unusable for this purpose"""
        if not token:
            return None

        payload = verify_jwt_token(token, self.secret)
        if payload is None:
            return None

        if payload.get("type") != purpose.value:
            logger.warning(
                f"⚠️ Link token purpose mismatch: expected {purpose.value}, got {payload.get('type')}"
            )
            return None

        request_id = payload.get("requestId")
        if not isinstance(request_id, str) or not request_id:
            logger.warning("⚠️ Link token has no requestId claim")
            return None

        return request_id

    def feedback_link(self, request_id: str) -> str:
        token = self.sign(request_id, LinkPurpose.FEEDBACK)
        return f"{self.base_url}/availability-feedback?token={quote(token)}"

    def payment_success_link(self, request_id: str) -> str:
        token = self.sign(request_id, LinkPurpose.PAYMENT_SUCCESS)
        return f"{self.base_url}/payment-success?token={quote(token)}"


# ============================================================================
# HELPERS
# ============================================================================


def mask_sensitive_data(data: str, visible_chars: int = 4) -> str:
    """Mask sensitive data for logging"""
    if not data or len(data) <= visible_chars:
        return "****"
    return f"{data[:visible_chars]}{'*' * 8}"


# ============================================================================
# INPUT SANITIZATION
# ============================================================================


def sanitize_html(html_content: str, allowed_tags: Optional[list] = None) -> str:
    """
    Sanitize HTML content to prevent XSS attacks

    Args:
        html_content: Raw HTML content
        allowed_tags: List of allowed HTML tags (default: safe subset)

    Returns:
        Sanitized HTML
    """
    if allowed_tags is None:
        # Safe default tags, including simple tables for booking summaries
        allowed_tags = [
            "p",
            "br",
            "hr",
            "div",
            "span",
            "strong",
            "b",
            "em",
            "i",
            "u",
            "a",
            "ul",
            "ol",
            "li",
            "h1",
            "h2",
            "h3",
            "h4",
            "blockquote",
            "table",
            "thead",
            "tbody",
            "tr",
            "th",
            "td",
        ]

    allowed_attributes = {"a": ["href", "title", "target"], "*": ["class", "align"]}

    return bleach.clean(
        html_content,
        tags=allowed_tags,
        attributes=allowed_attributes,
        strip=True,
    )
