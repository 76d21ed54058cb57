import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from . import models  # noqa: F401
from .auth import FirebaseIdentityProvider
from .config import ALLOWED_ORIGINS, IS_PRODUCTION, STRIPE_WEBHOOK_SECRET
from .database import Base, engine
from .domain.bookings import router as booking_router
from .domain.bookings import stripe_router, webhooks_router
from .domain.bookings.exceptions import BookingError
from .domain.bookings.notifications import BookingNotifier
from .domain.bookings.payment_links import PaymentLinkIssuer, StripePaymentLinkGateway
from .email_service import EmailService
from .routes import email_router
from .security_utils import FeedbackLinkCodec

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("stripe").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Another worker may have created them first
        if "already exists" in str(e):
            logger.info("Database tables already exist")
        else:
            raise

    try:
        from .rate_limiter import get_redis_client

        get_redis_client()
        logger.info("Redis connection established")
    except Exception as e:
        logger.warning(f"⚠️ Redis unavailable - rate-limited endpoints will answer 503: {e}")

    yield
    logger.info("Application shutting down...")


def _error_body(message: str, details: Optional[dict] = None) -> dict:
    return {"success": False, "error": message, **(details or {})}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        if exc.status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path} - {exc.message} {exc.details}")
            details = {"details": exc.details} if exc.details and not IS_PRODUCTION else None
        else:
            logger.warning(f"⚠️ {request.method} {request.url.path} - {exc.message}")
            details = exc.details
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, details))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """
        Missing Authorization headers become 401; every other schema failure is a 400
        """
        errors = exc.errors()
        for error in errors:
            if error.get("loc") and "authorization" in str(error.get("loc")).lower():
                return JSONResponse(
                    status_code=401,
                    content=_error_body(
                        "Not authenticated. Please provide a valid Bearer token in the Authorization header."
                    ),
                )

        fields = [
            {"field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"), "message": error.get("msg")}
            for error in errors
        ]
        logger.warning(f"Validation error for {request.url.path}: {fields}")
        return JSONResponse(
            status_code=400,
            content=_error_body(fields[0]["message"] if fields else "Invalid request", {"validationErrors": fields}),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict):
            detail = dict(exc.detail)
            message = detail.pop("message", "Request failed")
        else:
            detail, message = {}, str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(message, detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"❌ {request.method} {request.url.path} - Unhandled error")
        details = None if IS_PRODUCTION else {"details": str(exc)}
        return JSONResponse(status_code=500, content=_error_body("Internal server error", details))


def create_app(
    email_service: Optional[EmailService] = None,
    payment_gateway: Optional[StripePaymentLinkGateway] = None,
    identity_provider: Optional[FirebaseIdentityProvider] = None,
    link_codec: Optional[FeedbackLinkCodec] = None,
    stripe_webhook_secret: Optional[str] = STRIPE_WEBHOOK_SECRET,
) -> FastAPI:
    """Build the API with its external collaborators (real ones unless given)"""
    app = FastAPI(title="Tour Booking API", version=__version__, lifespan=lifespan)

    email_service = email_service or EmailService()
    payment_gateway = payment_gateway or StripePaymentLinkGateway()
    link_codec = link_codec or FeedbackLinkCodec()

    app.state.email_service = email_service
    app.state.notifier = BookingNotifier(email_service)
    app.state.payment_gateway = payment_gateway
    app.state.link_codec = link_codec
    app.state.payment_link_issuer = PaymentLinkIssuer(payment_gateway, link_codec)
    app.state.identity_provider = identity_provider or FirebaseIdentityProvider()
    app.state.stripe_webhook_secret = stripe_webhook_secret

    register_exception_handlers(app)

    logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(booking_router)
    app.include_router(stripe_router)
    app.include_router(webhooks_router)
    app.include_router(email_router)

    @app.get("/health")
    async def health():
        return {"success": True, "status": "healthy", "version": __version__}

    return app


app = create_app()
