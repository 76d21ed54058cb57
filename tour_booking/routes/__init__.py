from .email import router as email_router

__all__ = ["email_router"]
