import logging
from dataclasses import dataclass
from typing import Optional

import firebase_admin
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin import exceptions as firebase_exceptions

from .config import FIREBASE_CREDENTIALS_PATH, FIREBASE_PROJECT_ID

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass
class StaffPrincipal:
    uid: str
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def processed_by(self) -> str:
        return self.email or self.uid


class IdentityError(Exception):
    """Token rejected or user unknown to the identity provider"""


class FirebaseIdentityProvider:
    """Verify Firebase ID tokens for staff users"""

    def __init__(self, project_id: Optional[str] = FIREBASE_PROJECT_ID, credentials_path: Optional[str] = FIREBASE_CREDENTIALS_PATH):
        self.project_id = project_id
        self.credentials_path = credentials_path
        self._firebase_app = None

    def _app(self):
        if self._firebase_app is not None:
            return self._firebase_app

        try:
            self._firebase_app = firebase_admin.get_app()
        except ValueError:
            options = {"projectId": self.project_id}
            if self.credentials_path:
                cred = credentials.Certificate(self.credentials_path)
                self._firebase_app = firebase_admin.initialize_app(cred, options)
                logger.info("Firebase Admin initialized with service account")
            else:
                try:
                    cred = credentials.ApplicationDefault()
                    self._firebase_app = firebase_admin.initialize_app(cred, options)
                    logger.info("Firebase Admin initialized with default credentials")
                except Exception:
                    self._firebase_app = firebase_admin.initialize_app(options=options)
                    logger.info("Firebase Admin initialized with project ID only")
        return self._firebase_app

    def verify(self, token: str) -> StaffPrincipal:
        app = self._app()
        try:
            decoded = firebase_auth.verify_id_token(token, app=app)
        except (ValueError, firebase_exceptions.FirebaseError) as e:
            logger.warning(f"⚠️ Staff token rejected: {type(e).__name__}")
            raise IdentityError("Invalid or expired token") from e

        uid = decoded.get("uid") or decoded.get("sub")
        try:
            user = firebase_auth.get_user(uid, app=app)
        except firebase_auth.UserNotFoundError as e:
            raise IdentityError("User not found") from e
        except (ValueError, firebase_exceptions.FirebaseError) as e:
            logger.error(f"❌ Firebase user lookup failed for {uid}: {e}")
            raise IdentityError("Unable to verify user") from e

        return StaffPrincipal(uid=uid, email=user.email or decoded.get("email"), name=user.display_name)


def get_current_staff(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> StaffPrincipal:
    """Resolve the staff principal from the Authorization bearer token"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    provider = request.app.state.identity_provider
    try:
        principal = provider.verify(credentials.credentials)
    except IdentityError as e:
        raise HTTPException(status_code=403, detail=str(e)) from e

    logger.info(f"🔍 Staff request {request.url.path} by {principal.processed_by}")
    return principal
