"""
Identity verification and authorization checks.

Callers present a Firebase ID token as ``Authorization: Bearer <token>``.
``get_identity`` turns it into an ``Identity`` that handlers receive as a
dependency value; the guard functions then decide whether that identity may
act on a lesson.
"""
import base64
import json
from typing import Optional

import firebase_admin
import structlog
from bson import ObjectId
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials, exceptions
from pydantic import BaseModel
from pymongo.database import Database

from database import LESSONS, USERS, get_db

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"

bearer_scheme = HTTPBearer(auto_error=False)


class Identity(BaseModel):
    email: str
    uid: Optional[str] = None


class InvalidToken(Exception):
    pass


class FirebaseVerifier:
    def __init__(self, app: firebase_admin.App):
        self.app = app

    @classmethod
    def from_service_key(cls, encoded_key: str) -> "FirebaseVerifier":
        service_account = json.loads(base64.b64decode(encoded_key).decode("utf-8"))
        app = firebase_admin.initialize_app(credentials.Certificate(service_account))
        return cls(app)

    def verify(self, token: str) -> Identity:
        try:
            decoded = firebase_auth.verify_id_token(token, app=self.app)
        except (ValueError, exceptions.FirebaseError) as e:
            raise InvalidToken(str(e))
        email = decoded.get("email")
        if not email:
            raise InvalidToken("Token carries no email")
        return Identity(email=email, uid=decoded.get("uid"))


def get_token_verifier(request: Request):
    return getattr(request.app.state, "verifier", None)


def get_identity(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    verifier=Depends(get_token_verifier),
) -> Identity:
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized access",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if creds is None or not creds.credentials:
        raise unauthorized
    if verifier is None:
        raise HTTPException(status_code=500, detail="Identity verification is not configured")
    try:
        return verifier.verify(creds.credentials)
    except InvalidToken as e:
        logger.info("token_rejected", reason=str(e))
        raise unauthorized


def user_role(db: Database, email: str) -> Optional[str]:
    user = db[USERS].find_one({"email": email}, {"role": 1})
    return (user or {}).get("role")


def require_owner_or_admin(db: Database, lesson_id: ObjectId, identity: Identity) -> dict:
    """Return the lesson if ``identity`` wrote it or is an admin."""
    lesson = db[LESSONS].find_one({"_id": lesson_id})
    if not lesson:
        raise HTTPException(status_code=404, detail="Lesson not found")
    is_owner = lesson.get("email") == identity.email
    if not is_owner and user_role(db, identity.email) != ADMIN_ROLE:
        logger.info("lesson_access_denied", lesson_id=str(lesson_id), email=identity.email)
        raise HTTPException(status_code=403, detail="Forbidden access")
    return lesson


def require_admin(
    identity: Identity = Depends(get_identity),
    db: Database = Depends(get_db),
) -> Identity:
    if user_role(db, identity.email) != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin access required")
    return identity
