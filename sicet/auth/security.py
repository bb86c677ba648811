import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ..config import Settings
from ..db import get_db
from ..errors import Forbidden, NotAuthenticated
from ..models.models import Profile
from ..services.permissions import can_access


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
http_bearer = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_mailer(request: Request):
    return request.app.state.mailer


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        return False


def _create_token(settings: Settings, sub: str, ttl_seconds: int, extra: Optional[dict] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(settings: Settings, profile: Profile) -> str:
    return _create_token(settings, str(profile.id), settings.jwt_ttl_seconds, extra={"role": profile.role, "type": "access"})


def create_refresh_token(settings: Settings, profile: Profile) -> str:
    return _create_token(settings, str(profile.id), settings.refresh_ttl_seconds, extra={"type": "refresh"})


def decode_token(settings: Settings, token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise NotAuthenticated("Token scaduto")
    except jwt.InvalidTokenError:
        raise NotAuthenticated("Token non valido")


def get_current_profile(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Profile:
    if creds is None:
        raise NotAuthenticated()
    payload = decode_token(settings, creds.credentials)
    if payload.get("type") != "access":
        raise NotAuthenticated("Token non valido")
    try:
        profile_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise NotAuthenticated("Token non valido")
    profile = db.get(Profile, profile_id)
    if profile is None or profile.status != "activated" or profile.auth_id is None:
        raise NotAuthenticated("Utente non attivo")
    return profile


def require_roles(*roles: str):
    def _dep(profile: Profile = Depends(get_current_profile)) -> Profile:
        if profile.role not in roles:
            raise Forbidden()
        return profile

    return _dep


def require_capability(resource: str, action: str):
    def _dep(profile: Profile = Depends(get_current_profile)) -> Profile:
        if not can_access(profile.role, resource, action):
            raise Forbidden()
        return profile

    return _dep
