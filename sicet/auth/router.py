import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..config import Settings
from ..db import get_db
from ..errors import Conflict, NotAuthenticated, NotFound, ValidationFailed
from ..models.models import Profile
from ..schemas.auth import (
    EmailRequest,
    LoginRequest,
    MeResponse,
    PasswordRequest,
    PreregisterRequest,
    RefreshRequest,
    TokenResponse,
)
from .security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_profile,
    get_password_hash,
    get_settings,
    require_roles,
    verify_password,
)


router = APIRouter(prefix="/api/auth", tags=["auth"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


def _profile_by_email(db: Session, email: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.email == email.strip().lower()).first()


def _serialize_profile(p: Profile) -> dict:
    return {
        "id": str(p.id),
        "email": p.email,
        "role": p.role,
        "status": p.status,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _tokens(settings: Settings, profile: Profile) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(settings, profile),
        refresh_token=create_refresh_token(settings, profile),
    )


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    profile = _profile_by_email(db, req.email)
    if not profile or profile.status != "activated" or not verify_password(req.password, profile.password_hash):
        raise NotAuthenticated("Credenziali non valide")
    profile.last_login_at = datetime.now(timezone.utc)
    db.commit()
    return _tokens(settings, profile)


@router.post("/refresh", response_model=TokenResponse)
def refresh(req: RefreshRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    payload = decode_token(settings, req.refresh_token)
    if payload.get("type") != "refresh":
        raise NotAuthenticated("Token non valido")
    try:
        profile = db.get(Profile, uuid.UUID(str(payload.get("sub"))))
    except ValueError:
        raise NotAuthenticated("Token non valido")
    if not profile or profile.status != "activated":
        raise NotAuthenticated("Utente non attivo")
    return _tokens(settings, profile)


@router.get("/me", response_model=MeResponse)
def me(profile: Profile = Depends(get_current_profile)):
    return MeResponse(id=str(profile.id), email=profile.email, role=profile.role, status=profile.status)


@router.post("/signup")
def signup(req: PasswordRequest, db: Session = Depends(get_db)):
    profile = _profile_by_email(db, req.email)
    if not profile:
        raise NotFound("Email non pre-registrata")
    if profile.status != "registered":
        raise ValidationFailed("Account già attivato o non abilitato alla registrazione")
    profile.auth_id = uuid.uuid4()
    profile.password_hash = get_password_hash(req.password)
    profile.status = "activated"
    db.commit()
    structlog.get_logger().info("profile_activated", profile_id=str(profile.id))
    return {"success": True, "message": "Registrazione completata"}


@router.post("/reset-password")
def reset_password(req: PasswordRequest, db: Session = Depends(get_db)):
    profile = _profile_by_email(db, req.email)
    if not profile:
        raise NotFound("Utente non trovato")
    if profile.status != "reset-password":
        raise ValidationFailed("Reset password non richiesto per questo utente")
    if profile.auth_id is None:
        profile.auth_id = uuid.uuid4()
    profile.password_hash = get_password_hash(req.password)
    profile.status = "activated"
    db.commit()
    structlog.get_logger().info("profile_password_reset", profile_id=str(profile.id))
    return {"success": True, "message": "Password aggiornata"}


@admin_router.post("/preregister", status_code=201)
def preregister(req: PreregisterRequest, db: Session = Depends(get_db), admin: Profile = Depends(require_roles("admin"))):
    email = req.email.strip().lower()
    profile = _profile_by_email(db, email)
    if profile is not None:
        if profile.status != "deleted":
            raise Conflict("Email già registrata")
        # restored accounts must sign up again
        profile.status = "registered"
        profile.role = req.role
        profile.auth_id = None
        profile.password_hash = None
        message = "Utente ripristinato"
    else:
        profile = Profile(email=email, role=req.role, status="registered")
        db.add(profile)
        message = "Utente pre-registrato"
    db.commit()
    db.refresh(profile)
    structlog.get_logger().info("profile_preregistered", profile_id=str(profile.id), role=profile.role, admin_id=str(admin.id))
    return {"success": True, "message": message, "profile": _serialize_profile(profile)}


@admin_router.get("/users")
def list_users(status: Optional[str] = None, db: Session = Depends(get_db), _: Profile = Depends(require_roles("admin"))):
    query = db.query(Profile)
    if status:
        query = query.filter(Profile.status == status)
    return [_serialize_profile(p) for p in query.order_by(Profile.created_at.desc()).all()]


@admin_router.post("/reset-password")
def force_password_reset(req: EmailRequest, db: Session = Depends(get_db), admin: Profile = Depends(require_roles("admin"))):
    profile = _profile_by_email(db, req.email)
    if not profile or profile.status == "deleted":
        raise NotFound("Utente non trovato")
    if profile.status == "registered":
        raise ValidationFailed("L'utente non ha ancora completato la registrazione")
    profile.status = "reset-password"
    db.commit()
    structlog.get_logger().info("profile_reset_requested", profile_id=str(profile.id), admin_id=str(admin.id))
    return {"success": True, "message": "Reset password richiesto"}


@admin_router.delete("/users")
def delete_user(email: str, db: Session = Depends(get_db), admin: Profile = Depends(require_roles("admin"))):
    profile = _profile_by_email(db, email)
    if not profile or profile.status == "deleted":
        raise NotFound("Utente non trovato")
    if profile.id == admin.id:
        raise ValidationFailed("Non puoi eliminare il tuo account")
    profile.status = "deleted"
    profile.auth_id = None
    profile.password_hash = None
    db.commit()
    structlog.get_logger().info("profile_deleted", profile_id=str(profile.id), admin_id=str(admin.id))
    return {"success": True, "message": "Utente eliminato"}
