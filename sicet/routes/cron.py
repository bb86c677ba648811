import secrets
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..auth.security import get_mailer, get_settings, require_roles
from ..config import Settings
from ..db import get_db
from ..errors import NotAuthenticated
from ..models.models import Profile
from ..services.overdue_alerts import process_overdue_todolists


router = APIRouter(prefix="/api/cron", tags=["cron"])


def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    expected = settings.cron_secret_token
    if not expected:
        structlog.get_logger().warning("cron_secret_not_configured")
        raise NotAuthenticated("Non autorizzato")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip().encode(), expected.encode()):
        raise NotAuthenticated("Non autorizzato")


def _run(db: Session, settings: Settings, mailer, trigger: str) -> dict:
    result = process_overdue_todolists(db, settings, mailer)
    structlog.get_logger().info("overdue_check_completed", trigger=trigger, processed=result["processed"], errors=result["errors"])
    return {
        "success": True,
        "message": f"Elaborate {result['processed']} todolist scadute, {result['errors']} errori",
        **result,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/check-overdue-todolists", dependencies=[Depends(verify_cron_secret)])
def check_overdue_todolists(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer=Depends(get_mailer),
):
    return _run(db, settings, mailer, "cron")


@router.get("/check-overdue-todolists")
def check_overdue_todolists_manual(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer=Depends(get_mailer),
    admin: Profile = Depends(require_roles("admin")),
):
    return _run(db, settings, mailer, f"manual:{admin.id}")
