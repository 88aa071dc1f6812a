import hashlib
import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.security import OAuth2PasswordRequestForm
from jose import jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from branchlms.core.config import settings
from branchlms.core.rate_limit import client_ip, rate_limit
from branchlms.core.security import CurrentSession, get_current_session, require_super_admin
from branchlms.core.security_audit_log import audit_log
from branchlms.db.base import utcnow
from branchlms.db.session import get_db
from branchlms.db.site_scope import SiteScope
from branchlms.models.site import Site
from branchlms.models.user import User, UserKind, UserRole

router = APIRouter(prefix="/auth", tags=["auth"])

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int | None = None
    site_id: str


class MeResponse(BaseModel):
    id: str
    name: str
    full_name: str | None
    role: str
    kind: str
    position: str | None
    home_site_id: str
    site_id: str
    is_super_admin: bool


class RegisterRequest(BaseModel):
    name: str = Field(min_length=3, max_length=200)
    full_name: str | None = None
    position: str | None = None
    password: str


class SwitchSiteRequest(BaseModel):
    site_id: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(*, user_id: str, role: str, site_id: str) -> str:
    now = utcnow()
    expire = now + timedelta(minutes=settings.jwt_access_token_minutes)
    payload = {
        "sub": user_id,
        "role": role,
        "site": site_id,
        "iat": now,
        "exp": expire,
        "iss": str(settings.jwt_issuer),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def _token_response(user: User, site_id: str) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user_id=str(user.id), role=user.role.value, site_id=site_id),
        expires_in=int(settings.jwt_access_token_minutes) * 60,
        site_id=site_id,
    )


def _device_hash(*, user_agent: str) -> str:
    raw = (str(user_agent or "").strip() + "|" + str(settings.jwt_secret_key or "")).encode("utf-8", errors="ignore")
    return hashlib.sha256(raw).hexdigest()


@router.post("/register", response_model=TokenResponse)
def register(
    request: Request,
    payload: RegisterRequest,
    db: Session = Depends(get_db),
    _: object = rate_limit(key_prefix="auth_register", limit=10, window_seconds=60),
):
    """Self sign-up, open to external learners only."""
    if not settings.allow_public_register:
        raise HTTPException(status_code=403, detail="registration disabled")

    if not payload.password or len(payload.password) < int(settings.password_min_length or 0):
        raise HTTPException(status_code=400, detail="password too short")

    site_id = settings.external_site_id
    if db.get(Site, site_id) is None:
        raise HTTPException(status_code=503, detail="external site is not configured")

    scope = SiteScope(site_id=site_id, db=db)
    name = payload.name.strip()
    if scope.find_user_by_name(name) is not None:
        audit_log(db=db, request=request, event_type="auth_register_failed", site_id=site_id, meta={"reason": "user_exists", "username": name})
        db.commit()
        raise HTTPException(status_code=409, detail="user already exists")

    user = User(
        site_id=site_id,
        name=name,
        full_name=payload.full_name,
        position=payload.position,
        role=UserRole.employee,
        kind=UserKind.external,
        password_hash=hash_password(payload.password),
    )
    db.add(user)
    db.flush()
    audit_log(db=db, request=request, event_type="auth_register_success", site_id=site_id, actor_user_id=user.id, target_user_id=user.id)
    db.commit()

    return _token_response(user, site_id)


@router.post("/token", response_model=TokenResponse)
def token(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    site_id: str = Form(default=""),
    db: Session = Depends(get_db),
    _: object = rate_limit(key_prefix="auth_token", limit=20, window_seconds=60),
):
    sid = site_id.strip() or settings.primary_site_id
    if db.get(Site, sid) is None:
        raise HTTPException(status_code=400, detail="invalid site specified")

    user = SiteScope(site_id=sid, db=db).find_user_by_name(form_data.username)
    if user is None or not verify_password(form_data.password, user.password_hash):
        audit_log(db=db, request=request, event_type="auth_login_failed", site_id=sid, meta={"username": form_data.username})
        db.commit()
        raise HTTPException(status_code=401, detail="invalid credentials")

    ua = str(request.headers.get("user-agent") or "").strip()
    audit_log(
        db=db,
        request=request,
        event_type="auth_login_success",
        site_id=sid,
        actor_user_id=user.id,
        target_user_id=user.id,
        meta={"ip": client_ip(request), "device_hash": _device_hash(user_agent=ua)},
    )
    db.commit()

    return _token_response(user, sid)


@router.get("/me", response_model=MeResponse)
def me(session: CurrentSession = Depends(get_current_session)):
    user = session.user
    return {
        "id": str(user.id),
        "name": user.name,
        "full_name": user.full_name,
        "role": user.role.value,
        "kind": user.kind.value,
        "position": user.position,
        "home_site_id": user.site_id,
        "site_id": session.site_id,
        "is_super_admin": session.is_super_admin,
    }


@router.post("/switch-site", response_model=TokenResponse)
def switch_site(
    request: Request,
    body: SwitchSiteRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_super_admin),
):
    sid = body.site_id.strip()
    if db.get(Site, sid) is None:
        raise HTTPException(status_code=400, detail="invalid site specified")

    audit_log(
        db=db,
        request=request,
        event_type="auth_switch_site",
        site_id=sid,
        actor_user_id=session.user.id,
        meta={"from": session.site_id, "to": sid},
    )
    db.commit()
    return _token_response(session.user, sid)
