from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from branchlms.core.config import settings
from branchlms.db.session import get_db
from branchlms.db.site_scope import SiteScope
from branchlms.models.site import Site
from branchlms.models.user import User, UserRole


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


@dataclass(frozen=True)
class CurrentSession:
    """Authenticated user plus the site the request acts on."""

    user: User
    site_id: str

    @property
    def is_admin(self) -> bool:
        return self.user.role == UserRole.admin

    @property
    def is_super_admin(self) -> bool:
        return self.is_admin and self.user.site_id == settings.primary_site_id

    def scope(self, db: Session) -> SiteScope:
        return SiteScope(site_id=self.site_id, db=db)


def get_current_session(
    request: Request,
    db: Session = Depends(get_db),
    token: str = Depends(oauth2_scheme),
) -> CurrentSession:
    if not token:
        token = request.cookies.get("branchlms_token")
    if not token:
        raise HTTPException(status_code=401, detail="not authenticated")

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            issuer=str(settings.jwt_issuer),
        )
        user_id = payload.get("sub")
        site_id = str(payload.get("site") or "").strip()
        if not user_id or not site_id:
            raise HTTPException(status_code=401, detail="invalid token")
    except JWTError as e:
        raise HTTPException(status_code=401, detail="invalid token") from e

    try:
        user_id = uuid.UUID(str(user_id))
    except ValueError as e:
        raise HTTPException(status_code=401, detail="invalid token") from e

    user = db.scalar(select(User).where(User.id == user_id))
    if user is None:
        raise HTTPException(status_code=401, detail="invalid token")

    # Only super admins may act on a site other than their own.
    is_super = user.role == UserRole.admin and user.site_id == settings.primary_site_id
    if site_id != user.site_id and not is_super:
        raise HTTPException(status_code=401, detail="invalid token")
    if db.get(Site, site_id) is None:
        raise HTTPException(status_code=401, detail="invalid token")

    request.state.user_id = str(user.id)
    request.state.site_id = site_id
    return CurrentSession(user=user, site_id=site_id)


def get_current_user(session: CurrentSession = Depends(get_current_session)) -> User:
    return session.user


def require_admin(session: CurrentSession = Depends(get_current_session)) -> CurrentSession:
    if not session.is_admin:
        raise HTTPException(status_code=403, detail="forbidden")
    return session


def require_super_admin(session: CurrentSession = Depends(get_current_session)) -> CurrentSession:
    if not session.is_super_admin:
        raise HTTPException(status_code=403, detail="forbidden")
    return session
