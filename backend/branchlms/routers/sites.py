from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from branchlms.db.session import get_db
from branchlms.models.site import Site

router = APIRouter(prefix="/sites", tags=["sites"])


@router.get("")
def list_sites(db: Session = Depends(get_db)):
    """Sites offered on the login screen."""
    rows = db.scalars(select(Site).order_by(Site.is_core.desc(), Site.name.asc())).all()
    return {"items": [{"id": s.id, "name": s.name, "is_core": s.is_core} for s in rows]}
