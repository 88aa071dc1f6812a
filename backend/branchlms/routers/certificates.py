from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from branchlms.core.rate_limit import rate_limit
from branchlms.db.session import get_db
from branchlms.services.certificates import validate_certificate

router = APIRouter(prefix="/certificates", tags=["certificates"])


@router.get("/validate")
def validate(
    number: str = Query(min_length=1, max_length=64),
    site_id: str = Query(min_length=1, max_length=64),
    db: Session = Depends(get_db),
    _: object = rate_limit(key_prefix="certificate_validate", limit=30, window_seconds=60),
):
    """Public certificate check; no login required."""
    return validate_certificate(db, number, site_id)
