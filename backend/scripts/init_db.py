from __future__ import annotations

import argparse
import logging
import os
import sys

sys.path.append(os.getcwd())

from branchlms.core.config import settings
from branchlms.db.base import Base
from branchlms.db.session import SessionLocal, engine
from branchlms.models import Site, User, UserKind, UserRole
from branchlms.routers.auth import hash_password

log = logging.getLogger("branchlms.init_db")


def main() -> int:
    ap = argparse.ArgumentParser(description="Seed the primary and external sites and a super admin.")
    ap.add_argument("--admin-name", default="admin")
    ap.add_argument("--admin-password", default=os.getenv("BRANCHLMS_ADMIN_PASSWORD"))
    ap.add_argument("--create-tables", action="store_true", help="create tables without alembic (local dev only)")
    ap.add_argument("--site", action="append", default=[], metavar="ID=NAME", help="extra branch site to create")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    if args.create_tables:
        Base.metadata.create_all(bind=engine)

    wanted = {settings.primary_site_id: ("Main", True), settings.external_site_id: ("External", False)}
    for raw in args.site:
        sid, _, name = str(raw).partition("=")
        if sid.strip():
            wanted[sid.strip()] = (name.strip() or sid.strip(), False)

    db = SessionLocal()
    try:
        for sid, (name, is_core) in wanted.items():
            if db.get(Site, sid) is None:
                db.add(Site(id=sid, name=name, is_core=is_core))
                log.info("site created id=%s", sid)
        db.flush()

        if args.admin_password:
            exists = db.query(User).filter(User.site_id == settings.primary_site_id, User.name == args.admin_name).first()
            if exists is None:
                db.add(
                    User(
                        site_id=settings.primary_site_id,
                        name=args.admin_name,
                        role=UserRole.admin,
                        kind=UserKind.employee,
                        password_hash=hash_password(args.admin_password),
                    )
                )
                log.info("super admin created name=%s", args.admin_name)
        else:
            log.info("no admin password given, skipping super admin")
        db.commit()
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
