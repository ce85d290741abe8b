from __future__ import annotations

from orderflow.core.database import SessionLocal
from orderflow.core.logging_setup import configure_logging
from orderflow.services.sessions import SessionStore


def purge() -> int:
    db = SessionLocal()
    try:
        removed = SessionStore().purge_expired(db)
        print(f"expired sessions removed={removed}")
        return removed
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    configure_logging()
    purge()
