import logging
import os

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import SessionLocal
from .models import Notification, User

logger = logging.getLogger(__name__)

BROADCAST_BATCH_SIZE = int(os.getenv("BROADCAST_BATCH_SIZE", "500"))


def notify(db: Session, user_id: int, title: str, message: str) -> Notification:
    """Queue an in-app notification on the caller's session; the caller commits."""
    n = Notification(user_id=user_id, title=title, message=message)
    db.add(n)
    return n


def broadcast(title: str, message: str, batch_size: int = BROADCAST_BATCH_SIZE) -> int:
    """
    Deliver a notification to every user.

    Runs as a background job with its own session, walking the users table by
    id in batches and committing each batch, so a large user base never sits
    in one request or one transaction.
    """
    sent = 0
    last_id = 0
    db = SessionLocal()
    try:
        while True:
            ids = db.execute(
                select(User.id).where(User.id > last_id).order_by(User.id).limit(batch_size)
            ).scalars().all()
            if not ids:
                break

            db.add_all([Notification(user_id=uid, title=title, message=message) for uid in ids])
            db.commit()
            sent += len(ids)
            last_id = ids[-1]
    except SQLAlchemyError:
        db.rollback()
        logger.exception("broadcast %r stopped after %s notifications", title, sent)
        raise
    finally:
        db.close()

    logger.info("broadcast %r delivered to %s users", title, sent)
    return sent
