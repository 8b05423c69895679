from sqlalchemy import select

from cloudimart.models import Notification
from cloudimart.notifications import broadcast, notify


def test_notify_waits_for_the_callers_commit(factory, db):
    user = factory.user()
    notify(db, user.id, "Hello", "Welcome to Cloudimart")
    db.rollback()
    assert db.scalars(select(Notification)).all() == []


def test_broadcast_walks_every_user_in_batches(factory, db):
    users = [factory.user() for _ in range(5)]

    sent = broadcast("Closed on Sunday", "No deliveries this Sunday.", batch_size=2)

    assert sent == 5
    rows = db.scalars(select(Notification).order_by(Notification.user_id)).all()
    assert [n.user_id for n in rows] == [u.id for u in users]
    assert {n.title for n in rows} == {"Closed on Sunday"}


def test_broadcast_with_no_users(db):
    assert broadcast("Anyone?", "Hello") == 0
