from datetime import datetime, timedelta, timezone

import pytest

from warden import clock
from warden.models.audit import AuditLogEntry
from warden.services import audit, roles
from warden.services.audit import AuditAction, AuditResource
from warden.services.roles import RequestContext

from conftest import make_role, make_user


def test_record_serialises_datetimes_and_enums(db):
    expires = datetime(2030, 1, 1, 12, 0, 0)

    entry = audit.record(
        db,
        AuditAction.ROLE_ASSIGNED,
        AuditResource.ROLE,
        details={"expires_at": expires, "action": AuditAction.LOGIN},
    )
    db.commit()

    stored = db.query(AuditLogEntry).filter(AuditLogEntry.id == entry.id).one()
    assert stored.details == {"expires_at": "2030-01-01T12:00:00", "action": "LOGIN"}


def test_audit_entries_are_write_once(db):
    entry = audit.record(db, AuditAction.LOGIN, AuditResource.AUTH)
    db.commit()

    entry.action = AuditAction.LOGOUT.value
    with pytest.raises(RuntimeError, match="write-once"):
        db.flush()
    db.rollback()

    db.delete(entry)
    with pytest.raises(RuntimeError, match="write-once"):
        db.flush()
    db.rollback()

    assert db.query(AuditLogEntry).count() == 1


def test_list_entries_filters(db):
    admin = make_user(db, "admin@example.com")
    user = make_user(db)
    role = make_role(db, context=RequestContext(actor_id=admin.id))
    roles.assign_role(db, user.id, role.id, context=RequestContext(actor_id=admin.id))

    assert [e.action for e in audit.list_entries(db, actor_id=admin.id)] == [
        AuditAction.ROLE_CREATED.value,
        AuditAction.ROLE_ASSIGNED.value,
    ]
    assert [e.action for e in audit.user_history(db, user.id)] == [AuditAction.ROLE_ASSIGNED.value]
    assert len(audit.role_history(db, role.id)) == 2
    assert len(audit.list_entries(db, action="ROLE_CREATED")) == 1
    assert audit.list_entries(db, action="NOT_AN_ACTION") == []
    assert len(audit.list_entries(db, limit=1)) == 1


def test_list_entries_time_window_accepts_aware_bounds(db):
    audit.record(db, AuditAction.LOGIN, AuditResource.AUTH)
    db.commit()
    now = clock.utcnow()

    past = (now - timedelta(minutes=5)).replace(tzinfo=timezone.utc)
    future = (now + timedelta(minutes=5)).replace(tzinfo=timezone.utc)

    assert len(audit.list_entries(db, since=past, until=future)) == 1
    assert audit.list_entries(db, since=future) == []


def test_entries_written_in_the_same_instant_keep_insertion_order(db, frozen_clock):
    for action in (AuditAction.LOGIN, AuditAction.TOKEN_REFRESH, AuditAction.LOGOUT, AuditAction.LOGIN):
        audit.record(db, action, AuditResource.AUTH)
    db.commit()

    entries = audit.list_entries(db)

    assert {entry.created_at for entry in entries} == {frozen_clock.now}
    assert [entry.action for entry in entries] == ["LOGIN", "TOKEN_REFRESH", "LOGOUT", "LOGIN"]
    assert [entry.id for entry in entries] == sorted(entry.id for entry in entries)
