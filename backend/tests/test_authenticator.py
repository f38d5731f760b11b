import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from warden.config import get_settings
from warden.database import Base
from warden.errors import BadRequestError, ConflictError, NotFoundError, TokenReplayError, UnauthorizedError
from warden.models.audit import AuditLogEntry
from warden.models.auth import RefreshSession, RevokeReason
from warden.models.rbac import UserRole
from warden.models.user import User
from warden.services import audit, authenticator, credentials, roles, sessions
from warden.services.permissions import assign_permission_to_role
from warden.services.audit import AuditAction
from warden.services.roles import RequestContext
from warden.services.tokens import decode_access_token, hash_refresh_token

from conftest import PASSWORD, make_permission, make_role, make_user


def _actions(db):
    return [entry.action for entry in db.query(AuditLogEntry).order_by(AuditLogEntry.id).all()]


def test_register_assigns_default_role_and_issues_tokens(db):
    role = make_role(db, "MEMBER", is_default=True)

    result = authenticator.register(db, "New@Example.com", PASSWORD, profile={"first_name": "Ada"})

    assert result.user.email == "new@example.com"
    assert result.user.first_name == "Ada"
    claims = decode_access_token(result.tokens.access_token)
    assert claims.subject == result.user.id
    assert claims.roles == {"MEMBER"}
    assert db.query(UserRole).filter(UserRole.user_id == result.user.id, UserRole.role_id == role.id).count() == 1
    assert AuditAction.REGISTER.value in _actions(db)


def test_register_without_default_role_still_succeeds(db):
    result = authenticator.register(db, "plain@example.com", PASSWORD)

    assert decode_access_token(result.tokens.access_token).roles == frozenset()


def test_register_duplicate_email_leaves_no_trace(db):
    authenticator.register(db, "taken@example.com", PASSWORD)
    before = db.query(AuditLogEntry).count()

    with pytest.raises(ConflictError):
        authenticator.register(db, " TAKEN@example.com ", PASSWORD)

    assert db.query(AuditLogEntry).count() == before


def test_email_index_rejects_duplicate_missed_by_the_lookup(db, monkeypatch):
    authenticator.register(db, "taken@example.com", PASSWORD)
    before = db.query(AuditLogEntry).count()
    monkeypatch.setattr(credentials, "get_user_by_email", lambda db, email: None)

    with pytest.raises(ConflictError, match="already exists"):
        authenticator.register(db, "Taken@Example.com", PASSWORD)

    assert db.query(User).count() == 1
    assert db.query(AuditLogEntry).count() == before


def test_login_embeds_resolved_permissions_in_access_token(db):
    user = make_user(db)
    role = make_role(db)
    permission = make_permission(db)
    assign_permission_to_role(db, role.id, permission.id)
    roles.assign_role(db, user.id, role.id)

    result = authenticator.login(db, user.email, PASSWORD, user_agent="pytest", ip_address="10.0.0.1")

    claims = decode_access_token(result.tokens.access_token)
    assert claims.roles == {"EDITOR"}
    assert claims.permissions == {"EDIT_DOCUMENT"}
    assert result.user.last_login_at is not None
    session = sessions.find_session(db, hash_refresh_token(result.tokens.refresh_token))
    assert session.user_agent == "pytest"
    assert session.ip_address == "10.0.0.1"


def test_login_failures_share_one_message(db):
    user = make_user(db)

    with pytest.raises(UnauthorizedError) as wrong_password:
        authenticator.login(db, user.email, "WrongPass123!")
    with pytest.raises(UnauthorizedError) as unknown:
        authenticator.login(db, "ghost@example.com", PASSWORD)

    assert wrong_password.value.message == unknown.value.message == "Invalid credentials"


def test_inactive_user_cannot_login(db):
    user = make_user(db)
    authenticator.set_user_status(db, user.id, False, RequestContext())

    with pytest.raises(UnauthorizedError, match="Invalid credentials"):
        authenticator.login(db, user.email, PASSWORD)


def test_login_refresh_logout_scenario(db):
    user = make_user(db)

    first = authenticator.login(db, user.email, PASSWORD)
    second = authenticator.refresh(db, first.tokens.refresh_token)
    assert second.tokens.refresh_token != first.tokens.refresh_token

    rotated = sessions.find_session(db, hash_refresh_token(first.tokens.refresh_token))
    current = sessions.find_session(db, hash_refresh_token(second.tokens.refresh_token))
    assert rotated.revoke_reason == RevokeReason.ROTATED
    assert current.rotated_from_id == rotated.id

    assert authenticator.logout(db, second.tokens.refresh_token) is True
    assert authenticator.logout(db, second.tokens.refresh_token) is False

    with pytest.raises(UnauthorizedError) as exc_info:
        authenticator.refresh(db, second.tokens.refresh_token)
    assert not isinstance(exc_info.value, TokenReplayError)

    assert sorted(_actions(db)) == sorted(
        [AuditAction.LOGIN.value, AuditAction.TOKEN_REFRESH.value, AuditAction.LOGOUT.value]
    )


def test_replayed_refresh_token_revokes_every_session(db):
    user = make_user(db)
    laptop = authenticator.login(db, user.email, PASSWORD)
    phone = authenticator.login(db, user.email, PASSWORD)
    authenticator.refresh(db, laptop.tokens.refresh_token)

    with pytest.raises(TokenReplayError) as exc_info:
        authenticator.refresh(db, laptop.tokens.refresh_token)

    assert exc_info.value.user_id == user.id
    assert sessions.list_active_sessions(db, user.id) == []
    with pytest.raises(UnauthorizedError):
        authenticator.refresh(db, phone.tokens.refresh_token)

    reuse = db.query(AuditLogEntry).filter(AuditLogEntry.action == AuditAction.REFRESH_TOKEN_REUSE.value).one()
    assert reuse.details["sessions_revoked"] == 2


def test_replay_can_be_configured_to_leave_other_sessions(db, monkeypatch):
    settings = get_settings().model_copy(update={"refresh_reuse_revokes_all": False})
    monkeypatch.setattr(authenticator, "get_settings", lambda: settings)

    user = make_user(db)
    laptop = authenticator.login(db, user.email, PASSWORD)
    phone = authenticator.login(db, user.email, PASSWORD)
    authenticator.refresh(db, laptop.tokens.refresh_token)

    with pytest.raises(TokenReplayError):
        authenticator.refresh(db, laptop.tokens.refresh_token)

    assert authenticator.refresh(db, phone.tokens.refresh_token).user.id == user.id


def test_expired_refresh_token_is_rejected(db, frozen_clock):
    user = make_user(db)
    result = authenticator.login(db, user.email, PASSWORD)

    frozen_clock.advance(days=get_settings().refresh_token_expire_days, seconds=1)

    with pytest.raises(UnauthorizedError, match="Invalid or expired refresh token"):
        authenticator.refresh(db, result.tokens.refresh_token)


def test_unknown_refresh_token_is_rejected(db):
    with pytest.raises(UnauthorizedError, match="Invalid or expired refresh token"):
        authenticator.refresh(db, "not-a-real-token")


def test_refresh_for_deactivated_user_fails(db):
    user = make_user(db)
    result = authenticator.login(db, user.email, PASSWORD)
    user.is_active = False
    db.commit()

    with pytest.raises(UnauthorizedError, match="inactive"):
        authenticator.refresh(db, result.tokens.refresh_token)

    # The failed rotation was rolled back with everything else.
    session = sessions.find_session(db, hash_refresh_token(result.tokens.refresh_token))
    assert session.revoked_at is None


def test_deactivate_user_revokes_sessions(db):
    user = make_user(db)
    admin = make_user(db, "admin@example.com")
    authenticator.login(db, user.email, PASSWORD)

    authenticator.set_user_status(db, user.id, False, RequestContext(actor_id=admin.id), reason="left the team")

    assert sessions.list_active_sessions(db, user.id) == []
    entry = db.query(AuditLogEntry).filter(AuditLogEntry.action == AuditAction.USER_DEACTIVATED.value).one()
    assert entry.actor_id == admin.id
    assert entry.target_user_id == user.id
    assert entry.details == {"reason": "left the team", "sessions_revoked": 1}


def test_reactivated_user_can_login_again(db):
    user = make_user(db)
    admin = make_user(db, "admin@example.com")
    context = RequestContext(actor_id=admin.id)
    authenticator.set_user_status(db, user.id, False, context)

    reactivated = authenticator.set_user_status(db, user.id, True, context)

    assert reactivated.is_active is True
    assert authenticator.login(db, user.email, PASSWORD).user.id == user.id
    entry = db.query(AuditLogEntry).filter(AuditLogEntry.action == AuditAction.USER_ACTIVATED.value).one()
    assert entry.details == {"reason": None}


def test_activating_leaves_existing_sessions_alone(db):
    user = make_user(db)
    authenticator.login(db, user.email, PASSWORD)

    authenticator.set_user_status(db, user.id, True, RequestContext())

    assert len(sessions.list_active_sessions(db, user.id)) == 1


def test_admin_cannot_deactivate_own_account(db):
    admin = make_user(db, "admin@example.com")
    authenticator.login(db, admin.email, PASSWORD)
    before = db.query(AuditLogEntry).count()

    with pytest.raises(BadRequestError, match="your own account"):
        authenticator.set_user_status(db, admin.id, False, RequestContext(actor_id=admin.id))

    db.refresh(admin)
    assert admin.is_active is True
    assert len(sessions.list_active_sessions(db, admin.id)) == 1
    assert db.query(AuditLogEntry).count() == before


def test_set_user_verification_is_audited(db):
    user = make_user(db)
    admin = make_user(db, "admin@example.com")

    context = RequestContext(actor_id=admin.id)

    verified = authenticator.set_user_verification(db, user.id, True, context, reason="id checked")

    assert verified.is_verified is True
    entry = (
        db.query(AuditLogEntry)
        .filter(AuditLogEntry.action == AuditAction.USER_VERIFICATION_CHANGED.value)
        .one()
    )
    assert entry.target_user_id == user.id
    assert entry.details == {"is_verified": True, "previous": False, "reason": "id checked"}


def test_status_change_for_unknown_user_is_not_found(db):
    with pytest.raises(NotFoundError):
        authenticator.set_user_status(db, "missing-user", False, RequestContext())
    with pytest.raises(NotFoundError):
        authenticator.set_user_verification(db, "missing-user", True, RequestContext())


def test_password_beyond_bcrypt_limit_fails_login_cleanly(db):
    user = make_user(db)
    too_long = "x" * 73

    with pytest.raises(UnauthorizedError, match="Invalid credentials"):
        authenticator.login(db, user.email, too_long)
    with pytest.raises(UnauthorizedError, match="Invalid credentials"):
        authenticator.login(db, "ghost@example.com", too_long)


def test_register_rejects_password_over_72_bytes(db):
    # 72 characters, 144 bytes.
    with pytest.raises(BadRequestError, match="72 bytes"):
        authenticator.register(db, "accent@example.com", "é" * 72)

    assert db.query(AuditLogEntry).count() == 0


def test_logout_all_counts_revoked_sessions(db):
    user = make_user(db)
    authenticator.login(db, user.email, PASSWORD)
    authenticator.login(db, user.email, PASSWORD)

    assert authenticator.logout_all(db, user.id) == 2
    assert authenticator.logout_all(db, user.id) == 0


def test_login_rolls_back_when_audit_write_fails(db, monkeypatch):
    user = make_user(db)

    def broken_record(*args, **kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(audit, "record", broken_record)

    with pytest.raises(RuntimeError, match="audit store down"):
        authenticator.login(db, user.email, PASSWORD)

    assert db.query(RefreshSession).count() == 0
    assert db.query(AuditLogEntry).count() == 0
    db.refresh(user)
    assert user.last_login_at is None


def test_authenticate_access_token_rejects_inactive_user(db):
    user = make_user(db)
    result = authenticator.login(db, user.email, PASSWORD)
    assert authenticator.authenticate_access_token(db, result.tokens.access_token).id == user.id

    user.is_active = False
    db.commit()

    with pytest.raises(UnauthorizedError):
        authenticator.authenticate_access_token(db, result.tokens.access_token)


def test_stale_reader_cannot_rotate_an_already_rotated_token(tmp_path):
    # Two sessions on one database both see the refresh session as live
    # before either rotates it; only the first rotation may succeed.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    SessionFactory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    setup = SessionFactory()
    user = make_user(setup)
    refresh_token = authenticator.login(setup, user.email, PASSWORD).tokens.refresh_token
    setup.close()

    token_hash = hash_refresh_token(refresh_token)
    first, second = SessionFactory(), SessionFactory()
    try:
        assert sessions.find_session(first, token_hash).revoked_at is None
        assert sessions.find_session(second, token_hash).revoked_at is None

        winner = authenticator.refresh(first, refresh_token)
        assert winner.tokens.refresh_token

        with pytest.raises(UnauthorizedError):
            authenticator.refresh(second, refresh_token)
    finally:
        first.close()
        second.close()
        engine.dispose()

    check = SessionFactory()
    try:
        refresh_audits = (
            check.query(AuditLogEntry)
            .filter(AuditLogEntry.action == AuditAction.TOKEN_REFRESH.value)
            .count()
        )
        assert refresh_audits == 1
    finally:
        check.close()
