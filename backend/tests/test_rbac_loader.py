from warden.models.rbac import Permission, Role, RolePermission
from warden.services import access, roles
from warden.services.permissions import get_role_permissions
from warden.services.rbac_loader import load_rbac_config

from conftest import make_role, make_user


def test_baseline_config_seeds_roles_and_permissions(db):
    counts = load_rbac_config(db)

    assert counts["permissions"] == db.query(Permission).count() == 16
    assert counts["roles"] == 2
    admin_role = roles.get_role_by_name(db, "ADMIN")
    assert len(get_role_permissions(db, admin_role.id)) == 16
    assert roles.get_default_role(db).name == "USER"


def test_loading_twice_changes_nothing(db):
    load_rbac_config(db)
    grants = db.query(RolePermission).count()

    assert load_rbac_config(db) == {"permissions": 0, "roles": 0, "grants": 0}
    assert db.query(RolePermission).count() == grants


def test_existing_default_role_is_kept(db):
    make_role(db, "MEMBER", is_default=True)

    load_rbac_config(db)

    assert roles.get_default_role(db).name == "MEMBER"
    assert roles.get_role_by_name(db, "USER").is_default is False


def test_deactivated_grant_stays_deactivated(db):
    load_rbac_config(db)
    user_role = roles.get_role_by_name(db, "USER")
    db.query(RolePermission).filter(RolePermission.role_id == user_role.id).update({"is_active": False})
    db.commit()

    load_rbac_config(db)

    user = make_user(db)
    roles.assign_role(db, user.id, user_role.id)
    assert access.get_user_permissions(db, user.id).permissions == frozenset()


def test_custom_file_with_unknown_permission(db, tmp_path):
    config = tmp_path / "rbac.yaml"
    config.write_text(
        "permissions:\n"
        "  - {name: VIEW_REPORT, resource: REPORT, action: READ}\n"
        "roles:\n"
        "  - name: ANALYST\n"
        "    permissions: [VIEW_REPORT, DOES_NOT_EXIST]\n"
    )

    counts = load_rbac_config(db, config)

    assert counts == {"permissions": 1, "roles": 1, "grants": 1}
    assert db.query(Role).filter(Role.name == "ANALYST").one().is_default is False


def test_missing_file_loads_nothing(db, tmp_path):
    assert load_rbac_config(db, tmp_path / "absent.yaml") == {"permissions": 0, "roles": 0, "grants": 0}
