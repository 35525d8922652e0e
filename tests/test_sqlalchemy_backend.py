"""The SQLAlchemy backend runs the same admin / audit scenarios as the memory one."""
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from flagops.core.exceptions import ConflictError, NotFoundError, StorageError, ValidationError
from flagops.crud import crud_tenant
from flagops.crud.crud_feature_flag import SqlAlchemyFlagBackend, SqlAlchemyHistoryLog
from flagops.crud.crud_tenant import SqlAlchemyTenantDirectory
from flagops.schemas.feature_flag import ChangeType, FeatureFlagUpdate, FlagStatus, TenantContext
from flagops.schemas.tenant import TenantCreate
from flagops.services.admin_operations import FlagAdminService
from flagops.services.feature_flags import FlagQueryService
from flagops.services.resolution import ResolutionEngine, ResolutionSource

from tests.conftest import ADMIN, FakeClock, make_flag_in


@pytest.fixture
def sql_backend(session_factory):
    return SqlAlchemyFlagBackend(session_factory)


@pytest.fixture
def sql_tenants(session_factory):
    db = session_factory()
    try:
        crud_tenant.create(db, obj_in=TenantCreate(id="tenant_free", name="Furry Friends", tier="free"))
        crud_tenant.create(db, obj_in=TenantCreate(id="tenant_pro", name="Happy Tails", tier="pro"))
    finally:
        db.close()
    return SqlAlchemyTenantDirectory(session_factory)


@pytest.fixture
def sql_admin(sql_backend, sql_tenants):
    return FlagAdminService(sql_backend, sql_tenants, clock=FakeClock())


@pytest.fixture
def sql_query(sql_backend, sql_tenants):
    return FlagQueryService(sql_backend, sql_tenants, ResolutionEngine(), environment="production")


def test_create_and_read_back(sql_admin, sql_backend):
    flag = sql_admin.create_flag(
        make_flag_in(rollout_strategy="tier", allowed_tiers=["pro", "enterprise"]), ADMIN
    )

    stored = sql_backend.flags.get(flag.id)
    assert stored == flag
    assert stored.allowed_tiers == frozenset({"pro", "enterprise"})
    assert stored.created_at.tzinfo is not None
    assert sql_backend.flags.get_by_key("ai_scheduling_v2").id == flag.id

    history = sql_admin.list_history(flag.id)
    assert [e.change_type for e in history] == [ChangeType.CREATED]
    assert history[0].after_snapshot["allowed_tiers"] == ["enterprise", "pro"]


def test_duplicate_key_and_validation_leave_nothing_behind(sql_admin, sql_backend):
    with pytest.raises(ValidationError):
        sql_admin.create_flag(make_flag_in(flag_key="2bad-key!"), ADMIN)
    assert sql_backend.flags.list() == []

    first = sql_admin.create_flag(make_flag_in(), ADMIN)
    with pytest.raises(ConflictError):
        sql_admin.create_flag(make_flag_in(), ADMIN)
    assert [f.id for f in sql_backend.flags.list()] == [first.id]
    assert sql_backend.history.count(first.id) == 1


def test_audit_completeness(sql_admin):
    flag = sql_admin.create_flag(make_flag_in(rollout_strategy="percentage", is_kill_switch=True), ADMIN)
    sql_admin.toggle_flag(flag.id, True, confirmed=False, actor=ADMIN)
    sql_admin.update_rollout(flag.id, 25, ADMIN)
    sql_admin.add_override(flag.id, "tenant_pro", True, "beta", ADMIN)
    sql_admin.update_flag(flag.id, FeatureFlagUpdate(description="Smarter bookings"), ADMIN)
    sql_admin.remove_override(flag.id, "tenant_pro", ADMIN)
    sql_admin.kill_flag(flag.id, "regression", ADMIN)
    sql_admin.archive_flag(flag.id, ADMIN)

    history = sql_admin.list_history(flag.id)
    assert [e.sequence for e in history] == list(range(8, 0, -1))
    assert [e.change_type for e in reversed(history)] == [
        ChangeType.CREATED,
        ChangeType.ENABLED,
        ChangeType.ROLLOUT_UPDATED,
        ChangeType.OVERRIDE_ADDED,
        ChangeType.UPDATED,
        ChangeType.OVERRIDE_REMOVED,
        ChangeType.KILLED,
        ChangeType.ARCHIVED,
    ]
    assert sql_admin.get_flag(flag.id).status == FlagStatus.ARCHIVED


def test_kill_voids_overrides(sql_admin, sql_backend, sql_query):
    flag = sql_admin.create_flag(make_flag_in(enabled=True, is_kill_switch=True), ADMIN)
    sql_admin.add_override(flag.id, "tenant_pro", True, "keep me on", ADMIN)

    sql_admin.kill_flag(flag.id, "incident", ADMIN)

    assert sql_backend.overrides.list_by_flag(flag.id) == []
    resolution = sql_query.evaluate("ai_scheduling_v2", TenantContext(tenant_id="tenant_pro", environment="production"))
    assert resolution.decision is False
    assert resolution.source == ResolutionSource.KILLED
    before = sql_admin.list_history(flag.id)[0].before_snapshot
    assert [o["tenant_id"] for o in before["overrides"]] == ["tenant_pro"]


def test_override_upsert_and_unknown_tenant(sql_admin, sql_backend):
    flag = sql_admin.create_flag(make_flag_in(), ADMIN)
    sql_admin.add_override(flag.id, "tenant_pro", True, "beta", ADMIN)
    sql_admin.add_override(flag.id, "tenant_pro", False, "opted out", ADMIN)

    overrides = sql_backend.overrides.list_by_flag(flag.id)
    assert [(o.tenant_id, o.enabled) for o in overrides] == [("tenant_pro", False)]
    assert [o.flag_id for o in sql_backend.overrides.list_by_tenant("tenant_pro")] == [flag.id]

    with pytest.raises(NotFoundError):
        sql_admin.add_override(flag.id, "ghost", True, None, ADMIN)


def test_failed_history_append_rolls_back(sql_admin, sql_backend, monkeypatch):
    flag = sql_admin.create_flag(make_flag_in(), ADMIN)

    def broken_append(self, entry):
        raise OperationalError("INSERT INTO feature_flag_history", {}, Exception("disk full"))

    monkeypatch.setattr(SqlAlchemyHistoryLog, "append", broken_append)
    with pytest.raises(StorageError):
        sql_admin.toggle_flag(flag.id, True, confirmed=True, actor=ADMIN)
    with pytest.raises(StorageError):
        sql_admin.add_override(flag.id, "tenant_pro", True, "beta", ADMIN)
    monkeypatch.undo()

    assert sql_backend.flags.get(flag.id).enabled is False
    assert sql_backend.overrides.list_by_flag(flag.id) == []
    assert sql_backend.history.count(flag.id) == 1


def test_delete_only_without_history(sql_admin, sql_backend):
    flag = sql_admin.create_flag(make_flag_in(), ADMIN)
    with pytest.raises(ConflictError):
        sql_admin.delete_flag(flag.id, ADMIN)

    orphan = flag.model_copy(update={"id": uuid.uuid4(), "flag_key": "imported_flag"})
    sql_backend.flags.add(orphan)
    sql_admin.delete_flag(orphan.id, ADMIN)
    assert sql_backend.flags.get(orphan.id) is None


def test_tenant_directory_and_evaluate_all(sql_admin, sql_query):
    sql_admin.create_flag(
        make_flag_in(flag_key="advanced_reporting", enabled=True, rollout_strategy="tier",
                     allowed_tiers=["pro", "enterprise"]),
        ADMIN,
    )
    assert [t.id for t in sql_query.tenants.list()] == ["tenant_free", "tenant_pro"]
    assert sql_query.evaluate_all(sql_query.context_for("tenant_pro")) == {"advanced_reporting": True}
    assert sql_query.evaluate_all(sql_query.context_for("tenant_free")) == {"advanced_reporting": False}


def test_storage_errors_are_wrapped():
    class _Session:
        def get(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        def rollback(self):
            pass

        def commit(self):
            pass

        def close(self):
            pass

    backend = SqlAlchemyFlagBackend(_Session)
    with pytest.raises(StorageError):
        backend.flags.get(uuid.uuid4())
