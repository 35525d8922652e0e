"""Flag queries and per-tenant evaluation."""
from datetime import timedelta

import pytest

from flagops.core.exceptions import NotFoundError, StorageError, ValidationError
from flagops.schemas.feature_flag import TenantContext
from flagops.services.resolution import ResolutionSource

from tests.conftest import ADMIN, TENANTS, make_flag_in


def _ctx(tenant_id, environment="production", tier=None):
    return TenantContext(tenant_id=tenant_id, environment=environment, tier=tier)


def test_ai_scheduling_v2_end_to_end(admin, query):
    flag = admin.create_flag(make_flag_in(environments=["production"]), ADMIN)
    tenant_ids = [t.id for t in TENANTS] + ["walk_in"]

    assert not any(query.evaluate("ai_scheduling_v2", _ctx(t)).decision for t in tenant_ids)

    admin.toggle_flag(flag.id, True, confirmed=True, actor=ADMIN)
    assert all(query.evaluate("ai_scheduling_v2", _ctx(t)).decision for t in tenant_ids)
    assert not any(
        query.evaluate("ai_scheduling_v2", _ctx(t, environment="staging")).decision for t in tenant_ids
    )

    before = {t: query.evaluate("ai_scheduling_v2", _ctx(t)) for t in tenant_ids}
    admin.update_rollout(flag.id, 0, ADMIN)
    after = {t: query.evaluate("ai_scheduling_v2", _ctx(t)) for t in tenant_ids}
    assert before == after


def test_evaluate_unknown_flag(query):
    with pytest.raises(NotFoundError):
        query.evaluate("missing_flag", _ctx("tenant_pro"))


def test_context_uses_directory_tier(query):
    assert query.context_for("tenant_ent").tier == "enterprise"
    assert query.context_for("tenant_ent").environment == "production"
    assert query.context_for("nobody").tier is None


def test_evaluate_all_skips_archived_and_keeps_killed(admin, query):
    admin.create_flag(make_flag_in(flag_key="dark_mode", enabled=True), ADMIN)
    tiered = admin.create_flag(
        make_flag_in(flag_key="advanced_reporting", enabled=True, rollout_strategy="tier",
                     allowed_tiers=["pro", "enterprise"]),
        ADMIN,
    )
    old = admin.create_flag(make_flag_in(flag_key="old_checkout", enabled=True), ADMIN)
    legacy = admin.create_flag(
        make_flag_in(flag_key="legacy_api_v1", enabled=True, is_kill_switch=True), ADMIN
    )
    admin.archive_flag(old.id, ADMIN)
    admin.kill_flag(legacy.id, "v1 shutdown", ADMIN)

    assert query.evaluate_all(query.context_for("tenant_pro")) == {
        "dark_mode": True,
        "advanced_reporting": True,
        "legacy_api_v1": False,
    }
    assert query.evaluate_all(query.context_for("tenant_free"))[tiered.flag_key] is False


def test_evaluate_all_serves_safe_default_when_override_read_fails(admin, backend, query, monkeypatch):
    admin.create_flag(make_flag_in(flag_key="dark_mode", enabled=False), ADMIN)
    admin.create_flag(make_flag_in(flag_key="kill_me", category="kill_switch", enabled=True), ADMIN)

    def broken_get(flag_id, tenant_id):
        raise RuntimeError("override store unavailable")

    monkeypatch.setattr(backend.overrides, "get", broken_get)
    result = query.evaluate_all(_ctx("tenant_pro"))
    assert result == {"dark_mode": True, "kill_me": False}


def test_tenant_directory_failure_serves_safe_defaults(admin, tenants, query, monkeypatch):
    admin.create_flag(make_flag_in(flag_key="dark_mode", enabled=False), ADMIN)
    admin.create_flag(make_flag_in(flag_key="kill_me", category="kill_switch", enabled=True), ADMIN)
    retired = admin.create_flag(make_flag_in(flag_key="old_reports", enabled=True), ADMIN)
    admin.archive_flag(retired.id, ADMIN)

    def broken_get(tenant_id):
        raise StorageError("Tenant directory is unavailable")

    monkeypatch.setattr(tenants, "get", broken_get)
    context = query.context_for("tenant_pro")
    assert context.unresolved
    assert context.tier is None

    assert query.evaluate_all(context) == {"dark_mode": True, "kill_me": False}
    assert query.evaluate("dark_mode", context).source == ResolutionSource.SAFE_DEFAULT
    assert query.evaluate("old_reports", context).source == ResolutionSource.ARCHIVED


def test_list_flags_filters(admin, query, clock):
    admin.create_flag(make_flag_in(flag_key="dark_mode", display_name="Dark Mode Theme", enabled=True), ADMIN)
    rollout = admin.create_flag(
        make_flag_in(flag_key="customer_portal_v2", display_name="Customer Portal Redesign",
                     enabled=True, rollout_strategy="percentage", rollout_percentage=50),
        ADMIN,
    )
    disabled = admin.create_flag(
        make_flag_in(flag_key="inventory_management", display_name="Inventory", category="experiment"),
        ADMIN,
    )
    archived = admin.create_flag(make_flag_in(flag_key="old_reports", display_name="Old Reports"), ADMIN)
    admin.archive_flag(archived.id, ADMIN)
    admin.add_override(rollout.id, "tenant_pro", True, "vip", ADMIN)

    all_flags = query.list_flags()
    assert [f.flag_key for f in all_flags] == [
        "old_reports", "inventory_management", "customer_portal_v2", "dark_mode",
    ]
    assert {f.flag_key: f.override_count for f in all_flags}["customer_portal_v2"] == 1

    assert {f.flag_key for f in query.list_flags(status="enabled")} == {"dark_mode", "customer_portal_v2"}
    assert [f.flag_key for f in query.list_flags(status="rollout")] == ["customer_portal_v2"]
    assert [f.flag_key for f in query.list_flags(status="disabled")] == ["inventory_management"]
    assert [f.flag_key for f in query.list_flags(status="archived")] == ["old_reports"]
    assert [f.id for f in query.list_flags(category="experiment")] == [disabled.id]
    assert [f.flag_key for f in query.list_flags(search="PORTAL")] == ["customer_portal_v2"]


def test_list_flags_rejects_unknown_status(query):
    with pytest.raises(ValidationError):
        query.list_flags(status="sleeping")


def test_flag_stats(admin, query, clock):
    stale = admin.create_flag(make_flag_in(flag_key="stale_flag", enabled=True), ADMIN)
    clock.advance(days=30)
    admin.create_flag(
        make_flag_in(flag_key="customer_portal_v2", enabled=True, rollout_strategy="percentage",
                     rollout_percentage=50),
        ADMIN,
    )
    legacy = admin.create_flag(make_flag_in(flag_key="legacy_api_v1", is_kill_switch=True), ADMIN)
    admin.kill_flag(legacy.id, "incident", ADMIN)

    stats = query.flag_stats(now=clock.now + timedelta(seconds=1))
    assert stats.total == 3
    assert stats.enabled == 2
    assert stats.in_rollout == 1
    assert stats.killed == 1
    assert stats.archived == 0
    assert stats.recently_changed == 2
    assert stale.id not in {f.id for f in query.list_flags(status="killed")}


def test_flag_detail_includes_overrides(admin, query):
    flag = admin.create_flag(make_flag_in(), ADMIN)
    admin.add_override(flag.id, "tenant_ent", True, "vip", ADMIN)
    detail = query.get_flag_detail(flag.id)
    assert detail.flag_key == "ai_scheduling_v2"
    assert [o.tenant_id for o in detail.overrides] == ["tenant_ent"]


def test_tenant_statuses(admin, query):
    flag = admin.create_flag(
        make_flag_in(enabled=True, rollout_strategy="tier", allowed_tiers=["enterprise"]), ADMIN
    )
    admin.add_override(flag.id, "tenant_free", True, "pilot", ADMIN)

    rows = {r.tenant_id: r for r in query.tenant_statuses(flag.id)}
    assert rows["tenant_free"].enabled is True
    assert rows["tenant_free"].source == ResolutionSource.OVERRIDE.value
    assert rows["tenant_free"].has_override is True
    assert rows["tenant_pro"].enabled is False
    assert rows["tenant_pro"].source == ResolutionSource.TIER.value
    assert rows["tenant_ent"].enabled is True

    assert {r.tenant_id for r in query.tenant_statuses(flag.id, status_filter="overridden")} == {"tenant_free"}
    assert {r.tenant_id for r in query.tenant_statuses(flag.id, status_filter="disabled")} == {"tenant_pro"}
    assert [r.tenant_id for r in query.tenant_statuses(flag.id, search="grooming")] == ["tenant_pro"]
    assert all(
        r.source == ResolutionSource.ENVIRONMENT_EXCLUDED.value
        for r in query.tenant_statuses(flag.id, environment="development")
    )
