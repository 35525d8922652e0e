"""Control plane HTTP surface: routes, status codes, error bodies."""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from flagops.api import deps
from flagops.api.deps import FlagServices
from flagops.core.exceptions import StorageError
from flagops.crud.memory import InMemoryFlagBackend, InMemoryTenantDirectory
from flagops.main import app as fastapi_app
from flagops.services.resolution import ResolutionEngine

from tests.conftest import TENANTS

API = "/api/v1"
ACTOR = {"X-Actor": "ops@flagops.test"}


@pytest.fixture
def services():
    return FlagServices(
        backend=InMemoryFlagBackend(),
        tenants=InMemoryTenantDirectory(TENANTS),
        engine=ResolutionEngine(),
        environment="production",
    )


@pytest_asyncio.fixture
async def client(services):
    fastapi_app.dependency_overrides[deps.get_services] = lambda: services
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    fastapi_app.dependency_overrides.clear()


async def _create(client, **overrides):
    body = {
        "flag_key": "ai_scheduling_v2",
        "display_name": "AI-Powered Smart Scheduling",
        "category": "beta",
        "rollout_strategy": "all_or_nothing",
    }
    body.update(overrides)
    resp = await client.post(f"{API}/flags", json=body, headers=ACTOR)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_create_flag(client):
    flag = await _create(client)
    assert flag["flag_key"] == "ai_scheduling_v2"
    assert flag["enabled"] is False
    assert flag["created_by"] == "ops@flagops.test"
    assert flag["environments"] == ["production", "staging"]


@pytest.mark.asyncio
async def test_create_errors(client):
    await _create(client)

    dup = await client.post(f"{API}/flags", json={"flag_key": "ai_scheduling_v2", "display_name": "X"})
    assert dup.status_code == 409
    assert dup.json()["code"] == "CONFLICT"

    bad = await client.post(f"{API}/flags", json={"flag_key": "2bad-key!", "display_name": "X"})
    assert bad.status_code == 400
    assert bad.json()["code"] == "VALIDATION_ERROR"

    missing = await client.post(f"{API}/flags", json={"flag_key": "no_name"})
    assert missing.status_code == 400

    bad_strategy = await client.post(
        f"{API}/flags", json={"flag_key": "geo", "display_name": "Geo", "rollout_strategy": "geo"}
    )
    assert bad_strategy.status_code == 400


@pytest.mark.asyncio
async def test_actor_defaults_to_system(client):
    resp = await client.post(f"{API}/flags", json={"flag_key": "dark_mode", "display_name": "Dark Mode"})
    assert resp.json()["created_by"] == "system"


@pytest.mark.asyncio
async def test_patch_flag(client):
    flag = await _create(client)
    url = f"{API}/flags/{flag['id']}"

    ok = await client.patch(url, json={"description": "Smarter bookings"})
    assert ok.status_code == 200
    assert ok.json()["description"] == "Smarter bookings"

    renamed = await client.patch(url, json={"flag_key": "renamed"})
    assert renamed.status_code == 400
    assert renamed.json()["code"] == "IMMUTABLE_FIELD"

    sneaky = await client.patch(url, json={"enabled": True})
    assert sneaky.status_code == 400


@pytest.mark.asyncio
async def test_toggle_confirmation_and_rollout(client):
    flag = await _create(client, require_confirmation=True, rollout_strategy="percentage")
    url = f"{API}/flags/{flag['id']}"

    blocked = await client.post(f"{url}/toggle", json={"enabled": True})
    assert blocked.status_code == 428
    assert blocked.json()["code"] == "CONFIRMATION_REQUIRED"

    toggled = await client.post(f"{url}/toggle", json={"enabled": True, "confirmed": True})
    assert toggled.status_code == 200
    assert toggled.json()["enabled"] is True

    too_much = await client.post(f"{url}/rollout", json={"percentage": 101})
    assert too_much.status_code == 400
    rolled = await client.post(f"{url}/rollout", json={"percentage": 40, "reason": "expanding"})
    assert rolled.status_code == 200
    assert rolled.json()["rollout_percentage"] == 40


@pytest.mark.asyncio
async def test_kill_archive_and_history(client):
    plain = await _create(client, flag_key="dark_mode")
    resp = await client.post(f"{API}/flags/{plain['id']}/kill", json={"reason": "nope"})
    assert resp.status_code == 409

    flag = await _create(client, flag_key="legacy_api_v1", enabled=True, is_kill_switch=True)
    url = f"{API}/flags/{flag['id']}"
    assert (await client.post(f"{url}/overrides", json={"tenant_id": "tenant_pro", "enabled": True})).status_code == 200

    killed = await client.post(f"{url}/kill", json={"reason": "security incident"}, headers=ACTOR)
    assert killed.status_code == 200
    assert killed.json()["killed_at"] is not None

    features = await client.get(f"{API}/feature-flags/tenant_pro")
    assert features.json()["legacy_api_v1"] is False

    archived = await client.post(f"{url}/archive")
    assert archived.status_code == 200
    assert (await client.post(f"{url}/archive")).status_code == 409

    history = (await client.get(f"{url}/history")).json()
    assert [h["change_type"] for h in history] == ["archived", "killed", "override_added", "created"]
    assert history[1]["created_by"] == "ops@flagops.test"
    assert history[1]["reason"] == "security incident"

    features = await client.get(f"{API}/feature-flags/tenant_pro")
    assert "legacy_api_v1" not in features.json()


@pytest.mark.asyncio
async def test_overrides(client):
    flag = await _create(client, rollout_strategy="specific", enabled=True)
    url = f"{API}/flags/{flag['id']}"

    unknown = await client.post(f"{url}/overrides", json={"tenant_id": "ghost", "enabled": True})
    assert unknown.status_code == 404

    added = await client.post(
        f"{url}/overrides", json={"tenant_id": "tenant_ent", "enabled": True, "reason": "pilot"}
    )
    assert added.status_code == 200
    assert (await client.get(f"{API}/feature-flags/tenant_ent")).json() == {"ai_scheduling_v2": True}
    assert (await client.get(f"{API}/feature-flags/tenant_pro")).json() == {"ai_scheduling_v2": False}

    detail = (await client.get(url)).json()
    assert [o["tenant_id"] for o in detail["overrides"]] == ["tenant_ent"]
    listed = (await client.get(f"{url}/overrides")).json()
    assert [(o["tenant_id"], o["reason"]) for o in listed] == [("tenant_ent", "pilot")]
    missing = await client.get(f"{API}/flags/00000000-0000-0000-0000-000000000000/overrides")
    assert missing.status_code == 404

    tenants = (await client.get(f"{url}/tenants", params={"filter": "overridden"})).json()
    assert [t["tenant_id"] for t in tenants] == ["tenant_ent"]

    removed = await client.delete(f"{url}/overrides/tenant_ent")
    assert removed.status_code == 200
    assert (await client.delete(f"{url}/overrides/tenant_ent")).status_code == 404


@pytest.mark.asyncio
async def test_single_flag_evaluation(client):
    await _create(client, flag_key="advanced_reporting", enabled=True, rollout_strategy="tier",
                  allowed_tiers=["pro", "enterprise"])
    resp = await client.get(f"{API}/feature-flags/tenant_pro/advanced_reporting")
    assert resp.json() == {"key": "advanced_reporting", "enabled": True, "source": "tier"}
    missing = await client.get(f"{API}/feature-flags/tenant_pro/nope")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_list_stats_and_delete(client):
    flag = await _create(client, enabled=True)
    await _create(client, flag_key="customer_portal_v2", enabled=True, rollout_strategy="percentage",
                  rollout_percentage=50)

    listed = (await client.get(f"{API}/flags", params={"status": "rollout"})).json()
    assert [f["flag_key"] for f in listed] == ["customer_portal_v2"]
    assert (await client.get(f"{API}/flags", params={"status": "bogus"})).status_code == 400

    stats = (await client.get(f"{API}/flags/stats")).json()
    assert stats["total"] == 2
    assert stats["enabled"] == 2
    assert stats["in_rollout"] == 1

    deleted = await client.delete(f"{API}/flags/{flag['id']}")
    assert deleted.status_code == 409


@pytest.mark.asyncio
async def test_unknown_flag_is_404(client):
    resp = await client.get(f"{API}/flags/00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_storage_failure_is_503(client, services, monkeypatch):
    def unavailable(context):
        raise StorageError("Feature flag storage is unavailable")

    monkeypatch.setattr(services.query, "evaluate_all", unavailable)
    resp = await client.get(f"{API}/feature-flags/tenant_pro")
    assert resp.status_code == 503
    assert resp.json() == {"detail": "Feature flag storage is unavailable", "code": "STORAGE_ERROR"}


@pytest.mark.asyncio
async def test_health_metrics_and_request_id(client):
    health = await client.get("/health")
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "ok"
    assert body["database"]["pool_class"]
    assert health.headers["X-Request-ID"]

    await client.get(f"{API}/feature-flags/tenant_pro")
    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text
    assert "flag_admin_operations" in metrics.text
