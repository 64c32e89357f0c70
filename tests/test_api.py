from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import BASE_URL, FakeTransport, latest_payload, pair_payload, quota_payload
from fxengine.core.config import Settings
from fxengine.core.errors import QuotaExceeded
from fxengine.main import create_app
from fxengine.services.engine import build_engine


def _make_client(tmp_path, transport, api_key="test-key"):
    settings = Settings(
        data_dir=tmp_path,
        exchange_rate_api_key=api_key,
        exchange_rate_api_url=BASE_URL,
        enable_scheduler=False,
        sync_inter_call_delay=0,
    )
    settings.init_post_load()
    engine = build_engine(settings.engine_config(), settings.db_path, fetch_json=transport)
    app = create_app(settings_override=settings, engine=engine)
    return TestClient(app), engine


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def app_env(tmp_path, transport):
    return _make_client(tmp_path, transport)


@pytest.fixture
def api(app_env):
    return app_env[0]


@pytest.fixture
def engine(app_env):
    return app_env[1]


def test_root_reports_version(api):
    resp = api.get("/")
    assert resp.status_code == 200
    body = resp.json()
    assert body["version"] and body["provider_configured"] is True
    assert resp.headers["x-request-id"]


def test_request_id_is_echoed(api):
    resp = api.get("/", headers={"x-request-id": "abc-123"})
    assert resp.headers["x-request-id"] == "abc-123"


def test_convert_live_then_cached(api, transport):
    transport.set("pair/USD/EUR", pair_payload("USD", "EUR", 0.85))
    first = api.get("/rates/convert", params={"amount": 100, "from_currency": "usd", "to_currency": "eur"})
    assert first.status_code == 200
    assert first.json() == {
        "original_amount": 100.0,
        "original_currency": "USD",
        "converted_amount": 85.0,
        "target_currency": "EUR",
        "rate": 0.85,
        "tier": "live",
        "converted": True,
    }
    second = api.get("/rates/convert", params={"amount": 10, "from_currency": "USD", "to_currency": "EUR"})
    assert second.json()["tier"] == "global"


def test_convert_without_any_rate_is_soft(api):
    resp = api.get("/rates/convert", params={"amount": 100, "from_currency": "USD", "to_currency": "EUR"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["converted"] is False and body["converted_amount"] == 100.0
    assert body["tier"] == "none"


def test_convert_rejects_bad_code(api):
    resp = api.get("/rates/convert", params={"amount": 1, "from_currency": "U$D", "to_currency": "EUR"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_rate_request"


def test_convert_requires_params(api):
    resp = api.get("/rates/convert", params={"amount": 1})
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


def test_override_scopes_to_tenant(api):
    resp = api.post(
        "/rates/overrides",
        json={"base_currency": "usd", "target_currency": "eur", "rate": 0.5, "organization_id": 9},
    )
    assert resp.status_code == 200
    row = resp.json()
    assert row["scope"] == "organization:9" and row["is_custom"] is True
    assert row["source"] == "user"

    tenant = api.get(
        "/rates/convert",
        params={"amount": 10, "from_currency": "USD", "to_currency": "EUR", "organization_id": 9},
    ).json()
    assert tenant["converted_amount"] == 5.0 and tenant["tier"] == "tenant_direct"

    history = api.get("/rates/history", params={"organization_id": 9}).json()
    assert [h["rate"] for h in history] == [0.5]


def test_override_rejects_non_positive_rate(api):
    resp = api.post(
        "/rates/overrides", json={"base_currency": "USD", "target_currency": "EUR", "rate": 0}
    )
    assert resp.status_code == 422


def test_override_rejects_same_currency(api):
    resp = api.post(
        "/rates/overrides", json={"base_currency": "USD", "target_currency": "usd", "rate": 1.2}
    )
    assert resp.status_code == 400


def test_manual_sync(api, transport):
    transport.set("latest/GBP", latest_payload("GBP", {"USD": 1.37}))
    resp = api.post("/rates/sync", json={"base_currency": "gbp"})
    assert resp.json() == {"success": True, "base_currency": "GBP"}
    assert api.post("/rates/sync", json={"base_currency": "CHF"}).json()["success"] is False


def test_sync_status(api, transport):
    transport.set("quota", quota_payload(1000, 900))
    status = api.get("/rates/sync/status").json()
    assert status["is_running"] is False
    assert status["quota"]["percentage"] == 90.0


def test_quota_passthrough_maps_provider_errors(api, transport):
    transport.set("quota", QuotaExceeded("quota-reached"))
    resp = api.get("/rates/quota")
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"] == "provider_error" and body["kind"] == "QuotaExceeded"


def test_currencies_passthrough(api, transport):
    transport.set(
        "codes", {"result": "success", "supported_codes": [["EUR", "Euro"], ["USD", "US Dollar"]]}
    )
    body = api.get("/rates/currencies").json()
    assert body["count"] == 2
    assert body["currencies"][0] == {"code": "EUR", "name": "Euro"}


def test_provider_endpoints_require_key(tmp_path):
    transport = FakeTransport()
    client, _ = _make_client(tmp_path, transport, api_key=None)
    for method, path in (("post", "/rates/sync"), ("get", "/rates/quota"), ("get", "/rates/currencies")):
        resp = client.request(method.upper(), path, json={} if method == "post" else None)
        assert resp.status_code == 400
        assert resp.json()["error"] == "not_configured"
    assert transport.calls == []


def test_migration_endpoints(api, engine):
    records = engine.records
    org = records.create_organization("Shop", default_currency="USD")
    user = records.create_user(org, "owner@shop.test", display_currency="USD")
    records.insert_record(org, "product", 100.0, "USD", "Widget")
    engine.store.upsert(None, "USD", "EUR", 0.85, "api", timedelta(days=1))

    preview = api.get(f"/migrations/users/{user}/preview", params={"target_currency": "EUR"})
    assert preview.json()["records_to_convert"] == 1

    migrated = api.post(f"/migrations/users/{user}", json={"target_currency": "eur"}).json()
    assert migrated["converted"] == 1 and migrated["target_currency"] == "EUR"

    org_result = api.post(f"/migrations/organizations/{org}", json={"target_currency": "EUR"}).json()
    assert org_result["converted"] == 0
    assert org_result["users"][0]["user_id"] == user


def test_migration_unknown_user_is_404(api):
    resp = api.get("/migrations/users/777/preview", params={"target_currency": "EUR"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


def test_unknown_route(api):
    resp = api.get("/nope")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "No route for GET /nope"


def test_lifespan_runs_without_scheduler(tmp_path):
    client, engine = _make_client(tmp_path, FakeTransport())
    with client:
        assert client.get("/").status_code == 200
    assert engine.scheduler._threads == []


def test_batch_convert(api, engine):
    engine.store.upsert(None, "USD", "EUR", 0.85, "api", timedelta(days=1))
    resp = api.post(
        "/rates/convert/batch",
        json={
            "conversions": [
                {"amount": 100, "from_currency": "USD", "to_currency": "EUR"},
                {"amount": 1, "from_currency": "U$D", "to_currency": "EUR"},
            ]
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["converted"] == 1
    first, second = body["results"]
    assert first["result"]["converted_amount"] == 85.0 and first["error"] is None
    assert second["result"] is None and second["error"]


def test_bulk_create_collects_row_errors(api):
    resp = api.post(
        "/rates/overrides/bulk",
        json={
            "organization_id": 4,
            "rates": [
                {"base_currency": "USD", "target_currency": "EUR", "rate": 0.9},
                {"base_currency": "USD", "target_currency": "EUR", "rate": 0.95},
                {"base_currency": "USD", "target_currency": "GBP", "rate": -1},
            ],
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["created"] == 1
    assert body["rates"][0]["scope"] == "organization:4"
    assert len(body["errors"]) == 2

    tenant = api.get(
        "/rates/convert",
        params={"amount": 10, "from_currency": "USD", "to_currency": "EUR", "organization_id": 4},
    ).json()
    assert tenant["converted_amount"] == 9.0


def test_delete_override_retires_tenant_rate(api, engine):
    row = engine.store.upsert(4, "USD", "EUR", 0.5, "user", timedelta(days=1), is_custom=True)

    wrong_tenant = api.delete(f"/rates/overrides/{row.id}", params={"organization_id": 5})
    assert wrong_tenant.status_code == 404
    assert api.delete("/rates/overrides/999", params={"organization_id": 4}).status_code == 404

    resp = api.delete(f"/rates/overrides/{row.id}", params={"organization_id": 4})
    assert resp.json() == {"success": True, "id": row.id}
    retired = engine.store.get(row.id)
    assert retired is not None and not retired.is_active
    assert engine.store.find_tenant(4, "USD", "EUR") is None


def test_import_caches_full_table(api, engine, transport):
    transport.set("latest/EUR", latest_payload("EUR", {"USD": 1.18, "GBP": 0.86}))
    resp = api.post("/rates/import", json={"base_currency": "eur"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["base_currency"] == "EUR" and body["imported_rates"] == 2
    assert engine.store.find_valid(None, "EUR", "GBP").source == "api"
