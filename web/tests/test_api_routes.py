import os
import sys

import pytest

from filter_fakes import Env, filter_json


def _import_app_module():
    try:
        import flask  # noqa: F401
    except Exception as e:
        pytest.skip(f"Flask not available in this environment: {e}")

    web_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if web_dir not in sys.path:
        sys.path.insert(0, web_dir)

    os.environ.setdefault("DISABLE_BACKGROUND", "1")

    import app as app_module  # type: ignore

    app_module.app.testing = True
    return app_module


@pytest.fixture()
def env(tmp_path):
    e = Env(tmp_path, filters=[filter_json(1, tags=[10]), filter_json(5, name="Extra")])
    yield e
    e.close()


@pytest.fixture()
def client(env, monkeypatch):
    app_module = _import_app_module()
    monkeypatch.setattr(app_module, "get_filters_manager", lambda: env.manager)
    return app_module.app.test_client()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json() == {"ok": True}


def test_list_filters_and_groups(client):
    r = client.get("/api/filters")
    assert r.status_code == 200
    data = r.get_json()
    assert [f["filterId"] for f in data["filters"]] == [1, 5]
    assert data["lastCheck"] is None

    r = client.get("/api/groups")
    assert [g["groupId"] for g in r.get_json()["groups"]] == [0, 1, 2, 7]

    assert client.get("/api/groups/offer").get_json() == {"groupIds": [1, 2, 7]}


def test_unknown_filter_is_404(client):
    r = client.get("/api/filters/404")
    assert r.status_code == 404
    assert r.get_json() == {"ok": False, "error": "Filter with id 404 not found"}

    r = client.post("/api/filters/404/enable")
    assert r.status_code == 404


def test_enable_and_disable_filters(client, env):
    env.client.set_rules(5, "||a.example^")

    r = client.post("/api/filters/enable", json={"ids": [5]})
    assert r.status_code == 202
    env.manager._jobs.submit(lambda: None).result(timeout=10)
    assert env.manager.is_filter_enabled(5)

    r = client.get("/api/filters/5")
    assert r.get_json()["enabled"] is True
    assert r.get_json()["trusted"] is True

    r = client.post("/api/filters/disable", json={"ids": [5]})
    assert r.status_code == 200
    assert not env.manager.is_filter_enabled(5)


def test_bad_ids_payload_is_400(client):
    r = client.post("/api/filters/disable", json={"ids": "5"})
    assert r.status_code == 400
    assert "ids" in r.get_json()["error"]


def test_remove_filter(client, env):
    r = client.delete("/api/filters/5")
    assert r.status_code == 200
    assert env.cache.get_filter(5) is None


def test_check_updates_wait_returns_result(client, env):
    r = client.post("/api/filters/check-updates", json={"force": True, "wait": True})
    assert r.status_code == 200
    data = r.get_json()
    assert data["success"] is True
    assert data["forceUpdate"] is True
    assert data["updatedFilters"] == []
    assert client.get("/api/filters/last-check").get_json() == {"lastCheck": env.clock.now_ms}


def test_check_updates_is_queued_by_default(client):
    r = client.post("/api/filters/check-updates", json={})
    assert r.status_code == 202


def test_group_enable_disable(client, env):
    env.client.set_rules(1, "||a.example^")
    assert client.post("/api/groups/1/enable").status_code == 200
    env.manager._jobs.submit(lambda: None).result(timeout=10)
    assert env.manager.is_group_enabled(1)
    assert env.manager.is_filter_enabled(1)

    assert client.post("/api/groups/1/disable").status_code == 200
    assert not env.manager.is_group_enabled(1)


def test_subscribe_custom_filter(client, env):
    url = "https://lists.example/custom.txt"
    env.client.responses[url] = "! Title: Custom\n||a.example^\n"

    r = client.post("/api/custom-filters/info", json={"url": url})
    assert r.status_code == 200
    assert r.get_json()["filter"]["rulesCount"] == 1

    r = client.post("/api/custom-filters", json={"url": url, "trusted": True})
    assert r.status_code == 201
    assert r.get_json()["filter"]["filterId"] == 1000
    assert r.get_json()["filter"]["trusted"] is True

    r = client.post("/api/custom-filters", json={"url": ""})
    assert r.status_code == 400
    assert r.get_json() == {"ok": False, "error": "URL is required."}


def test_settings_change_reschedules_autoupdate(client, env):
    env.updater.schedule_filters_update(False)

    r = client.post("/api/settings", json={"update_period_hours": 0, "locale": "de"})
    assert r.status_code == 200
    assert r.get_json() == {"update_period_hours": -1, "locale": "de"}
    assert not env.updater.autoupdate_active

    r = client.post("/api/settings", json={"update_period_hours": "soon"})
    assert r.status_code == 400
