import time

from fastapi.testclient import TestClient

from dashsync.core.config import Settings
from dashsync.drivers.source_sim import SimulatedDataSource
from dashsync.main import create_app

from helpers import r


def _client(source=None):
    s = Settings(
        log_file="",
        sim_sample_seconds=0,
        poll_interval_seconds=60,
        push_reconnect_seconds=0.05,
    )
    source = source or SimulatedDataSource(readings=[r(1, temp=5), r(2, temp=15)])
    return TestClient(create_app(s, source=source)), source


def _wait_for(client, predicate, attempts=100):
    data = client.get("/api/snapshot").json()
    for _ in range(attempts):
        if predicate(data):
            return data
        time.sleep(0.01)
        data = client.get("/api/snapshot").json()
    raise AssertionError(f"condition not met: {data}")


def test_snapshot_keys():
    client, _ = _client()
    with client:
        res = client.get("/api/snapshot")
        assert res.status_code == 200
        data = res.json()
        for key in ("readings", "derived", "actuators", "mode", "loading_state", "last_error", "adapters"):
            assert key in data
        assert data["loading_state"] == "ready"
        assert len(data["readings"]) == 2
        assert data["derived"]["classification"] == "mild"
        assert data["mode"]["automatic"] is True
        assert set(data["adapters"]) == {"bulk", "push", "poll"}


def test_toggle_rejected_in_automatic_mode():
    client, source = _client()
    with client:
        res = client.post("/api/actuators/1/toggle")
        assert res.status_code == 409
        assert source.write_calls == []

        res = client.post("/api/actuators/42/toggle")
        assert res.status_code == 404


def test_manual_mode_then_toggle():
    client, source = _client()
    with client:
        _wait_for(client, lambda d: d["adapters"]["push"]["state"] == "active")
        res = client.put("/api/mode", json={"automatic": False})
        assert res.status_code == 200
        _wait_for(client, lambda d: d["mode"]["automatic"] is False and not d["mode"]["pending"])

        res = client.post("/api/actuators/2/toggle")
        assert res.status_code == 200
        assert res.json()["actuator"]["desired_state"] is True

        data = _wait_for(client, lambda d: not d["actuators"][1]["pending"])
        assert data["actuators"][1]["confirmed_state"] is True


def test_write_failure_returns_502_and_notice():
    source = SimulatedDataSource()
    source.set_automatic(False, publish=False)
    client, _ = _client(source)
    with client:
        client.post("/api/sim/faults", json={"fail_writes": True})
        res = client.post("/api/actuators/1/toggle")
        assert res.status_code == 502

        data = client.get("/api/snapshot").json()
        assert data["last_error"]
        assert data["actuators"][0]["desired_state"] is False

        assert client.post("/api/error/dismiss").status_code == 200
        assert client.get("/api/snapshot").json()["last_error"] is None


def test_date_filter():
    client, _ = _client()
    with client:
        res = client.put("/api/filter", json={"start_utc": "2026-01-01T12:00:02Z"})
        assert res.status_code == 200
        assert res.json()["count"] == 1

        res = client.put(
            "/api/filter",
            json={"start_utc": "2026-01-01T13:00:00Z", "end_utc": "2026-01-01T12:00:00Z"},
        )
        assert res.status_code == 400


def test_sim_endpoints():
    client, source = _client()
    with client:
        res = client.get("/api/sim/status")
        assert res.status_code == 200
        assert res.json()["backend"]["readings"] == 2

        res = client.post("/api/sim/pattern", json={"kind": "drift", "jitter": 0})
        assert res.status_code == 200
        assert res.json()["profile"]["kind"] == "drift"

        res = client.post("/api/sim/pattern", json={"kind": "daily", "hold_temperature": 9.5})
        assert res.json()["profile"]["kind"] == "fixed"
        assert client.get("/api/sim/status").json()["sensor"]["held_temperature"] == 9.5

        assert client.post("/api/sim/pattern", json={"kind": "sine"}).status_code == 422

        res = client.post("/api/sim/push/drop")
        assert res.status_code == 200
