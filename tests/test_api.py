"""
HTTP API tests using FastAPI's TestClient against an in-memory row store.
The coordinator runs for real inside the app lifespan.
"""
import json
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from lorawatch.api import create_app
from lorawatch.config import TrackerConfig
from lorawatch import api
from lorawatch.errors import FetchError, WriteError
from lorawatch.models import RawRow
from lorawatch.store import MemoryRowStore


def _ago(**kwargs):
    return datetime.now(UTC) - timedelta(**kwargs)


def _row(row_id, payload, ts):
    return RawRow(id=row_id, raw_payload=json.dumps(payload), captured_at=ts)


def _wait_for(client, predicate, path="/api/v1/nodes", timeout=2.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(path).json()
        if predicate(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"condition not reached: {body}")
        time.sleep(0.02)


def _nodes(body):
    return {n["node_id"]: n for n in body["nodes"]}


class _ReadOnlyStore:
    def __init__(self, rows=()):
        self._inner = MemoryRowStore(list(rows))

    async def fetch_rows(self, start, end, **kwargs):
        return await self._inner.fetch_rows(start, end, **kwargs)


@pytest.fixture
def config():
    return TrackerConfig(poll_interval=30.0, liveness_interval=10.0)


@pytest.fixture
def store():
    return MemoryRowStore([
        _row(1, {"node_id": "Node_1", "airQualityPercentage": 80}, _ago(hours=2)),
        _row(2, {"node_id": "Node_1", "airQualityPercentage": 90}, _ago(hours=1)),
        _row(3, {"node_id": "Node_1", "airQualityPercentage": 70, "batteryPercentage": 64}, _ago(minutes=1)),
        _row(4, {"node_id": "Node_2", "airQualityPercentage": 50}, _ago(minutes=20)),
        RawRow(id=5, raw_payload="{garbage", captured_at=_ago(minutes=1)),
    ])


@pytest.fixture
def client(config, store):
    with TestClient(create_app(config, store=store)) as client:
        _wait_for(client, lambda body: body["version"] >= 1)
        yield client


class TestSnapshotEndpoints:
    def test_list_nodes(self, client):
        nodes = _nodes(client.get("/api/v1/nodes").json())
        assert nodes["Node_1"]["online"] is True
        assert nodes["Node_1"]["latest"]["row_id"] == 3
        assert nodes["Node_1"]["latest"]["fields"]["batteryPercentage"] == 64
        assert nodes["Node_2"]["online"] is False
        assert nodes["Node_2"]["latest"]["row_id"] == 4

    def test_get_node(self, client):
        body = client.get("/api/v1/nodes/Node_1").json()
        assert body["node_id"] == "Node_1"
        assert body["consecutive_stale_checks"] == 0
        assert body["last_seen"] is not None

    def test_unknown_node_is_404(self, client):
        assert client.get("/api/v1/nodes/Node_9").status_code == 404

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["running"] is True
        assert body["nodes_total"] == 2
        assert body["nodes_online"] == 1
        assert body["dropped_rows"] >= 1


class TestHistoryEndpoints:
    def test_summary(self, client):
        body = client.get("/api/v1/nodes/Node_1/summary", params={"days": 1}).json()
        summary = body["summary"]
        assert summary["count"] == 3
        assert summary["average"] == 80.0
        assert summary["min"] == 70.0
        assert summary["max"] == 90.0
        assert summary["trend"] == "declining"

    def test_summary_without_data(self, client):
        body = client.get("/api/v1/nodes/Node_2/summary", params={"field": "temperature"}).json()
        assert body["summary"] is None

    def test_daily(self, client):
        body = client.get("/api/v1/nodes/Node_2/daily").json()
        assert body["field"] == "airQualityPercentage"
        assert [d["mean"] for d in body["days"]] == [50.0]

    def test_bad_days_rejected(self, client):
        assert client.get("/api/v1/nodes/Node_1/summary", params={"days": 0}).status_code == 422

    def test_store_failure_is_503(self, client, store):
        store.fetch_rows = AsyncMock(side_effect=FetchError("down"))
        assert client.get("/api/v1/nodes/Node_1/summary").status_code == 503

    def test_summary_not_truncated_by_default(self, client):
        assert client.get("/api/v1/nodes/Node_1/summary").json()["truncated"] is False

    def test_row_cap_keeps_most_recent_rows(self, client, monkeypatch):
        monkeypatch.setattr(api, "DEFAULT_HISTORY_LIMIT", 2)
        body = client.get("/api/v1/nodes/Node_1/summary").json()
        assert body["truncated"] is True
        assert body["summary"]["count"] == 1
        assert body["summary"]["last"] == 70.0

    def test_weekly_period(self, client):
        body = client.get("/api/v1/nodes/Node_1/daily", params={"period": "week"}).json()
        assert body["period"] == "week"
        assert sum(d["count"] for d in body["days"]) == 3
        assert all(datetime.fromisoformat(d["date"]).weekday() == 0 for d in body["days"])

    def test_unknown_period_rejected(self, client):
        assert client.get("/api/v1/nodes/Node_1/daily", params={"period": "year"}).status_code == 422


class TestIngest:
    def test_ingest_updates_node_immediately(self, client):
        response = client.post("/api/v1/ingest", json={"node_id": "Node_2", "temperature": 22.5})
        assert response.status_code == 200
        body = response.json()
        assert body["tracked"] is True
        assert body["node"]["online"] is True
        assert body["node"]["latest"]["fields"] == {"temperature": 22.5}
        assert body["row_id"] == 6

    def test_ingest_unknown_node_is_stored_but_untracked(self, client):
        body = client.post("/api/v1/ingest", json={"node_id": "Node_7"}).json()
        assert body["tracked"] is False
        assert body["node"] is None

    def test_ingest_requires_node_id(self, client):
        assert client.post("/api/v1/ingest", json={"temperature": 1}).status_code == 422

    def test_read_only_store_is_409(self, config):
        with TestClient(create_app(config, store=_ReadOnlyStore())) as client:
            assert client.post("/api/v1/ingest", json={"node_id": "Node_1"}).status_code == 409

    def test_store_write_failure_is_503(self, client, store):
        store.insert_payload = AsyncMock(side_effect=WriteError("disk full"))
        response = client.post("/api/v1/ingest", json={"node_id": "Node_1"})
        assert response.status_code == 503
        assert "disk full" in response.json()["detail"]

    def test_failed_refetch_does_not_fail_a_stored_row(self, client, store):
        client.app.state.coordinator.flush_push = AsyncMock(side_effect=FetchError("down"))
        response = client.post("/api/v1/ingest", json={"node_id": "Node_1", "rssi": -70})
        assert response.status_code == 200
        assert response.json()["status"] == "stored"
        assert store.rows[-1].id == response.json()["row_id"]


class TestRowChangeHook:
    def test_record_is_pushed(self, client):
        record = {
            "id": 50,
            "data": json.dumps({"node_id": "Node_2", "rssi": -101}),
            "inserted_at": datetime.now(UTC).isoformat(),
        }
        response = client.post("/api/v1/hooks/row-change", json={"type": "INSERT", "table": "LoRaData", "record": record})
        assert response.status_code == 202
        assert response.json()["status"] == "queued"

        body = _wait_for(client, lambda b: _nodes(b)["Node_2"]["latest"]["row_id"] == 50)
        assert _nodes(body)["Node_2"]["online"] is True

    def test_other_table_ignored(self, client):
        body = client.post("/api/v1/hooks/row-change", json={"table": "Other", "record": {"id": 1}}).json()
        assert body["status"] == "ignored"

    def test_delete_ignored(self, client):
        body = client.post("/api/v1/hooks/row-change", json={"type": "DELETE", "old_record": {"id": 3}}).json()
        assert body["status"] == "ignored"
        assert _nodes(client.get("/api/v1/nodes").json())["Node_1"]["latest"]["row_id"] == 3

    def test_without_record_requests_refetch(self, client, store):
        store.add_row(
            _row(60, {"node_id": "Node_2"}, _ago(seconds=5)), publish=False
        )
        body = client.post("/api/v1/hooks/row-change", json={"type": "UPDATE"}).json()
        assert body == {"status": "queued", "refetch": True}
        _wait_for(client, lambda b: _nodes(b)["Node_2"]["latest"]["row_id"] == 60)


class TestDegraded:
    def test_fetch_failure_reported_and_nodes_offline(self, config):
        store = AsyncMock()
        store.fetch_rows.side_effect = FetchError("store unreachable")
        del store.subscribe
        del store.insert_payload
        with TestClient(create_app(config, store=store)) as client:
            body = _wait_for(client, lambda b: b["last_fetch_error"] is not None, path="/health")
            assert body["status"] == "degraded"
            nodes = _nodes(client.get("/api/v1/nodes").json())
            assert all(n["online"] is False and n["latest"] is None for n in nodes.values())
