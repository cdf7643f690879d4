"""
Tests for the inspection, consistency and progress endpoints.
"""
import asyncio
import time

import pytest
from fastapi import WebSocketDisconnect, status

from cloudaudit.api.v1.endpoints.ws import WebSocketConnection
from cloudaudit.schemas.inspection import RunStatus
from cloudaudit.services.inspection_run import InspectionRun, ItemResult
from fakes import ROLE_ARN, make_finding


def _start(client, items):
    return client.post(
        "/api/v1/inspections",
        json={"account_id": "a1", "role_arn": ROLE_ARN, "selected_items": items},
    )


def test_start_inspection_returns_batch(client, inspection_service):
    response = _start(client, ["open-ssh"])

    assert response.status_code == status.HTTP_202_ACCEPTED
    data = response.json()
    assert data["account_id"] == "a1"
    assert len(data["run_ids"]) == 1
    assert data["status"] == "PENDING"
    assert data["subscription"]["message"]["payload"]["inspection_id"] == data["batch_id"]


def test_start_inspection_validates_body(client):
    response = client.post("/api/v1/inspections", json={"account_id": "a1"})
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_start_inspection_rejects_bad_scope(client):
    response = client.post(
        "/api/v1/inspections",
        json={"account_id": "a1", "role_arn": ROLE_ARN, "selected_items": ["open-ssh"], "scope": ["us#east"]},
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_run_lifecycle_through_the_api(client, inspection_service):
    data = _start(client, ["open-ssh"]).json()
    run_id = data["run_ids"][0]
    inspection_service.shutdown(wait_for_runs=True)

    run_status = client.get(f"/api/v1/inspections/runs/{run_id}/status").json()
    assert run_status["status"] == RunStatus.COMPLETED.value
    assert run_status["progress"]["percentage"] == 100
    assert run_status["save_successful"] is True

    batch = client.get(f"/api/v1/inspections/batches/{data['batch_id']}").json()
    assert batch["is_complete"] is True

    result = client.get(f"/api/v1/inspections/a1/runs/{run_id}").json()
    assert result["total_findings"] == 1
    assert result["records"][0]["record_type"] == "HISTORY"

    latest = client.get("/api/v1/inspections/a1/latest").json()
    assert latest["count"] == 1
    assert latest["records"][0]["run_id"] == run_id

    by_check = client.get("/api/v1/inspections/a1/latest", params={"check_id": "open-ssh"}).json()
    assert by_check["count"] == 1
    assert by_check["records"][0]["check_id"] == "open-ssh"
    assert by_check["records"][0]["run_id"] == run_id
    other = client.get("/api/v1/inspections/a1/latest", params={"check_id": "public-access"}).json()
    assert other["count"] == 0

    history = client.get("/api/v1/inspections/a1/history", params={"check_id": "open-ssh"}).json()
    assert history["count"] == 1


def test_unknown_ids_are_404(client):
    assert client.get("/api/v1/inspections/runs/missing/status").status_code == status.HTTP_404_NOT_FOUND
    assert client.get("/api/v1/inspections/batches/missing").status_code == status.HTTP_404_NOT_FOUND
    assert client.get("/api/v1/inspections/a1/runs/missing").status_code == status.HTTP_404_NOT_FOUND
    assert client.get("/api/v1/consistency/a1/runs/missing").status_code == status.HTTP_404_NOT_FOUND


def test_history_requires_check_id(client):
    response = client.get("/api/v1/inspections/a1/history")
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_list_checks(client):
    checks = client.get("/api/v1/inspections/checks").json()["checks"]
    assert [c["check_id"] for c in checks] == ["open-ssh", "public-access"]


def test_validate_and_repair_endpoints(client, record_service):
    run = InspectionRun(account_id="a1", check_set="open-ssh", run_id="r3")
    run.transition(RunStatus.IN_PROGRESS)
    run.add_item_result(ItemResult(check_id="open-ssh", findings=[make_finding()]))
    run.transition(RunStatus.COMPLETED)
    _, current = record_service.build_records(run, run.item_results[0], 3000)
    record_service.store.put_current(current)

    report = client.get("/api/v1/consistency/a1/runs/r3").json()
    assert report["is_consistent"] is False
    assert report["issues"][0]["kind"] == "HISTORY_MISSING"

    repaired = client.post("/api/v1/consistency/a1/runs/r3/repair").json()
    assert repaired["is_consistent"] is True
    assert repaired["actions"][0]["action"] == "reconstruct_history"

    assert client.get("/api/v1/consistency/a1/runs/r3").json()["is_consistent"] is True


def test_websocket_subscription_flow(client):
    with client.websocket_connect("/api/v1/ws/inspections") as ws:
        assert ws.receive_json()["type"] == "connection_established"

        ws.send_json({"type": "subscribe_inspection", "payload": {"inspection_id": "run-1"}})
        confirmed = ws.receive_json()
        assert confirmed["type"] == "subscription_confirmed"
        assert confirmed["data"]["inspection_id"] == "run-1"

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        ws.send_json({"type": "bogus"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["data"]["code"] == "UNKNOWN_MESSAGE_TYPE"


def test_websocket_disconnect_unsubscribes(client, hub):
    with client.websocket_connect("/api/v1/ws/inspections") as ws:
        ws.receive_json()
        ws.send_json({"type": "subscribe_inspection", "payload": {"inspection_id": "run-1"}})
        ws.receive_json()
        assert hub.subscriber_count("run-1") == 1

    # The server notices the close on its next receive
    for _ in range(50):
        if hub.subscriber_count("run-1") == 0:
            break
        time.sleep(0.02)
    assert hub.subscriber_count("run-1") == 0


def test_stale_websocket_is_closed_by_the_server(client, hub):
    with client.websocket_connect("/api/v1/ws/inspections") as ws:
        ws.receive_json()

        assert len(hub.sweep_stale(max_idle_seconds=-1)) == 1

        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()
    assert hub.get_stats()["connections"] == 0


class BrokenSocket:
    async def send_text(self, text):
        raise RuntimeError("socket gone")

    async def close(self):
        pass


def test_failed_writer_drops_the_connection(hub):
    async def scenario():
        connection = WebSocketConnection(BrokenSocket(), asyncio.get_running_loop())
        writer = connection.start_writer(hub)
        hub.register(connection)
        await asyncio.wait([writer], timeout=1)
        # let the done callback run
        await asyncio.sleep(0)
        return connection, writer

    connection, writer = asyncio.run(scenario())

    assert isinstance(writer.exception(), RuntimeError)
    assert connection.closed is True
    assert connection.send(b"{}") is False
    assert hub.get_stats()["connections"] == 0
