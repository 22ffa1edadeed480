"""
test_api.py — REST endpoints through FastAPI's TestClient.
"""

import httpx
import pytest

from endurotiming.core import federation_client


def _event(client, code="VB26", **extra):
    resp = client.post("/api/events", json={"code": code, "name": "Valli Bergamasche", **extra})
    assert resp.status_code == 200
    return resp.json()["id"]


def _setup_race(client, times):
    """times: {race_number: {ordinal: elapsed}}. Returns (event_id, {ordinal: stage_id})."""
    eid = _event(client)
    ordinals = sorted({o for per in times.values() for o in per})
    stage_ids = {}
    for ordinal in ordinals:
        resp = client.post(f"/api/events/{eid}/stages",
                           json={"ordinal": ordinal, "name": f"PS{ordinal}"})
        stage_ids[ordinal] = resp.json()["id"]
    for number in sorted(times):
        client.post(f"/api/events/{eid}/competitors",
                    json={"race_number": number, "first_name": "R", "last_name": f"N{number}"})
        for ordinal, elapsed in times[number].items():
            resp = client.post(f"/api/events/{eid}/times", json={
                "race_number": number, "stage_id": stage_ids[ordinal],
                "elapsed_seconds": elapsed})
            assert resp.status_code == 200
    return eid, stage_ids


# ======================================================================
# CRUD
# ======================================================================

def test_status(client):
    resp = client.get("/api/status")
    assert resp.status_code == 200
    assert resp.json()["server"] == "EnduroTiming"


def test_event_crud(client):
    eid = _event(client)
    assert client.post("/api/events", json={"code": "VB26", "name": "x"}).status_code == 400

    assert client.put(f"/api/events/{eid}", json={"location": "Bergamo"}).json() == {"ok": True}
    event = client.get(f"/api/events/{eid}").json()
    assert event["location"] == "Bergamo"
    assert [e["id"] for e in client.get("/api/events").json()] == [eid]

    assert client.delete(f"/api/events/{eid}").status_code == 200
    assert client.get(f"/api/events/{eid}").status_code == 404


def test_unknown_event_is_404(client):
    for path in ("/api/events/999", "/api/events/999/replay",
                 "/api/events/999/standings", "/api/events/999/simulate-status"):
        assert client.get(path).status_code == 404
    assert client.post("/api/events/999/simulate-reset").status_code == 404


def test_competitors_and_classes(client):
    eid = _event(client)
    for number, cls in ((12, "E2"), (7, "E1"), (30, "E1")):
        resp = client.post(f"/api/events/{eid}/competitors", json={
            "race_number": number, "first_name": "A", "last_name": "B", "class_name": cls})
        assert resp.status_code == 200
    dup = client.post(f"/api/events/{eid}/competitors",
                      json={"race_number": 7, "first_name": "A", "last_name": "B"})
    assert dup.status_code == 400

    assert [c["race_number"] for c in client.get(f"/api/events/{eid}/competitors").json()] == [7, 12, 30]
    e1 = client.get(f"/api/events/{eid}/competitors", params={"class": "E1"}).json()
    assert [c["race_number"] for c in e1] == [7, 30]
    classes = client.get(f"/api/events/{eid}/classes").json()
    assert classes == [{"class_name": "E1", "competitors": 2},
                       {"class_name": "E2", "competitors": 1}]


def test_stage_rules(client):
    eid, stage_ids = _setup_race(client, {7: {1: 100.0}})
    assert client.post(f"/api/events/{eid}/stages",
                       json={"ordinal": 1, "name": "again"}).status_code == 400
    assert client.post(f"/api/events/{eid}/stages",
                       json={"ordinal": 2, "name": "PS2", "status": "bogus"}).status_code == 400
    assert client.put(f"/api/events/{eid}/stages/{stage_ids[1]}",
                      json={"status": "completed"}).status_code == 200

    stages = client.get(f"/api/events/{eid}/stages").json()
    assert stages[0]["status"] == "completed"
    assert stages[0]["times_recorded"] == 1
    assert client.delete(f"/api/events/{eid}/stages/{stage_ids[1]}").status_code == 400


def test_time_for_unknown_race_number(client):
    eid, stage_ids = _setup_race(client, {7: {1: 100.0}})
    resp = client.post(f"/api/events/{eid}/times", json={
        "race_number": 99, "stage_id": stage_ids[1], "elapsed_seconds": 10.0})
    assert resp.status_code == 404


def test_penalty_changes_standings(client):
    eid, stage_ids = _setup_race(client, {7: {1: 100.0}, 12: {1: 95.0}})
    times = client.get(f"/api/events/{eid}/times").json()
    slowest_id = next(t["id"] for t in times if t["race_number"] == 12)

    standings = client.get(f"/api/events/{eid}/standings").json()
    assert [r["race_number"] for r in standings] == [12, 7]

    resp = client.put(f"/api/events/{eid}/times/{slowest_id}/penalty",
                      json={"penalty_seconds": 10})
    assert resp.status_code == 200
    standings = client.get(f"/api/events/{eid}/standings").json()
    assert [r["race_number"] for r in standings] == [7, 12]
    assert standings[1]["gap"] == "+5.0"

    results = client.get(f"/api/events/{eid}/stages/{stage_ids[1]}/results").json()
    assert [r["race_number"] for r in results] == [12, 7]


def test_communications(client):
    eid = _event(client)
    first = client.post(f"/api/events/{eid}/communications", json={"text": "PS2 delayed"})
    second = client.post(f"/api/events/{eid}/communications", json={"text": "PS2 open"})
    assert (first.json()["number"], second.json()["number"]) == (1, 2)
    assert client.post(f"/api/events/{eid}/communications", json={"text": " "}).status_code == 400

    listed = client.get(f"/api/events/{eid}/communications").json()
    assert [c["number"] for c in listed] == [2, 1]
    cid = first.json()["id"]
    assert client.delete(f"/api/events/{eid}/communications/{cid}").status_code == 200
    assert len(client.get(f"/api/events/{eid}/communications").json()) == 1


# ======================================================================
# Replay & simulation
# ======================================================================

def test_replay_endpoint_scenario_a(client):
    eid, _ = _setup_race(client, {7: {1: 10.0, 2: 12.0, 3: 11.0}, 12: {1: 9.0, 3: 13.0}})
    replay = client.get(f"/api/events/{eid}/replay").json()
    assert replay["event_name"] == "Valli Bergamasche"
    snaps = replay["snapshots"]
    assert [r["race_number"] for r in snaps[0]["active"]] == [12, 7]
    assert snaps[0]["active"][1]["gaps"][0] == "+1.0"
    assert [r["race_number"] for r in snaps[1]["active"]] == [7]
    assert snaps[1]["retired"][0]["total"] == "RIT (1/2)"
    assert snaps[2]["retired"][0]["stage_ranks"] == [1, None, 2]


def test_replay_of_empty_event(client):
    eid = _event(client)
    replay = client.get(f"/api/events/{eid}/replay").json()
    assert replay["snapshots"] == [] and replay["competitors"] == []


def test_simulation_flow(client):
    times = {n: {1: 100.0 + n, 2: 200.0 + n} for n in range(1, 11)}
    eid, _ = _setup_race(client, times)

    assert client.get(f"/api/events/{eid}/simulate-status").json() == {"active": False}
    reset = client.post(f"/api/events/{eid}/simulate-reset").json()
    assert reset == {"total_times": 20, "released": 0, "remaining": 20}

    released = []
    for _ in range(10):
        body = client.get(f"/api/events/{eid}/simulate-poll", params={"batch": 10}).json()
        released.extend(r["id"] for r in body["newly_released"])
        assert body["released"] + body["remaining"] == 20
        if body["simulation_complete"]:
            break
    assert sorted(released) == sorted(set(released)) and len(released) == 20

    status = client.get(f"/api/events/{eid}/simulate-status").json()
    assert status["active"] and status["simulation_complete"]
    assert status["started_at"] and status["last_polled_at"]


def test_simulation_without_times(client):
    eid = _event(client)
    assert client.post(f"/api/events/{eid}/simulate-reset").status_code == 404
    body = client.get(f"/api/events/{eid}/simulate-poll").json()
    assert body["newly_released"] == []
    assert body["simulation_complete"] is True
    assert body["batch_requested"] == 15
    assert client.get(f"/api/events/{eid}/simulate-status").json() == {"active": False}


def test_simulation_poll_bad_batch_uses_default(client):
    eid, _ = _setup_race(client, {n: {1: 60.0 + n} for n in range(1, 31)})
    body = client.get(f"/api/events/{eid}/simulate-poll", params={"batch": "lots"}).json()
    assert body["batch_requested"] == 15
    assert 8 <= body["batch_actual"] <= 15


def test_time_edits_scoped_to_their_event(client):
    eid, _ = _setup_race(client, {7: {1: 100.0}})
    other = _event(client, code="OTHER")
    time_id = client.get(f"/api/events/{eid}/times").json()[0]["id"]

    resp = client.put(f"/api/events/{other}/times/{time_id}/penalty",
                      json={"penalty_seconds": 30})
    assert resp.status_code == 404
    assert client.delete(f"/api/events/{other}/times/{time_id}").status_code == 404

    times = client.get(f"/api/events/{eid}/times").json()
    assert [(t["id"], t["penalty_seconds"]) for t in times] == [(time_id, 0.0)]
    actions = [r["action"] for r in client.get(f"/api/events/{other}/audit").json()]
    assert actions == ["create_event"]


def test_audit_of_unknown_event_is_404(client):
    assert client.get("/api/events/999/audit").status_code == 404


def test_audit_records_time_entries(client):
    eid, _ = _setup_race(client, {7: {1: 100.0}})
    actions = [r["action"] for r in client.get(f"/api/events/{eid}/audit").json()]
    assert "record_time" in actions and "create_event" in actions


# ======================================================================
# Federation import
# ======================================================================

@pytest.fixture()
def federation(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        if "/races/SHAPE/" in request.url.path:
            return httpx.Response(200, json={"entries": []})
        if request.url.path.endswith("/entrylist"):
            return httpx.Response(200, json=[
                {"number": 7, "first_name": "Marco", "last_name": "Rossi", "class": "E1"},
                {"number": 12, "first_name": "Luca", "last_name": "Bianchi", "class": "E2"},
            ])
        if request.url.path.endswith("/stages/1/times"):
            return httpx.Response(200, json=[
                {"number": 7, "time": "4'12.35"}, {"number": 55, "time": "4'00.00"}])
        return httpx.Response(503)

    original = federation_client._client
    transport = httpx.MockTransport(handler)
    monkeypatch.setattr(federation_client, "_client", lambda _t: original(transport))


def test_federation_import(client, federation):
    eid = _event(client)
    client.post(f"/api/events/{eid}/stages", json={"ordinal": 1, "name": "PS1"})
    body = {"base_url": "https://federation.example", "race_code": "VB26"}

    preview = client.post(f"/api/events/{eid}/preview-federation", json=body).json()
    assert preview["count"] == 2

    result = client.post(f"/api/events/{eid}/import-federation", json=body).json()
    assert result["created"] == 2
    assert result["times"] == 1
    assert len(result["warnings"]) == 1

    client.post(f"/api/events/{eid}/stages", json={"ordinal": 2, "name": "PS2"})
    resp = client.post(f"/api/events/{eid}/import-federation", json=body)
    assert resp.status_code == 502


def test_failed_stage_fetch_stores_nothing(client, federation):
    eid = _event(client)
    for ordinal in (1, 2):
        client.post(f"/api/events/{eid}/stages", json={"ordinal": ordinal, "name": f"PS{ordinal}"})
    body = {"base_url": "https://federation.example", "race_code": "VB26"}

    assert client.post(f"/api/events/{eid}/import-federation", json=body).status_code == 502
    assert client.get(f"/api/events/{eid}/competitors").json() == []
    assert client.get(f"/api/events/{eid}/times").json() == []


def test_unexpected_payload_shape_is_502(client, federation):
    eid = _event(client)
    body = {"base_url": "https://federation.example", "race_code": "SHAPE"}
    assert client.post(f"/api/events/{eid}/import-federation", json=body).status_code == 502
    assert client.post(f"/api/events/{eid}/preview-federation", json=body).status_code == 502
