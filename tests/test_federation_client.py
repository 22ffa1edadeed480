"""
test_federation_client.py — Federation time parsing, fetching and storing.
"""

import asyncio

import httpx
import pytest

from endurotiming.core import database
from endurotiming.core.federation_client import (
    fetch_entrylist,
    fetch_stage_times,
    parse_federation_time,
    store_entrylist,
    store_stage_times,
)

BASE = "https://federation.example"

ENTRYLIST = [
    {"number": 7, "first_name": " Marco ", "last_name": "Rossi", "class": "E1",
     "motorcycle": "Beta RR 300", "team": "MC Bergamo"},
    {"number": "12", "first_name": "Luca", "last_name": "Bianchi", "class": "E2"},
    {"number": None, "first_name": "No", "last_name": "Number"},
]

STAGE_TIMES = {
    1: [{"number": 7, "time": "4'12.35", "penalty": "0"},
        {"number": 12, "time": "4:10.00", "penalty": "10"},
        {"number": 99, "time": "5'00.00"},
        {"number": 7, "time": ""}],
}


def handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/races/VB26/entrylist":
        return httpx.Response(200, json=ENTRYLIST)
    if path.startswith("/api/races/VB26/stages/"):
        ordinal = int(path.split("/")[5])
        return httpx.Response(200, json=STAGE_TIMES.get(ordinal, []))
    return httpx.Response(404, json={"error": "not found"})


TRANSPORT = httpx.MockTransport(handler)


@pytest.mark.parametrize("text,expected", [
    ("4'12.35", 252.35),
    ("4:12.35", 252.35),
    ("1:04:12.35", 3852.35),
    ("252.35", 252.35),
    ("252,35", 252.35),
    (" 0'59.99 ", 59.99),
    (75, 75.0),
    ("", None),
    (None, None),
    ("DNF", None),
    ("4:75.00", None),
])
def test_parse_federation_time(text, expected):
    assert parse_federation_time(text) == expected


def test_fetch_entrylist_normalizes_and_skips_bad_numbers():
    entries = asyncio.run(fetch_entrylist(BASE, "VB26", transport=TRANSPORT))
    assert [e["race_number"] for e in entries] == [7, 12]
    assert entries[0]["first_name"] == "Marco"
    assert entries[0]["class_name"] == "E1"
    assert entries[1]["motorcycle"] == ""


def test_fetch_stage_times_skips_rows_without_time():
    times = asyncio.run(fetch_stage_times(BASE, "VB26", 1, transport=TRANSPORT))
    assert times == [
        {"race_number": 7, "elapsed_seconds": 252.35, "penalty_seconds": 0.0},
        {"race_number": 12, "elapsed_seconds": 250.0, "penalty_seconds": 10.0},
        {"race_number": 99, "elapsed_seconds": 300.0, "penalty_seconds": None},
    ]


def test_fetch_raises_on_upstream_error():
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(fetch_entrylist(BASE, "UNKNOWN", transport=TRANSPORT))


def test_store_entrylist_and_times(conn):
    eid = database.create_event(conn, "VB26", "Valli Bergamasche")
    sid = database.create_stage(conn, eid, 1, "Enduro Test")
    entries = asyncio.run(fetch_entrylist(BASE, "VB26", transport=TRANSPORT))

    assert store_entrylist(conn, eid, entries) == {"created": 2, "updated": 0}
    assert store_entrylist(conn, eid, entries) == {"created": 0, "updated": 2}

    times = asyncio.run(fetch_stage_times(BASE, "VB26", 1, transport=TRANSPORT))
    result = store_stage_times(conn, eid, database.get_stage(conn, sid), times)
    assert result["stored"] == 2
    assert len(result["warnings"]) == 1 and "99" in result["warnings"][0]

    rows = database.get_times_with_details(conn, eid)
    assert [(r["race_number"], r["elapsed_seconds"], r["penalty_seconds"]) for r in rows] == [
        (12, 250.0, 10.0), (7, 252.35, 0.0)]


def test_non_list_payload_raises_value_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"entries": []}))
    with pytest.raises(ValueError):
        asyncio.run(fetch_entrylist(BASE, "VB26", transport=transport))
    with pytest.raises(ValueError):
        asyncio.run(fetch_stage_times(BASE, "VB26", 1, transport=transport))


def test_non_dict_items_are_skipped():
    payload = ["garbage", 7, {"number": 7, "first_name": "Marco", "last_name": "Rossi",
                              "time": "4'12.35"}]
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=payload))
    entries = asyncio.run(fetch_entrylist(BASE, "VB26", transport=transport))
    assert [e["race_number"] for e in entries] == [7]
    times = asyncio.run(fetch_stage_times(BASE, "VB26", 1, transport=transport))
    assert [(t["race_number"], t["elapsed_seconds"]) for t in times] == [(7, 252.35)]
