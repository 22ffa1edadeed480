"""Shared fixtures: temp databases, sample events and an API client."""

import random

import pytest
from fastapi.testclient import TestClient

from endurotiming.core import database


def make_db(tmp_path):
    """Create a fresh temp database."""
    conn = database.get_connection(tmp_path / "test.db")
    database.init_db(conn)
    return conn


def add_sample_times(conn, event_id, times):
    """times: {race_number: {ordinal: elapsed}}; competitors/stages created on demand."""
    for number in sorted(times):
        comp = database.get_competitor_by_number(conn, event_id, number)
        cid = comp["id"] if comp else database.create_competitor(
            conn, event_id, number, f"Rider{number}", f"Last{number}", "E1")
        for ordinal, elapsed in times[number].items():
            stage = database.get_stage_by_ordinal(conn, event_id, ordinal)
            sid = stage["id"] if stage else database.create_stage(
                conn, event_id, ordinal, f"PS{ordinal}")
            database.record_time(conn, cid, sid, elapsed)


@pytest.fixture()
def conn(tmp_path):
    c = make_db(tmp_path)
    yield c
    c.close()


@pytest.fixture()
def rng():
    return random.Random(1234)


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_DIR", tmp_path)
    from endurotiming.server import app
    with TestClient(app) as c:
        yield c
