import json

import pytest

from answer_service.core import storage as storage_module
from answer_service.core.models import Message, VectorScore
from answer_service.core.settings import SETTINGS


class _FakeCursor:
    def __init__(self, steps, executed):
        self._steps = steps
        self._executed = executed
        self.rowcount = 0
        self._fetchone = None
        self._fetchall = []

    def execute(self, sql, params=None):
        self._executed.append((" ".join(str(sql).split()), params))
        if not self._steps:
            raise AssertionError("unexpected SQL execution")
        step = self._steps.pop(0)
        if "raise" in step:
            raise step["raise"]
        self.rowcount = int(step.get("rowcount") or 0)
        self._fetchone = step.get("fetchone")
        self._fetchall = step.get("fetchall") or []
        return self.rowcount

    def fetchone(self):
        return self._fetchone

    def fetchall(self):
        return self._fetchall

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _FakeConnection:
    def __init__(self, steps, executed, connections):
        self._steps = steps
        self._executed = executed
        self.closed = False
        connections.append(self)

    def cursor(self):
        return _FakeCursor(self._steps, self._executed)

    def close(self):
        self.closed = True


@pytest.fixture
def mysql(monkeypatch):
    store = storage_module.MySQLStorage(SETTINGS)
    state = {"steps": [], "executed": [], "connections": []}
    monkeypatch.setattr(
        store,
        "_connect",
        lambda: _FakeConnection(state["steps"], state["executed"], state["connections"]),
    )
    return store, state


def _row(name, created_time, author="alice", text="", reply_to="", scores=None):
    return {
        "owner": "admin",
        "name": name,
        "created_time": created_time,
        "user": "alice",
        "chat": "chat_1",
        "author": author,
        "reply_to": reply_to,
        "text": text,
        "vector_scores": scores,
    }


def test_get_decodes_row_and_closes_connection(mysql):
    store, state = mysql
    state["steps"].append(
        {"fetchone": _row("a1", "2024-01-01T00:00:00.000+00:00", author="AI", reply_to="admin/q1", scores='[{"vector": "vec_1", "score": 0.5}]')}
    )

    message = store.get("admin/a1")

    assert message.id == "admin/a1"
    assert message.is_ai_authored
    assert message.vector_scores == [VectorScore(vector="vec_1", score=0.5)]
    sql, params = state["executed"][0]
    assert sql.startswith("SELECT owner, name, created_time, `user`")
    assert params == ("admin", "a1")
    assert all(connection.closed for connection in state["connections"])


def test_get_missing_message_returns_none(mysql):
    store, state = mysql
    state["steps"].append({"fetchone": None})

    assert store.get("admin/missing") is None


def test_get_recent_returns_oldest_first(mysql):
    store, state = mysql
    state["steps"].append(
        {
            "fetchall": [
                _row("m3", "2024-01-01T00:03:00.000+00:00", text="third"),
                _row("m2", "2024-01-01T00:02:00.000+00:00", text="second"),
            ]
        }
    )

    messages = store.get_recent("chat_1", 2)

    assert [item.text for item in messages] == ["second", "third"]
    sql, params = state["executed"][0]
    assert "ORDER BY created_time DESC LIMIT %s" in sql
    assert params == ("chat_1", 2)


def test_get_recent_with_zero_limit_skips_query(mysql):
    store, state = mysql

    assert store.get_recent("chat_1", 0) == []
    assert state["executed"] == []


def test_update_reports_missing_row(mysql):
    store, state = mysql
    state["steps"].append({"rowcount": 0})
    message = Message(owner="admin", name="a1", author="AI", text="answer", vector_scores=[VectorScore("vec_1", 0.9)])

    assert store.update("admin/a1", message) is False
    sql, params = state["executed"][0]
    assert sql.startswith("UPDATE message SET")
    assert params[-2:] == ("admin", "a1")
    assert json.loads(params[8]) == [{"vector": "vec_1", "score": 0.9}]


def test_create_reports_inserted_row(mysql):
    store, state = mysql
    state["steps"].append({"rowcount": 1})

    assert store.create(Message(owner="admin", name="q2", text="hello")) is True
    assert state["executed"][0][0].startswith("INSERT INTO message")


def test_count_since_excludes_ai_author(mysql):
    store, state = mysql
    state["steps"].append({"fetchone": {"cnt": 4}})

    assert store.count_since("alice", 15) == 4
    sql, params = state["executed"][0]
    assert "author<>%s" in sql
    assert params[:2] == ("alice", "AI")


def test_get_chat_and_default_store(mysql):
    store, state = mysql
    state["steps"].append({"fetchone": {"owner": "admin", "name": "chat_1", "type": "AI", "user": "alice", "user2": "gpt"}})
    state["steps"].append(
        {
            "fetchone": {
                "owner": "admin",
                "name": "store-built-in",
                "welcome": "Hi",
                "prompt": "Be brief.",
                "memory_limit": 3,
                "limit_minutes": 10,
                "frequency": 2,
            }
        }
    )

    chat = store.get_chat("admin/chat_1")
    config = store.get_default("admin")

    assert chat.is_ai and chat.user2 == "gpt"
    assert (config.memory_limit, config.limit_minutes, config.frequency) == (3, 10, 2)
    assert "is_default=1" in state["executed"][1][0]


def test_driver_errors_propagate(mysql):
    store, state = mysql
    state["steps"].append({"raise": RuntimeError("connection lost")})

    with pytest.raises(RuntimeError, match="connection lost"):
        store.get("admin/a1")
    assert state["connections"][0].closed


def test_build_storage_selects_backend():
    import dataclasses

    assert isinstance(storage_module.build_storage(dataclasses.replace(SETTINGS, storage_backend="memory")), storage_module.InMemoryStorage)
    assert isinstance(storage_module.build_storage(dataclasses.replace(SETTINGS, storage_backend="mysql")), storage_module.MySQLStorage)
