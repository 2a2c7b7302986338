from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Optional

import pytest

from conftest import run
from rolechat.errors import PersistenceError
from rolechat.models.records import ChatMessage, SessionStatus
from rolechat.services.store import InMemoryStore
from rolechat.services.supabase_persistence import SupabasePersistence


class FakeQuery:
    """Chainable stand-in for a PostgREST request builder."""

    def __init__(self, client: "FakeSupabase", table: str) -> None:
        self.client = client
        self.table = table
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def __getattr__(self, name: str):  # noqa: ANN204
        def _chain(*args: Any, **kwargs: Any) -> "FakeQuery":
            self.calls.append((name, args, kwargs))
            return self

        return _chain

    def execute(self) -> SimpleNamespace:
        if self.client.error is not None:
            raise self.client.error
        return SimpleNamespace(data=self.client.rows.get(self.table, []))


class FakeSupabase:
    def __init__(self, rows: Optional[dict[str, list[dict]]] = None, error: Optional[Exception] = None) -> None:
        self.rows = rows or {}
        self.error = error
        self.queries: list[FakeQuery] = []
        self.rpcs: list[tuple[str, dict]] = []

    def table(self, name: str) -> FakeQuery:
        query = FakeQuery(self, name)
        self.queries.append(query)
        return query

    def rpc(self, name: str, params: dict) -> FakeQuery:
        self.rpcs.append((name, params))
        return FakeQuery(self, f"rpc:{name}")


def test_memory_store_round_trip(store: InMemoryStore) -> None:
    for sender, content in [("user", "A"), ("character", "B"), ("user", "C")]:
        message_id = run(store.append_message(ChatMessage(session_id="sess-1", sender=sender, content=content)))
        assert message_id

    recent = run(store.get_recent_messages("sess-1", 2))
    assert [message.content for message in recent] == ["B", "C"]
    assert run(store.get_recent_messages("sess-1", 0)) == []

    page = run(store.list_messages("sess-1", limit=2, offset=1))
    assert [message.content for message in page] == ["B", "C"]


def test_memory_store_session_copy_is_detached(store: InMemoryStore) -> None:
    session = run(store.get_chat_session("sess-1"))
    session.message_count = 99

    assert store.sessions["sess-1"].message_count == 0
    assert run(store.get_chat_session("missing")) is None


def test_memory_store_touch_and_usage(store: InMemoryStore) -> None:
    run(store.touch_session("sess-1", 2))
    run(store.touch_session("missing", 2))
    run(store.bump_usage_count("char-1"))
    run(store.bump_usage_count("char-1"))

    assert store.sessions["sess-1"].message_count == 2
    assert store.usage_counts["char-1"] == 2


def test_supabase_requires_client_or_credentials() -> None:
    with pytest.raises(RuntimeError):
        SupabasePersistence()


def test_supabase_lookups_parse_rows() -> None:
    client = FakeSupabase(
        {
            "characters": [{"id": "char-1", "name": "Sherlock", "system_prompt": "Deduce.", "voice_type": "v1"}],
            "chat_sessions": [
                {
                    "id": "sess-1",
                    "user_id": "u1",
                    "character_id": "char-1",
                    "message_count": 6,
                    "last_message_at": "2024-05-01T10:00:00Z",
                    "status": "archived",
                }
            ],
        }
    )
    persistence = SupabasePersistence(client)

    character = run(persistence.get_character_by_id("char-1"))
    session = run(persistence.get_chat_session("sess-1"))

    assert character.system_prompt == "Deduce."
    assert session.status is SessionStatus.ARCHIVED
    assert session.message_count == 6
    assert session.last_message_at.year == 2024
    assert ("eq", ("id", "char-1"), {}) in client.queries[0].calls
    assert run(persistence.get_scene_by_id("scene-x")) is None


def test_supabase_recent_messages_are_returned_oldest_first() -> None:
    client = FakeSupabase(
        {
            "chat_messages": [
                {"id": "m3", "session_id": "s", "sender": "user", "content": "C", "created_at": "2024-05-01T10:00:03+00:00"},
                {"id": "m2", "session_id": "s", "sender": "character", "content": "B", "created_at": "2024-05-01T10:00:02+00:00"},
            ]
        }
    )

    messages = run(SupabasePersistence(client).get_recent_messages("s", 2))

    assert [message.content for message in messages] == ["B", "C"]
    calls = client.queries[0].calls
    assert ("order", ("created_at",), {"desc": True}) in calls
    assert ("limit", (2,), {}) in calls


def test_supabase_append_message_inserts_row() -> None:
    client = FakeSupabase()

    message_id = run(
        SupabasePersistence(client).append_message(
            ChatMessage(session_id="s", sender="user", content="hi", message_type="voice", audio_url="https://a/b.wav")
        )
    )

    name, args, _ = client.queries[0].calls[0]
    assert name == "insert"
    row = args[0]
    assert row["id"] == message_id
    assert row["message_type"] == "voice"
    assert row["audio_url"] == "https://a/b.wav"
    assert "voice_type" not in row


def test_supabase_counters_use_rpc() -> None:
    client = FakeSupabase()
    persistence = SupabasePersistence(client)

    run(persistence.touch_session("s", 2))
    run(persistence.bump_usage_count("char-1"))

    assert client.rpcs == [
        ("touch_chat_session", {"session_id": "s", "added": 2}),
        ("increment_character_usage", {"character_id": "char-1"}),
    ]


def test_supabase_failures_become_persistence_errors() -> None:
    persistence = SupabasePersistence(FakeSupabase(error=ConnectionError("reset")))

    with pytest.raises(PersistenceError, match="append_message failed"):
        run(persistence.append_message(ChatMessage(session_id="s", sender="user", content="hi")))


@pytest.mark.parametrize(
    "created_at",
    ["2024-05-01T12:00:00.12345+00:00", "2024-05-01T12:00:00.1+00:00", "2024-05-01T12:00:00Z"],
)
def test_supabase_parses_trimmed_fraction_timestamps(created_at: str) -> None:
    client = FakeSupabase(
        {"chat_messages": [{"id": "m1", "session_id": "s", "sender": "user", "content": "A", "created_at": created_at}]}
    )

    (message,) = run(SupabasePersistence(client).get_recent_messages("s", 4))

    assert message.created_at.hour == 12
    assert message.created_at.utcoffset().total_seconds() == 0


def test_supabase_unreadable_rows_become_persistence_errors() -> None:
    client = FakeSupabase(
        {
            "chat_messages": [{"id": "m1", "session_id": "s", "sender": "user", "content": "A", "created_at": "yesterday"}],
            "chat_sessions": [{"id": "s", "user_id": "u", "character_id": "c", "status": "paused"}],
        }
    )
    persistence = SupabasePersistence(client)

    with pytest.raises(PersistenceError, match="get_recent_messages returned an unreadable row"):
        run(persistence.get_recent_messages("s", 4))
    with pytest.raises(PersistenceError, match="get_chat_session"):
        run(persistence.get_chat_session("s"))
