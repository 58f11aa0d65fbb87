"""Tests for session history and persistence."""

import pytest

from rental_assistant.errors import SessionPersistFailure
from rental_assistant.services.session_service import ChatSession, SessionService
from rental_assistant.services.store_service import InMemoryStore

from .fakes import FailingStore


class _StepClock:
    """Returns scripted timestamps, repeating the last one."""

    def __init__(self, *values: float):
        self.values = list(values)

    def __call__(self) -> float:
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


class TestRecordTurn:
    @pytest.mark.asyncio
    async def test_turns_append_user_then_assistant(self, store):
        sessions = SessionService(store)

        for i in range(3):
            await sessions.record_turn("s1", f"question {i}", f"answer {i}")

        session = sessions.get_session("s1")
        assert len(session.messages) == 6
        assert [m.role for m in session.messages] == ["user", "assistant"] * 3
        assert session.messages[0].content == "question 0"
        assert session.messages[-1].content == "answer 2"

    @pytest.mark.asyncio
    async def test_timestamps_never_decrease(self, store):
        sessions = SessionService(store, clock=_StepClock(100.0, 105.0, 90.0, 80.0))

        await sessions.record_turn("s1", "a", "b")
        await sessions.record_turn("s1", "c", "d")

        timestamps = [m.timestamp for m in sessions.get_session("s1").messages]
        assert timestamps == sorted(timestamps)

    @pytest.mark.asyncio
    async def test_shown_and_selected_listings(self, store):
        sessions = SessionService(store)

        await sessions.record_turn("s1", "2 bedroom", "here you go", shown_ids=["lc-111", "rk-2b"])
        await sessions.record_turn("s1", "the second one", "great pick", selected_id="rk-2b")

        session = sessions.get_session("s1")
        assert session.last_shown_ids == ["lc-111", "rk-2b"]
        assert session.selected_id == "rk-2b"

    @pytest.mark.asyncio
    async def test_session_is_written_through(self, store):
        await SessionService(store).record_turn("s1", "hi", "hello")

        doc = await store.get("session:s1")
        assert [m["role"] for m in doc["messages"]] == ["user", "assistant"]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_new_session_is_persisted(self, store):
        await SessionService(store).get_or_create("fresh")
        assert await store.get("session:fresh") is not None

    @pytest.mark.asyncio
    async def test_session_reloads_from_store(self, store):
        await SessionService(store).record_turn("s1", "hi", "hello", shown_ids=["lc-111"])

        reloaded = await SessionService(store).get_or_create("s1")

        assert [m.content for m in reloaded.messages] == ["hi", "hello"]
        assert reloaded.last_shown_ids == ["lc-111"]

    @pytest.mark.asyncio
    async def test_store_outage_keeps_session_in_memory(self):
        sessions = SessionService(FailingStore())

        session = await sessions.record_turn("s1", "hi", "hello")

        assert session.ephemeral
        assert len(session.messages) == 2
        assert await sessions.get_history("s1") != []

    @pytest.mark.asyncio
    async def test_persist_raises_on_outage(self):
        sessions = SessionService(FailingStore())
        session = ChatSession(session_id="s1", created_at=0.0, updated_at=0.0)
        with pytest.raises(SessionPersistFailure):
            await sessions.persist(session)

    @pytest.mark.asyncio
    async def test_without_store(self):
        sessions = SessionService()
        await sessions.record_turn("s1", "hi", "hello")
        assert len(await sessions.get_history("s1")) == 2

    @pytest.mark.asyncio
    async def test_unreadable_stored_session_starts_fresh(self, store):
        await store.set("session:s1", {"messages": "garbage"})
        session = await SessionService(store).get_or_create("s1")
        assert session.messages == []


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_limited_to_latest(self, store):
        sessions = SessionService(store)
        for i in range(5):
            await sessions.record_turn("s1", f"q{i}", f"a{i}")

        history = await sessions.get_history("s1", limit=3)

        assert [m["content"] for m in history] == ["a3", "q4", "a4"]
        assert set(history[0]) == {"id", "role", "content", "timestamp"}

    @pytest.mark.asyncio
    async def test_unknown_session_has_no_history(self, store):
        assert await SessionService(store).get_history("nobody") == []

    @pytest.mark.asyncio
    async def test_delete_session(self, store):
        sessions = SessionService(store)
        await sessions.record_turn("s1", "hi", "hello")

        assert await sessions.delete_session("s1")
        assert await sessions.get_history("s1") == []
        assert not await sessions.delete_session("s1")

    def test_recent_messages(self):
        session = ChatSession(session_id="s1", created_at=0.0, updated_at=0.0)
        session.append("user", "hi", 1.0)
        session.append("assistant", "hello", 2.0)
        assert session.recent_messages(1) == [{"role": "assistant", "content": "hello"}]
        assert session.recent_messages(0) == []


class TestCleanup:
    @pytest.mark.asyncio
    async def test_stale_sessions_are_dropped_from_memory(self):
        clock = _StepClock(0.0)
        sessions = SessionService(InMemoryStore(), session_timeout_hours=1, clock=clock)
        await sessions.get_or_create("old")

        clock.values = [2 * 3600.0]
        await sessions.get_or_create("new")

        assert sessions.cleanup_stale_sessions() == 1
        assert sessions.get_session("old") is None
        assert sessions.get_active_session_count() == 1
