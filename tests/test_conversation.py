"""
Tests para agent/conversation.py — Historial acotado por (tenant, usuario).
"""

import asyncio

import pytest

from agent.conversation import ConversationStore
from agent.errors import ValidationError
from agent.models import Role, ToolResult, Turn


def _turns(*texts):
    roles = [Role.USER, Role.ASSISTANT]
    return [Turn(role=roles[i % 2], content=t) for i, t in enumerate(texts)]


@pytest.fixture
def store(db) -> ConversationStore:
    return ConversationStore(db, window=20)


class TestConversationStore:
    @pytest.mark.asyncio
    async def test_get_empty_history(self, store, tenant):
        assert await store.get(tenant.id, "628999") == []

    @pytest.mark.asyncio
    async def test_append_then_get_in_order(self, store, tenant):
        await store.append(tenant.id, "628999", _turns("hi", "hello!"))
        history = await store.get(tenant.id, "628999")
        assert [(t.role, t.content) for t in history] == [
            (Role.USER, "hi"),
            (Role.ASSISTANT, "hello!"),
        ]

    @pytest.mark.asyncio
    async def test_get_returns_last_n(self, store, tenant):
        await store.append(tenant.id, "628999", _turns("1", "2", "3", "4", "5", "6"))
        history = await store.get(tenant.id, "628999", limit=2)
        assert [t.content for t in history] == ["5", "6"]

    @pytest.mark.asyncio
    async def test_window_keeps_last_k(self, db, tenant):
        store = ConversationStore(db, window=20)
        for i in range(15):
            await store.append(tenant.id, "628999", _turns(f"q{i}", f"a{i}"))

        record = db.get_conversation(tenant.id, "628999")
        assert len(record["messages"]) == 20
        assert record["messages"][0]["content"] == "q5"
        assert record["messages"][-1]["content"] == "a14"

    @pytest.mark.asyncio
    async def test_histories_are_isolated_per_tenant(self, store, tenant, other_tenant):
        await store.append(tenant.id, "628999", _turns("for sunrise"))
        assert await store.get(other_tenant.id, "628999") == []

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_not_lost(self, store, tenant):
        await asyncio.gather(
            *(store.append(tenant.id, "628999", _turns(f"m{i}")) for i in range(10))
        )
        history = await store.get(tenant.id, "628999", limit=20)
        assert sorted(t.content for t in history) == sorted(f"m{i}" for i in range(10))

    @pytest.mark.asyncio
    async def test_tool_turns_are_rejected(self, store, tenant):
        turn = Turn(role=Role.TOOL_RESULT, content=[ToolResult("call_1", {"found": False})])
        with pytest.raises(ValidationError):
            await store.append(tenant.id, "628999", [turn])
        assert await store.get(tenant.id, "628999") == []

    @pytest.mark.asyncio
    async def test_cleanup_removes_idle_records(self, store, db, tenant):
        await store.append(tenant.id, "628999", _turns("old"))
        with db._conn() as conn:
            conn.execute(
                "UPDATE conversations SET last_message_at = ?",
                ("2000-01-01T00:00:00.000000+00:00",),
            )
        await store.append(tenant.id, "628111", _turns("recent"))

        deleted = await store.cleanup(max_age_days=7)

        assert deleted == 1
        assert await store.get(tenant.id, "628999") == []
        assert len(await store.get(tenant.id, "628111")) == 1

    def test_invalid_window(self, db):
        with pytest.raises(ValueError):
            ConversationStore(db, window=0)

    @pytest.mark.asyncio
    async def test_cleanup_releases_idle_locks(self, store, tenant):
        for i in range(20):
            await store.append(tenant.id, f"62800{i}", _turns("hi"))
        assert len(store._locks) == 20

        deleted = await store.cleanup(max_age_days=0)

        assert deleted == 20
        assert len(store._locks) == 0
        # El lock se recrea al volver a escribir
        await store.append(tenant.id, "628000", _turns("again"))
        assert len(await store.get(tenant.id, "628000")) == 1
