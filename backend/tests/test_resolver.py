"""Tests for ConversationResolver: idempotent find-or-create under concurrency."""
import asyncio

import pytest

from gigchat.chat.errors import InvalidRequest, NotFound
from gigchat.chat.resolver import ConversationResolver
from gigchat.chat.schemas import ContextRefs

from conftest import count_conversations


@pytest.fixture
def resolver(store):
    return ConversationResolver(store)


class TestFindOrCreate:
    @pytest.mark.asyncio
    async def test_creates_then_finds(self, resolver, store):
        first = await resolver.find_or_create("u1", "u2")
        again = await resolver.find_or_create("u1", "u2")
        reversed_order = await resolver.find_or_create("u2", "u1")

        assert first == again == reversed_order
        assert count_conversations(store, "u1", "u2") == 1
        assert store.get_participant_ids(first) == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_self_conversation_rejected(self, resolver, store):
        with pytest.raises(InvalidRequest):
            await resolver.find_or_create("u1", "u1")
        assert store.list_conversations("u1") == []

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, resolver, store):
        with pytest.raises(NotFound):
            await resolver.find_or_create("u1", "ghost")
        assert store.list_conversations("u1") == []

    @pytest.mark.asyncio
    async def test_context_refs_resolved_on_creation(self, resolver, store):
        cid = await resolver.find_or_create(
            "u2", "u1", ContextRefs(jobId="j1", applicationId="a1")
        )
        conversation = store.get_conversation(cid)
        assert conversation.jobId == "j1"
        assert conversation.applicationId == "a1"
        assert conversation.clientId == "u1"
        assert conversation.workerId == "u2"

    @pytest.mark.asyncio
    async def test_context_refs_ignored_when_conversation_exists(self, resolver, store):
        cid = await resolver.find_or_create("u1", "u2")
        same = await resolver.find_or_create("u1", "u2", ContextRefs(jobId="missing"))
        assert same == cid
        assert store.get_conversation(cid).jobId is None

    @pytest.mark.asyncio
    async def test_unknown_job(self, resolver, store):
        with pytest.raises(NotFound):
            await resolver.find_or_create("u1", "u2", ContextRefs(jobId="missing"))
        assert count_conversations(store, "u1", "u2") == 0

    @pytest.mark.asyncio
    async def test_unknown_application(self, resolver):
        with pytest.raises(NotFound):
            await resolver.find_or_create("u1", "u2", ContextRefs(applicationId="missing"))


class TestPairsWithSeparatorIds:
    @pytest.mark.asyncio
    async def test_ids_containing_separators_get_distinct_conversations(self, resolver, store):
        for user_id in ("a:b", "c", "a", "b:c"):
            store.register_user(user_id)

        first = await resolver.find_or_create("a:b", "c")
        second = await resolver.find_or_create("a", "b:c")

        assert first != second
        assert store.get_participant_ids(first) == ["a:b", "c"]
        assert store.get_participant_ids(second) == ["a", "b:c"]

    @pytest.mark.asyncio
    async def test_reread_rejects_conversation_of_another_pair(self, store, monkeypatch):
        resolver = ConversationResolver(store, retry_attempts=2)
        other = store.create_conversation("u1", "u3").conversationId
        store.create_conversation("u1", "u2")
        monkeypatch.setattr(store, "find_conversation_between", lambda a, b: None)
        monkeypatch.setattr(store, "get_conversation_id_by_pair", lambda a, b: other)
        monkeypatch.setattr("gigchat.chat.resolver.RETRY_DELAY_SECONDS", 0)

        with pytest.raises(RuntimeError):
            await resolver.find_or_create("u1", "u2")


class TestCreationRace:
    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_conversation(self, resolver, store):
        calls = [
            resolver.find_or_create("u1", "u2") if i % 2 else resolver.find_or_create("u2", "u1")
            for i in range(10)
        ]
        ids = await asyncio.gather(*calls)

        assert len(set(ids)) == 1
        assert count_conversations(store, "u1", "u2") == 1

    @pytest.mark.asyncio
    async def test_independent_resolvers_share_one_conversation(self, store):
        """Resolvers without a shared lock (other processes) rely on the unique key."""
        resolvers = [ConversationResolver(store) for _ in range(4)]
        ids = await asyncio.gather(*[r.find_or_create("u1", "u2") for r in resolvers])

        assert len(set(ids)) == 1
        assert count_conversations(store, "u1", "u2") == 1

    @pytest.mark.asyncio
    async def test_lost_race_returns_winner(self, resolver, store, monkeypatch):
        """The existence check misses a row committed just before our insert."""
        winner = store.create_conversation("u1", "u2").conversationId
        monkeypatch.setattr(store, "find_conversation_between", lambda a, b: None)

        assert await resolver.find_or_create("u2", "u1") == winner
        assert count_conversations(store, "u1", "u2") == 1

    @pytest.mark.asyncio
    async def test_gives_up_when_winner_never_visible(self, store, monkeypatch):
        resolver = ConversationResolver(store, retry_attempts=2)
        store.create_conversation("u1", "u2")
        monkeypatch.setattr(store, "find_conversation_between", lambda a, b: None)
        monkeypatch.setattr(store, "get_conversation_id_by_pair", lambda a, b: None)
        monkeypatch.setattr("gigchat.chat.resolver.RETRY_DELAY_SECONDS", 0)

        with pytest.raises(RuntimeError):
            await resolver.find_or_create("u1", "u2")
