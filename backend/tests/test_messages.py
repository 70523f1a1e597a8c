"""Tests for MessageStore: validation, atomic append and commit ordering."""
import asyncio

import pytest

from gigchat.chat.errors import Forbidden, InvalidRequest
from gigchat.chat.messages import MessageStore

from conftest import count_messages


@pytest.fixture
def conversation_id(store):
    return store.create_conversation("u1", "u2").conversationId


@pytest.fixture
def messages(store):
    return MessageStore(store, max_length=2000)


class TestValidation:
    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_blank_content_rejected(self, messages, content):
        with pytest.raises(InvalidRequest):
            messages.validate_content(content)

    def test_length_limit_is_inclusive(self, messages):
        messages.validate_content("x" * 2000)
        with pytest.raises(InvalidRequest):
            messages.validate_content("x" * 2001)

    @pytest.mark.asyncio
    async def test_rejected_content_is_not_stored(self, messages, store, conversation_id):
        with pytest.raises(InvalidRequest):
            await messages.append(conversation_id, "u1", " ")
        assert count_messages(store, conversation_id) == 0
        assert store.get_conversation(conversation_id).lastMessageAt is None


class TestAppend:
    @pytest.mark.asyncio
    async def test_append_bumps_last_message_at(self, messages, store, conversation_id):
        message = await messages.append(conversation_id, "u1", "hi")

        assert message.content == "hi"
        assert message.senderId == "u1"
        assert store.get_conversation(conversation_id).lastMessageAt == message.sentAt

    @pytest.mark.asyncio
    async def test_non_participant_forbidden(self, messages, store, conversation_id):
        with pytest.raises(Forbidden):
            await messages.append(conversation_id, "u3", "hello")
        assert count_messages(store, conversation_id) == 0

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_totally_ordered(self, messages, store, conversation_id):
        committed = []

        async def record(message):
            committed.append(message)

        results = await asyncio.gather(*[
            messages.append(conversation_id, "u1" if i % 2 else "u2", f"m{i}", on_commit=record)
            for i in range(20)
        ])

        assert len(results) == 20
        assert count_messages(store, conversation_id) == 20
        sent = [m.sentAt for m in committed]
        assert sent == sorted(sent)
        assert len(set(sent)) == 20
        assert store.get_conversation(conversation_id).lastMessageAt == max(sent)

    @pytest.mark.asyncio
    async def test_on_commit_runs_before_next_append(self, messages, conversation_id):
        events = []

        async def slow_fan_out(message):
            events.append(("start", message.content))
            await asyncio.sleep(0.01)
            events.append(("end", message.content))

        await asyncio.gather(
            messages.append(conversation_id, "u1", "a", on_commit=slow_fan_out),
            messages.append(conversation_id, "u1", "b", on_commit=slow_fan_out),
        )

        first, second = events[0][1], events[2][1]
        assert events == [("start", first), ("end", first), ("start", second), ("end", second)]
