import asyncio

import pytest

from relaychat import crud, schemas
from relaychat.database import AsyncSessionLocal


class TestUnreadCounters:
    @pytest.mark.asyncio
    async def test_increment_creates_then_bumps(self, db, make_user):
        user = await make_user()
        await crud.increment_unread(db, user.id, "room_1")
        await crud.increment_unread(db, user.id, "room_1")
        await crud.increment_unread(db, user.id, "user_7")

        assert await crud.get_unread_counts(db, user.id) == {"room_1": 2, "user_7": 1}

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, db, make_user):
        user = await make_user()

        async def bump():
            async with AsyncSessionLocal() as session:
                await crud.increment_unread(session, user.id, "room_1")

        await asyncio.gather(*(bump() for _ in range(5)))

        assert await crud.get_unread_counts(db, user.id) == {"room_1": 5}

    @pytest.mark.asyncio
    async def test_clear_removes_key_from_snapshot(self, db, make_user):
        user = await make_user()
        await crud.increment_unread(db, user.id, "room_1")
        await crud.increment_unread(db, user.id, "user_2")

        assert await crud.clear_unread(db, user.id, "room_1")
        assert await crud.get_unread_counts(db, user.id) == {"user_2": 1}
        assert not await crud.clear_unread(db, user.id, "room_9")

    @pytest.mark.asyncio
    async def test_counters_are_per_user(self, db, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        await crud.increment_unread(db, alice.id, "room_1")

        assert await crud.get_unread_counts(db, bob.id) == {}


def direct(recipient, content, client_id=None):
    return schemas.MessageCreate(content=content, recipient_id=recipient.id, client_id=client_id)


class TestMessages:
    @pytest.mark.asyncio
    async def test_history_is_oldest_first(self, db, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        for text in ("one", "two", "three"):
            await crud.create_message(db, direct(bob, text), alice.id)

        history = await crud.get_direct_messages(db, bob.id, alice.id)
        assert [m.content for m in history] == ["one", "two", "three"]

        latest = await crud.get_direct_messages(db, bob.id, alice.id, limit=2)
        assert [m.content for m in latest] == ["two", "three"]

    @pytest.mark.asyncio
    async def test_client_id_deduplicates(self, db, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")

        first, created = await crud.create_message(db, direct(bob, "hi", "abc"), alice.id)
        again, created_again = await crud.create_message(db, direct(bob, "hi", "abc"), alice.id)

        assert created and not created_again
        assert first.id == again.id
        assert len(await crud.get_direct_messages(db, alice.id, bob.id)) == 1

    @pytest.mark.asyncio
    async def test_soft_delete_hides_until_both_sides_delete(self, db, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        message, _ = await crud.create_message(db, direct(bob, "hi"), alice.id)
        message_id = message.id

        purged, _ = await crud.soft_delete_message(db, message, alice.id)
        assert not purged
        assert await crud.get_direct_messages(db, alice.id, bob.id) == []
        assert len(await crud.get_direct_messages(db, bob.id, alice.id)) == 1

        message = await crud.get_message(db, message_id)
        purged, _ = await crud.soft_delete_message(db, message, bob.id)
        assert purged
        assert await crud.get_message(db, message_id) is None

    @pytest.mark.asyncio
    async def test_room_message_purged_after_every_member_deletes(self, db, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        room = await crud.create_room(db, schemas.RoomCreate(name="r", members=[bob.id]), alice.id)
        message, _ = await crud.create_message(
            db, schemas.MessageCreate(content="hi", room_id=room.id), alice.id
        )
        message_id = message.id

        purged, _ = await crud.soft_delete_message(db, message, alice.id)
        assert not purged
        purged, _ = await crud.soft_delete_message(db, await crud.get_message(db, message_id), bob.id)
        assert purged

    @pytest.mark.asyncio
    async def test_delete_for_everyone_clears_content(self, db, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        attachment = {
            "filename": "a.txt", "content_type": "text/plain", "file_type": "plain",
            "size": 2, "data": "aGk=", "is_large_file": False,
        }
        message, _ = await crud.create_message(db, direct(bob, "secret"), alice.id, [attachment])

        await crud.delete_message_for_everyone(db, message)

        message = await crud.get_message(db, message.id)
        assert message.deleted_for_everyone
        assert message.content is None
        assert message.attachments == []
        assert await crud.get_direct_messages(db, bob.id, alice.id) == []

    @pytest.mark.asyncio
    async def test_clear_direct_history(self, db, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        for text in ("one", "two"):
            await crud.create_message(db, direct(bob, text), alice.id)

        cleared, _ = await crud.clear_direct_history(db, alice.id, bob.id)
        assert cleared == 2
        assert await crud.get_direct_messages(db, alice.id, bob.id) == []
        assert len(await crud.get_direct_messages(db, bob.id, alice.id)) == 2

        cleared, _ = await crud.clear_direct_history(db, bob.id, alice.id)
        assert cleared == 2
        assert await crud.get_direct_messages(db, bob.id, alice.id) == []

    @pytest.mark.asyncio
    async def test_mark_read_and_unread_direct_count(self, db, make_user):
        alice = await make_user("alice")
        bob = await make_user("bob")
        first, _ = await crud.create_message(db, direct(bob, "one"), alice.id)
        await crud.create_message(db, direct(bob, "two"), alice.id)

        assert await crud.count_unread_direct(db, bob.id) == 2
        assert (await crud.mark_message_read(db, first.id)).is_read
        assert await crud.count_unread_direct(db, bob.id) == 1
        assert await crud.mark_message_read(db, 9999) is None
