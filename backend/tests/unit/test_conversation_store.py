import asyncio

import pytest

from freetalk.domain.chat.conversations import ConversationStore, _reloaded
from freetalk.domain.chat.messages import MessageStore
from freetalk.domain.chat.models import MessagePayload
from freetalk.errors import (
	AlreadyAdmin,
	AlreadyParticipant,
	InternalError,
	LastAdmin,
	NotAdmin,
	NotParticipant,
	ValidationFailed,
)


@pytest.mark.asyncio
async def test_direct_conversation_is_symmetric(users):
	store = ConversationStore()
	first = await store.find_or_create_direct("alice", "bob")
	second = await store.find_or_create_direct("bob", "alice")
	assert first.id == second.id
	assert sorted(first.participants) == ["alice", "bob"]
	assert not first.is_group


@pytest.mark.asyncio
async def test_concurrent_direct_creation_yields_one_conversation(users):
	store = ConversationStore()
	results = await asyncio.gather(*(store.find_or_create_direct("alice", "bob") for _ in range(10)))
	assert len({conversation.id for conversation in results}) == 1


@pytest.mark.asyncio
async def test_direct_conversation_with_self_is_rejected(users):
	with pytest.raises(ValidationFailed):
		await ConversationStore().find_or_create_direct("alice", "alice")


@pytest.mark.asyncio
async def test_group_requires_three_members_and_makes_creator_admin(users):
	store = ConversationStore()
	with pytest.raises(ValidationFailed):
		await store.create_group("alice", ["bob"], "Pair")
	with pytest.raises(ValidationFailed):
		await store.create_group("alice", ["bob", "carol"], "   ")

	group = await store.create_group("alice", ["bob", "carol", "bob"], "Trip")
	assert group.is_group
	assert group.participants == ["alice", "bob", "carol"]
	assert group.admins == ["alice"]
	assert group.unread == {"alice": 0, "bob": 0, "carol": 0}


@pytest.mark.asyncio
async def test_admin_operations_keep_admin_set_non_empty(users):
	store = ConversationStore()
	group = await store.create_group("alice", ["bob", "carol"], "Trip")

	with pytest.raises(NotAdmin):
		await store.promote_admin(group.id, "bob", "carol")
	with pytest.raises(LastAdmin):
		await store.demote_admin(group.id, "alice", "alice")
	with pytest.raises(LastAdmin):
		await store.remove_participant(group.id, "alice", "alice")

	promoted = await store.promote_admin(group.id, "alice", "bob")
	assert promoted.admins == ["alice", "bob"]
	with pytest.raises(AlreadyAdmin):
		await store.promote_admin(group.id, "alice", "bob")

	demoted = await store.demote_admin(group.id, "bob", "alice")
	assert demoted.admins == ["bob"]
	left = await store.remove_participant(group.id, "alice", "alice")
	assert "alice" not in left.participants
	assert left.admins == ["bob"]


@pytest.mark.asyncio
async def test_refused_last_admin_removal_leaves_group_untouched(users):
	store = ConversationStore()
	group = await store.create_group("alice", ["bob", "carol"], "Trip")

	with pytest.raises(LastAdmin):
		await store.remove_participant(group.id, "alice", "alice")
	with pytest.raises(LastAdmin):
		await store.demote_admin(group.id, "alice", "alice")

	current = await store.get(group.id)
	assert current.participants == ["alice", "bob", "carol"]
	assert current.admins == ["alice"]
	assert current.unread == {"alice": 0, "bob": 0, "carol": 0}
	assert current.updated_at == group.updated_at


@pytest.mark.asyncio
async def test_add_participants_reports_only_new_members(users):
	store = ConversationStore()
	group = await store.create_group("alice", ["bob", "carol"], "Trip")
	with pytest.raises(AlreadyParticipant):
		await store.add_participants(group.id, "alice", ["bob"])

	updated, added = await store.add_participants(group.id, "alice", ["bob", "dave"])
	assert added == ["dave"]
	assert updated.participants[-1] == "dave"
	assert updated.unread["dave"] == 0


@pytest.mark.asyncio
async def test_non_admin_cannot_remove_others_but_can_leave(users):
	store = ConversationStore()
	group = await store.create_group("alice", ["bob", "carol"], "Trip")
	with pytest.raises(NotAdmin):
		await store.remove_participant(group.id, "bob", "carol")
	updated = await store.remove_participant(group.id, "bob", "bob")
	assert updated.participants == ["alice", "carol"]


@pytest.mark.asyncio
async def test_unread_counters_increment_and_reset(users):
	store = ConversationStore()
	conversation = await store.find_or_create_direct("alice", "bob")
	assert await store.increment_unread(conversation.id, "bob") == 1
	assert await store.bulk_increment_unread(conversation.id, "alice") == {"bob": 2}
	assert await store.reset_unread(conversation.id, "bob") == 2
	assert await store.reset_unread(conversation.id, "bob") == 0
	with pytest.raises(NotParticipant):
		await store.increment_unread(conversation.id, "carol")


@pytest.mark.asyncio
async def test_listing_orders_by_activity_and_hides_blocked_and_deleted(users):
	store = ConversationStore()
	messages = MessageStore()
	with_bob = await store.find_or_create_direct("alice", "bob")
	with_carol = await store.find_or_create_direct("alice", "carol")
	with_dave = await store.find_or_create_direct("alice", "dave")
	await messages.append(with_bob.id, "bob", MessagePayload(content="latest"))

	items, total = await store.list_for_user("alice")
	assert total == 3
	assert items[0].id == with_bob.id

	items, total = await store.list_for_user("alice", hidden={"carol"})
	assert with_carol.id not in [item.id for item in items]
	assert total == 2

	assert await store.soft_delete(with_dave.id, "alice") is False
	items, _ = await store.list_for_user("alice")
	assert with_dave.id not in [item.id for item in items]
	items, _ = await store.list_for_user("dave")
	assert [item.id for item in items] == [with_dave.id]


@pytest.mark.asyncio
async def test_soft_delete_by_both_participants_purges_direct_conversation(users):
	store = ConversationStore()
	messages = MessageStore()
	conversation = await store.find_or_create_direct("alice", "bob")
	await messages.append(conversation.id, "alice", MessagePayload(content="hi"))
	assert await store.soft_delete(conversation.id, "alice") is False
	assert await store.soft_delete(conversation.id, "bob") is True
	assert await store.get(conversation.id) is None
	again = await store.find_or_create_direct("alice", "bob")
	assert again.id != conversation.id


@pytest.mark.asyncio
async def test_new_direct_message_reopens_hidden_conversation(users):
	store = ConversationStore()
	messages = MessageStore()
	conversation = await store.find_or_create_direct("alice", "bob")
	await store.soft_delete(conversation.id, "alice")
	await messages.append(conversation.id, "bob", MessagePayload(content="still there?"))
	items, _ = await store.list_for_user("alice")
	assert [item.id for item in items] == [conversation.id]


@pytest.mark.asyncio
async def test_archive_is_per_participant(users):
	store = ConversationStore()
	conversation = await store.find_or_create_direct("alice", "bob")
	archived = await store.set_archived(conversation.id, "alice", True)
	assert archived.archived_by == {"alice"}
	restored = await store.set_archived(conversation.id, "alice", False)
	assert restored.archived_by == set()


def test_row_vanishing_mid_update_is_an_internal_error():
	with pytest.raises(InternalError):
		_reloaded(None)
