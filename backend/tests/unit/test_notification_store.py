from datetime import datetime, timedelta, timezone

import pytest

from freetalk.domain.notifications.models import NotificationDraft
from freetalk.domain.notifications.store import NotificationStore
from freetalk.errors import Forbidden, NotFound, ValidationFailed

NOW = datetime.now(timezone.utc).replace(microsecond=0)


def draft(**overrides) -> NotificationDraft:
	values = {"recipient_id": "bob", "sender_id": "alice", "type": "reaction", "post_id": "p1"}
	values.update(overrides)
	return NotificationDraft(**values)


@pytest.mark.asyncio
async def test_self_notifications_are_skipped_and_types_validated():
	store = NotificationStore()
	assert await store.record(draft(recipient_id="alice")) is None
	with pytest.raises(ValidationFailed):
		await store.record(draft(type="bogus"))


@pytest.mark.asyncio
async def test_duplicate_within_window_refreshes_existing_record():
	store = NotificationStore()
	first = await store.record(draft(reaction_type="like"), now=NOW)
	await store.mark_read(first.notification.id, "bob")

	second = await store.record(draft(reaction_type="love"), now=NOW + timedelta(seconds=30))
	assert second.refreshed
	assert second.notification.id == first.notification.id
	assert second.notification.reaction_type == "love"
	assert not second.notification.is_read
	assert second.notification.created_at == NOW + timedelta(seconds=30)

	items, total = await store.list("bob", now=NOW + timedelta(seconds=31))
	assert total == 1
	assert items[0].id == first.notification.id


@pytest.mark.asyncio
async def test_duplicate_outside_window_or_without_post_creates_new_record():
	store = NotificationStore()
	first = await store.record(draft(), now=NOW)
	later = await store.record(draft(), now=NOW + timedelta(seconds=61))
	assert not later.refreshed
	assert later.notification.id != first.notification.id

	one = await store.record(draft(type="message", post_id=None, conversation_id="c1"), now=NOW)
	two = await store.record(draft(type="message", post_id=None, conversation_id="c1"), now=NOW)
	assert one.notification.id != two.notification.id


@pytest.mark.asyncio
async def test_previews_are_clipped():
	store = NotificationStore()
	outcome = await store.record(draft(type="comment", comment_text="x" * 250, preview="y" * 150))
	assert len(outcome.notification.comment_text) == 100
	assert len(outcome.notification.preview) == 100


@pytest.mark.asyncio
async def test_list_unread_count_and_retention():
	store = NotificationStore()
	old = await store.record(draft(post_id="old"), now=NOW - timedelta(days=31))
	fresh = await store.record(draft(post_id="p2"), now=NOW - timedelta(minutes=5))
	newest = await store.record(draft(type="follow", post_id=None), now=NOW)
	await store.mark_read(newest.notification.id, "bob")

	items, total = await store.list("bob", now=NOW)
	assert total == 2
	assert [item.id for item in items] == [newest.notification.id, fresh.notification.id]
	unread, unread_total = await store.list("bob", unread_only=True, now=NOW)
	assert unread_total == 1
	assert await store.unread_count("bob", now=NOW) == 1
	assert await store.get(old.notification.id, now=NOW) is None

	assert await store.prune(now=NOW) == 1
	assert await store.prune(now=NOW) == 0


@pytest.mark.asyncio
async def test_ownership_is_enforced():
	store = NotificationStore()
	outcome = await store.record(draft())
	with pytest.raises(Forbidden):
		await store.mark_read(outcome.notification.id, "carol")
	with pytest.raises(Forbidden):
		await store.delete(outcome.notification.id, "carol")
	with pytest.raises(NotFound):
		await store.mark_read("missing", "bob")

	await store.delete(outcome.notification.id, "bob")
	assert await store.get(outcome.notification.id) is None


@pytest.mark.asyncio
async def test_mark_all_read_and_delete_all_touch_only_the_caller():
	store = NotificationStore()
	await store.record(draft(post_id="a"))
	await store.record(draft(post_id="b"))
	await store.record(draft(recipient_id="carol"))
	assert await store.mark_all_read("bob") == 2
	assert await store.unread_count("bob") == 0
	assert await store.unread_count("carol") == 1
	assert await store.delete_all("bob") == 2
	assert await store.unread_count("carol") == 1
