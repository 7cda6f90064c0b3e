import json

import pytest

from freetalk import main
from freetalk.domain.identity.directory import seed_block


async def _send(client, headers, **body):
	response = await client.post("/api/messages", json=body, headers=headers)
	assert response.status_code == 201, response.text
	return response.json()["data"]["message"]


def _events(emitted, name):
	return [(call.kwargs.get("room"), call.args[1]) for call in emitted.await_args_list if call.args[0] == name]


@pytest.mark.asyncio
async def test_send_to_online_recipient_fans_out(api_client, auth_headers, users, emitted, online, push_provider):
	await online("bob")
	response = await api_client.post(
		"/api/messages", json={"recipient": "bob", "content": "hello bob"}, headers=auth_headers("alice")
	)
	assert response.status_code == 201
	body = response.json()
	assert body["success"] is True
	assert body["message"] == "Message sent successfully"
	message = body["data"]["message"]
	assert message["sender"]["id"] == "alice"
	assert message["recipient"]["id"] == "bob"
	assert message["type"] == "text"

	rooms = sorted(room for room, _ in _events(emitted, "message:new"))
	assert rooms == ["user:alice", "user:bob"]
	counts = _events(emitted, "message:unread-count")
	assert counts == [("user:bob", {"conversationId": message["conversationId"], "unreadCount": 1, "increment": 1})]
	await main.push.drain()
	assert push_provider.sent == []


@pytest.mark.asyncio
async def test_send_to_offline_recipient_pushes(api_client, auth_headers, users, emitted, push_provider):
	message = await _send(api_client, auth_headers("alice"), recipient="bob", content="are you there?")
	await main.push.drain()
	assert [(p["token"], p["title"], p["body"]) for p in push_provider.sent] == [
		("device-bob", "Alice", "are you there?"),
	]
	assert push_provider.sent[0]["data"]["messageId"] == message["id"]


@pytest.mark.asyncio
async def test_send_validation_and_authorization_errors(api_client, auth_headers, users, emitted):
	unauthenticated = await api_client.post("/api/messages", json={"recipient": "bob", "content": "x"})
	assert unauthenticated.status_code == 401
	assert unauthenticated.json()["success"] is False

	empty = await api_client.post("/api/messages", json={"recipient": "bob"}, headers=auth_headers("alice"))
	assert empty.status_code == 400
	assert empty.json()["message"] == "Message content, media, story, or GIF is required"

	missing = await api_client.post("/api/messages", json={"content": "x"}, headers=auth_headers("alice"))
	assert missing.status_code == 400

	seed_block("bob", "alice")
	blocked = await api_client.post(
		"/api/messages", json={"recipient": "bob", "content": "x"}, headers=auth_headers("alice")
	)
	assert blocked.status_code == 403
	assert blocked.json()["code"] == "blocked"
	assert emitted.await_count == 0


@pytest.mark.asyncio
async def test_multipart_send_stores_voice_media(api_client, auth_headers, users, emitted):
	response = await api_client.post(
		"/api/messages",
		data={"recipient": "bob", "duration": "3.5", "waveformData": json.dumps([0.1, 0.5, 0.2])},
		files={"media": ("note.m4a", b"voice-bytes", "audio/mp4")},
		headers=auth_headers("alice"),
	)
	assert response.status_code == 201, response.text
	message = response.json()["data"]["message"]
	assert message["type"] == "voice"
	assert message["media"]["fileName"] == "note.m4a"
	assert message["media"]["duration"] == 3.5
	assert message["media"]["waveform"] == [0.1, 0.5, 0.2]
	assert message["media"]["url"].startswith("http://testserver/uploads/messages/alice/")
	assert message["media"]["url"].rsplit("/", 1)[-1] in _stored_files("alice")


def _stored_files(owner_id):
	folder = main.uploads.root / "messages" / owner_id
	return sorted(path.name for path in folder.iterdir()) if folder.exists() else []


@pytest.mark.asyncio
async def test_refused_multipart_send_leaves_no_file(api_client, auth_headers, users, emitted):
	before = _stored_files("alice")
	seed_block("bob", "alice")
	blocked = await api_client.post(
		"/api/messages",
		data={"recipient": "bob"},
		files={"media": ("cat.jpg", b"jpeg-bytes", "image/jpeg")},
		headers=auth_headers("alice"),
	)
	assert blocked.status_code == 403
	missing = await api_client.post(
		"/api/messages",
		data={"recipient": "ghost"},
		files={"media": ("cat.jpg", b"jpeg-bytes", "image/jpeg")},
		headers=auth_headers("alice"),
	)
	assert missing.status_code == 404
	assert _stored_files("alice") == before


@pytest.mark.asyncio
async def test_gif_wins_over_uploaded_file(api_client, auth_headers, users, emitted):
	before = _stored_files("alice")
	response = await api_client.post(
		"/api/messages",
		data={"recipient": "bob", "gifUrl": "https://media.giphy.com/wave.gif"},
		files={"media": ("cat.jpg", b"jpeg-bytes", "image/jpeg")},
		headers=auth_headers("alice"),
	)
	assert response.status_code == 201, response.text
	message = response.json()["data"]["message"]
	assert message["type"] == "gif"
	assert message["gifUrl"] == "https://media.giphy.com/wave.gif"
	assert message.get("media") is None
	assert _stored_files("alice") == before


@pytest.mark.asyncio
async def test_conversation_listing_history_and_read(api_client, auth_headers, users, emitted):
	first = await _send(api_client, auth_headers("alice"), recipient="bob", content="one")
	await _send(api_client, auth_headers("alice"), conversationId=first["conversationId"], content="two")
	conversation_id = first["conversationId"]

	listing = await api_client.get("/api/messages/conversations", headers=auth_headers("bob"))
	data = listing.json()["data"]
	assert data["totalUnread"] == 2
	assert data["conversations"][0]["id"] == conversation_id
	assert data["conversations"][0]["otherUser"]["id"] == "alice"
	assert data["conversations"][0]["lastMessage"]["content"] == "two"

	history = await api_client.get(f"/api/messages/{conversation_id}", headers=auth_headers("bob"))
	history_data = history.json()["data"]
	assert [m["content"] for m in history_data["messages"]] == ["one", "two"]
	assert history_data["pagination"] == {"page": 1, "limit": 50, "total": 2, "pages": 1}

	read = await api_client.patch(f"/api/messages/{conversation_id}/read", headers=auth_headers("bob"))
	assert read.json()["data"] == {"conversationId": conversation_id, "markedCount": 2}
	assert _events(emitted, "message:read") == [("user:alice", {"conversationId": conversation_id, "readBy": "bob"})]

	listing = await api_client.get("/api/messages/conversations", headers=auth_headers("bob"))
	assert listing.json()["data"]["totalUnread"] == 0

	outsider = await api_client.get(f"/api/messages/{conversation_id}", headers=auth_headers("carol"))
	assert outsider.status_code == 403


@pytest.mark.asyncio
async def test_open_direct_conversation(api_client, auth_headers, users):
	response = await api_client.get("/api/messages/conversation/bob", headers=auth_headers("alice"))
	assert response.status_code == 200
	conversation = response.json()["data"]["conversation"]
	assert conversation["isGroup"] is False
	assert conversation["otherUser"]["id"] == "bob"

	again = await api_client.get("/api/messages/conversation/alice", headers=auth_headers("bob"))
	assert again.json()["data"]["conversation"]["id"] == conversation["id"]

	unknown = await api_client.get("/api/messages/conversation/zed", headers=auth_headers("alice"))
	assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_delete_for_everyone_and_for_me(api_client, auth_headers, users, emitted):
	message = await _send(api_client, auth_headers("alice"), recipient="bob", content="typo")

	forbidden = await api_client.delete(f"/api/messages/{message['id']}/for-everyone", headers=auth_headers("bob"))
	assert forbidden.status_code == 403

	response = await api_client.delete(f"/api/messages/{message['id']}/for-everyone", headers=auth_headers("alice"))
	assert response.status_code == 200
	assert response.json()["data"]["content"] == "This message was deleted"
	deleted = _events(emitted, "message:deleted")
	assert sorted(room for room, _ in deleted) == ["user:alice", "user:bob"]

	hidden = await api_client.delete(f"/api/messages/{message['id']}/for-me", headers=auth_headers("bob"))
	assert hidden.json()["message"] == "Message deleted for you"
	history = await api_client.get(f"/api/messages/{message['conversationId']}", headers=auth_headers("bob"))
	assert history.json()["data"]["messages"] == []
	still = await api_client.get(f"/api/messages/{message['conversationId']}", headers=auth_headers("alice"))
	assert [m["isDeleted"] for m in still.json()["data"]["messages"]] == [True]


@pytest.mark.asyncio
async def test_reactions_round_trip(api_client, auth_headers, users, emitted):
	message = await _send(api_client, auth_headers("alice"), recipient="bob", content="nice")

	missing = await api_client.post(f"/api/messages/{message['id']}/react", json={}, headers=auth_headers("bob"))
	assert missing.status_code == 400
	assert missing.json()["message"] == "Emoji is required"

	added = await api_client.post(
		f"/api/messages/{message['id']}/react", json={"emoji": "😂"}, headers=auth_headers("bob")
	)
	assert [r["emoji"] for r in added.json()["data"]["reactions"]] == ["😂"]
	assert _events(emitted, "notification:new")[-1][0] == "user:alice"

	removed = await api_client.delete(f"/api/messages/{message['id']}/react", headers=auth_headers("bob"))
	assert removed.json()["data"]["reactions"] == []
	assert len(_events(emitted, "message:unreacted")) == 2


@pytest.mark.asyncio
async def test_typing_requires_conversation(api_client, auth_headers, users, emitted):
	missing = await api_client.post("/api/messages/typing", json={"isTyping": True}, headers=auth_headers("alice"))
	assert missing.status_code == 400
	assert missing.json()["message"] == "Conversation ID is required"

	message = await _send(api_client, auth_headers("alice"), recipient="bob", content="hi")
	response = await api_client.post(
		"/api/messages/typing",
		json={"conversationId": message["conversationId"], "isTyping": False},
		headers=auth_headers("alice"),
	)
	assert response.json()["message"] == "Typing status updated"
	assert [room for room, _ in _events(emitted, "typing:stop")] == ["user:bob"]


@pytest.mark.asyncio
async def test_group_administration_flow(api_client, auth_headers, users, emitted):
	too_small = await api_client.post(
		"/api/messages/groups", json={"groupName": "Duo", "participants": ["bob"]}, headers=auth_headers("alice")
	)
	assert too_small.status_code == 400
	assert too_small.json()["message"] == "Group must have at least 3 participants (including you)"

	created = await api_client.post(
		"/api/messages/groups",
		json={"groupName": "Study", "groupDescription": "finals", "participants": ["bob", "carol"]},
		headers=auth_headers("alice"),
	)
	assert created.status_code == 201
	group = created.json()["data"]["conversation"]
	assert group["admins"] == ["alice"]
	group_id = group["id"]

	renamed = await api_client.put(
		f"/api/messages/groups/{group_id}", json={"groupName": "Study Crew"}, headers=auth_headers("alice")
	)
	assert renamed.json()["data"]["conversation"]["groupName"] == "Study Crew"
	not_admin = await api_client.put(
		f"/api/messages/groups/{group_id}", json={"groupName": "Mine"}, headers=auth_headers("bob")
	)
	assert not_admin.status_code == 403

	added = await api_client.post(
		f"/api/messages/groups/{group_id}/participants", json={"participantIds": ["dave"]}, headers=auth_headers("alice")
	)
	assert added.json()["data"]["addedParticipants"] == ["dave"]
	duplicate = await api_client.post(
		f"/api/messages/groups/{group_id}/participants", json={"participantIds": ["dave"]}, headers=auth_headers("alice")
	)
	assert duplicate.status_code == 409

	last_admin = await api_client.delete(
		f"/api/messages/groups/{group_id}/participants/alice", headers=auth_headers("alice")
	)
	assert last_admin.status_code == 403
	assert last_admin.json()["code"] == "last_admin"

	promoted = await api_client.post(f"/api/messages/groups/{group_id}/admins/bob", headers=auth_headers("alice"))
	assert promoted.json()["data"]["conversation"]["admins"] == ["alice", "bob"]

	left = await api_client.delete(f"/api/messages/groups/{group_id}/participants/alice", headers=auth_headers("alice"))
	assert left.json()["message"] == "Left group successfully"
	assert ("user:alice", {"conversationId": group_id}) in _events(emitted, "group:removed")

	removed = await api_client.delete(f"/api/messages/groups/{group_id}/participants/dave", headers=auth_headers("bob"))
	assert removed.json()["message"] == "Participant removed successfully"

	demote_last = await api_client.delete(f"/api/messages/groups/{group_id}/admins/bob", headers=auth_headers("bob"))
	assert demote_last.status_code == 403


@pytest.mark.asyncio
async def test_search_and_export(api_client, auth_headers, users, emitted):
	first = await _send(api_client, auth_headers("alice"), recipient="bob", content="meet at the library")
	conversation_id = first["conversationId"]
	await _send(api_client, auth_headers("bob"), conversationId=conversation_id, content="library works")
	await _send(api_client, auth_headers("bob"), conversationId=conversation_id, content="see you")

	found = await api_client.get(
		f"/api/messages/{conversation_id}/search", params={"query": "library"}, headers=auth_headers("alice")
	)
	data = found.json()["data"]
	assert data["query"] == "library"
	assert len(data["messages"]) == 2
	assert data["pagination"] == {"page": 1, "limit": 20, "total": 2, "totalPages": 1}

	empty = await api_client.get(f"/api/messages/{conversation_id}/search", headers=auth_headers("alice"))
	assert empty.status_code == 400

	exported = await api_client.get(
		f"/api/messages/{conversation_id}/export", params={"format": "txt"}, headers=auth_headers("alice")
	)
	assert exported.status_code == 200
	assert exported.headers["content-type"].startswith("text/plain")
	assert exported.headers["content-disposition"].startswith('attachment; filename="FreeTalk_Bob_')
	assert "Total messages: 3" in exported.text

	as_json = await api_client.get(f"/api/messages/{conversation_id}/export", headers=auth_headers("alice"))
	assert as_json.headers["content-type"].startswith("application/json")
	assert as_json.json()["exportInfo"]["totalMessages"] == 3


@pytest.mark.asyncio
async def test_clear_archive_and_delete_conversation(api_client, auth_headers, users, emitted):
	message = await _send(api_client, auth_headers("alice"), recipient="bob", content="hi")
	conversation_id = message["conversationId"]

	archived = await api_client.patch(
		f"/api/messages/conversation/{conversation_id}/archive", json={"archived": True}, headers=auth_headers("bob")
	)
	assert archived.json()["message"] == "Conversation archived"
	assert archived.json()["data"]["conversation"]["isArchived"] is True

	cleared = await api_client.delete(f"/api/messages/conversation/{conversation_id}/clear", headers=auth_headers("bob"))
	assert cleared.json()["data"] == {"clearedCount": 1}

	deleted = await api_client.delete(f"/api/messages/conversation/{conversation_id}", headers=auth_headers("bob"))
	assert deleted.json()["message"] == "Conversation deleted successfully"
	listing = await api_client.get("/api/messages/conversations", headers=auth_headers("bob"))
	assert listing.json()["data"]["conversations"] == []
	alice_listing = await api_client.get("/api/messages/conversations", headers=auth_headers("alice"))
	assert [c["id"] for c in alice_listing.json()["data"]["conversations"]] == [conversation_id]
