"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

import socketio
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.staticfiles import StaticFiles

from freetalk.api import messages as messages_api
from freetalk.api import notifications as notifications_api
from freetalk.api.errors import install_error_handlers
from freetalk.domain.chat.conversations import ConversationStore
from freetalk.domain.chat.delivery import DeliveryEngine
from freetalk.domain.chat.hydrate import MessageHydrator
from freetalk.domain.chat.messages import MessageStore
from freetalk.domain.chat.service import ChatQueries
from freetalk.domain.chat.shared import SharedContentLookup
from freetalk.domain.identity.directory import UserDirectory
from freetalk.domain.notifications.service import NotificationDispatcher, prune_forever
from freetalk.domain.notifications.store import NotificationStore
from freetalk.domain.realtime.gateway import RealtimeGateway, RealtimeNamespace
from freetalk.domain.realtime.push import MobilePushFallback, build_provider
from freetalk.domain.realtime.registry import ConnectionRegistry
from freetalk.infra import postgres
from freetalk.infra.uploads import UploadStorage
from freetalk.obs import init as obs_init
from freetalk.obs import logging as obs_logging
from freetalk.settings import settings

_logger = obs_logging.get_logger("freetalk.main")

directory = UserDirectory()
shared = SharedContentLookup()
conversations = ConversationStore()
message_store = MessageStore(directory=directory, shared=shared)
notification_store = NotificationStore()
registry = ConnectionRegistry()
push = MobilePushFallback(build_provider(), directory)
uploads = UploadStorage()


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.storage_backend.lower() == "memory":
		_logger.warning("storage_backend_memory", extra={"env": settings.environment})
		postgres.disable()
	else:
		await postgres.apply_schema(await postgres.get_pool())
	worker_tasks: list[asyncio.Task] = [
		asyncio.create_task(prune_forever(notification_store), name="notification-prune"),
	]
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		await asyncio.gather(*worker_tasks, return_exceptions=True)
		await push.drain()
		close = getattr(push.provider, "aclose", None)
		if callable(close):
			await close()
		await postgres.close_pool()


app = FastAPI(title="FreeTalk Realtime Core", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)
obs_init(app)

upload_root = Path(settings.upload_root).resolve()
upload_root.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(upload_root), check_dir=True), name="uploads")

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
namespace = RealtimeNamespace(
	registry,
	conversation_guard=conversations.is_participant,
	block_check=directory.is_blocked,
)
sio.register_namespace(namespace)
gateway = RealtimeGateway(namespace, registry)

hydrator = MessageHydrator(directory, message_store, shared)
dispatcher = NotificationDispatcher(notification_store, gateway, push, directory, shared)
engine = DeliveryEngine(
	gateway=gateway,
	conversations=conversations,
	messages=message_store,
	directory=directory,
	notifications=dispatcher,
	push=push,
	hydrator=hydrator,
)
queries = ChatQueries(conversations=conversations, messages=message_store, directory=directory, hydrator=hydrator)

app.state.engine = engine
app.state.queries = queries
app.state.notifications = dispatcher
app.state.uploads = uploads
app.state.gateway = gateway

app.include_router(messages_api.router)
app.include_router(notifications_api.router)


@app.get("/health", tags=["ops"])
async def health() -> dict:
	return {"status": "ok", "service": settings.service_name, "commit": settings.git_commit}


@app.get("/metrics", tags=["ops"])
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
