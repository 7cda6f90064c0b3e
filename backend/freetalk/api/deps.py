"""Dependency providers resolving the services wired onto `app.state` at startup."""

from __future__ import annotations

from fastapi import Request

from freetalk.domain.chat.delivery import DeliveryEngine
from freetalk.domain.chat.service import ChatQueries
from freetalk.domain.notifications.service import NotificationDispatcher
from freetalk.infra.uploads import UploadStorage


def get_engine(request: Request) -> DeliveryEngine:
	return request.app.state.engine


def get_queries(request: Request) -> ChatQueries:
	return request.app.state.queries


def get_dispatcher(request: Request) -> NotificationDispatcher:
	return request.app.state.notifications


def get_uploads(request: Request) -> UploadStorage:
	return request.app.state.uploads
