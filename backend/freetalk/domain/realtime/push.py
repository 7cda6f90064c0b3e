"""Mobile push fallback for recipients without a live push-channel session."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol, Set

import httpx

from freetalk.domain.identity.directory import UserDirectory, UserRecord
from freetalk.obs import logging as obs_logging
from freetalk.obs import metrics as obs_metrics
from freetalk.settings import settings

_logger = obs_logging.get_logger("freetalk.push")

_UNREGISTERED_CODES = frozenset({"UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH"})


class PushError(Exception):
	"""Provider failed to deliver; the token is still considered valid."""


class PushTokenInvalid(PushError):
	"""Provider reported the device token as unregistered or malformed."""


class PushProvider(Protocol):
	async def send(self, token: str, title: str, body: str, data: Dict[str, str]) -> None:
		...


class NullPushProvider:
	"""Used when no push provider is configured; drops every dispatch."""

	async def send(self, token: str, title: str, body: str, data: Dict[str, str]) -> None:
		_logger.debug("push_disabled", extra={"title": title})


class FcmPushProvider:
	"""Firebase Cloud Messaging HTTP v1 sender.

	The OAuth access token is minted outside this process (workload identity or
	a sidecar) and supplied through FCM_ACCESS_TOKEN.
	"""

	def __init__(
		self,
		project_id: str,
		access_token: str,
		*,
		endpoint: str | None = None,
		client: httpx.AsyncClient | None = None,
	) -> None:
		self._url = (endpoint or settings.fcm_endpoint).format(project_id=project_id)
		self._access_token = access_token
		self._client = client or httpx.AsyncClient(timeout=settings.push_timeout_seconds)

	async def send(self, token: str, title: str, body: str, data: Dict[str, str]) -> None:
		message = {
			"message": {
				"token": token,
				"notification": {"title": title, "body": body},
				"data": {key: str(value) for key, value in data.items()},
				"android": {"priority": "high", "notification": {"sound": "default"}},
				"apns": {"payload": {"aps": {"sound": "default", "badge": 1}}},
			}
		}
		try:
			response = await self._client.post(
				self._url,
				json=message,
				headers={"Authorization": f"Bearer {self._access_token}"},
			)
		except httpx.HTTPError as exc:
			raise PushError(str(exc)) from exc
		if response.status_code < 400:
			return
		if self._is_unregistered(response):
			raise PushTokenInvalid(f"fcm rejected token ({response.status_code})")
		raise PushError(f"fcm error {response.status_code}")

	@staticmethod
	def _is_unregistered(response: httpx.Response) -> bool:
		if response.status_code == 404:
			return True
		try:
			error = response.json().get("error", {})
		except ValueError:
			return False
		for detail in error.get("details", []) or []:
			if detail.get("errorCode") in _UNREGISTERED_CODES:
				return True
		return False

	async def aclose(self) -> None:
		await self._client.aclose()


def build_provider() -> PushProvider:
	if settings.fcm_project_id and settings.fcm_access_token:
		return FcmPushProvider(settings.fcm_project_id, settings.fcm_access_token)
	return NullPushProvider()


class MobilePushFallback:
	"""Schedules single-shot pushes in the background so callers never wait on them."""

	def __init__(
		self,
		provider: PushProvider,
		directory: UserDirectory,
		*,
		timeout_seconds: Optional[float] = None,
	) -> None:
		self._provider = provider
		self._directory = directory
		self._timeout = settings.push_timeout_seconds if timeout_seconds is None else timeout_seconds
		self._inflight: Set[asyncio.Task] = set()

	@property
	def provider(self) -> PushProvider:
		return self._provider

	def eligible(self, user: UserRecord, conversation_id: Optional[str] = None) -> bool:
		if not user.push_enabled or not user.device_token:
			return False
		return not user.has_muted(conversation_id)

	def notify(self, user: UserRecord, title: str, body: str, data: Optional[Dict[str, str]] = None) -> bool:
		"""Queue a push for `user`; returns False when the user is not eligible."""
		data = dict(data or {})
		if not self.eligible(user, data.get("conversationId")):
			obs_metrics.push_dispatched("skipped")
			return False
		data.setdefault("userId", user.id)
		task = asyncio.create_task(self._dispatch(user, user.device_token, title, body, data))
		self._inflight.add(task)
		task.add_done_callback(self._inflight.discard)
		return True

	async def _dispatch(self, user: UserRecord, token: str, title: str, body: str, data: Dict[str, str]) -> None:
		try:
			await asyncio.wait_for(self._provider.send(token, title, body, data), self._timeout)
		except PushTokenInvalid:
			obs_metrics.push_dispatched("unregistered")
			_logger.info("push_token_cleared", extra={"recipient": user.id})
			await self._directory.clear_device_token(user.id)
		except asyncio.TimeoutError:
			obs_metrics.push_dispatched("timeout")
			_logger.warning("push_timeout", extra={"recipient": user.id})
		except Exception:
			obs_metrics.push_dispatched("error")
			_logger.warning("push_failed", extra={"recipient": user.id}, exc_info=True)
		else:
			obs_metrics.push_dispatched("sent")

	async def drain(self) -> None:
		"""Wait for every scheduled dispatch to settle."""
		while self._inflight:
			await asyncio.gather(*list(self._inflight), return_exceptions=True)
