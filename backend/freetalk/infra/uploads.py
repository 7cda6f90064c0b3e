"""Local disk storage for message media and group avatars."""

from __future__ import annotations

import json
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import ulid
from fastapi import UploadFile

from freetalk.domain.chat.models import MAX_WAVEFORM_SAMPLES, VIDEO, MediaDescriptor, media_type_for_mime
from freetalk.errors import ValidationFailed
from freetalk.settings import settings

ALLOWED_PREFIXES = ("image/", "video/", "audio/", "application/", "text/")
MESSAGE_SUBDIR = "messages"
AVATAR_SUBDIR = "group-avatars"


def _extension(file_name: Optional[str], content_type: str) -> str:
	suffix = Path(file_name or "").suffix.lower()
	if suffix and len(suffix) <= 10 and suffix[1:].isalnum():
		return suffix
	return mimetypes.guess_extension(content_type) or ""


def parse_waveform(raw: Optional[str]) -> Optional[List[float]]:
	"""Waveform samples arrive as a JSON array string in a form field."""
	if raw in (None, ""):
		return None
	try:
		values = json.loads(raw)
	except json.JSONDecodeError:
		raise ValidationFailed("Invalid waveform data")
	if not isinstance(values, list) or not all(isinstance(v, (int, float)) for v in values):
		raise ValidationFailed("Invalid waveform data")
	if len(values) > MAX_WAVEFORM_SAMPLES:
		raise ValidationFailed(f"Waveform data must have at most {MAX_WAVEFORM_SAMPLES} samples")
	return [float(v) for v in values]


def parse_duration(raw: Optional[str]) -> Optional[float]:
	if raw in (None, ""):
		return None
	try:
		value = float(raw)
	except (TypeError, ValueError):
		raise ValidationFailed("Invalid duration")
	if value < 0:
		raise ValidationFailed("Invalid duration")
	return value


@dataclass(slots=True)
class PendingUpload:
	"""A checked and addressed upload that is not on disk yet."""

	path: Path
	url: str
	content: bytes
	mime_type: str
	media: Optional[MediaDescriptor] = None

	async def save(self) -> None:
		self.path.parent.mkdir(parents=True, exist_ok=True)
		self.path.write_bytes(self.content)

	def discard(self) -> None:
		self.path.unlink(missing_ok=True)


class UploadStorage:
	"""Writes uploads under `root` and serves them from `base_url`."""

	def __init__(
		self,
		root: Optional[str] = None,
		base_url: Optional[str] = None,
		*,
		max_bytes: Optional[int] = None,
		allowed_prefixes: Sequence[str] = ALLOWED_PREFIXES,
	) -> None:
		self._root = Path(root or settings.upload_root)
		self._base_url = (base_url or settings.upload_base_url).rstrip("/")
		self._max_bytes = settings.max_upload_bytes if max_bytes is None else max_bytes
		self._allowed = tuple(allowed_prefixes)

	@property
	def root(self) -> Path:
		return self._root

	def _check_type(self, content_type: str) -> str:
		mime = (content_type or "").lower()
		if not mime.startswith(self._allowed):
			raise ValidationFailed("Invalid file type")
		return mime

	async def _prepare(self, upload: UploadFile, subdir: str, owner_id: str) -> PendingUpload:
		mime = self._check_type(upload.content_type or "")
		content = await upload.read()
		if len(content) > self._max_bytes:
			raise ValidationFailed(f"File too large. Maximum size: {self._max_bytes // 1024 // 1024}MB")
		if not content:
			raise ValidationFailed("Uploaded file is empty")
		file_name = f"{ulid.new().str}{_extension(upload.filename, mime)}"
		return PendingUpload(
			path=self._root / subdir / owner_id / file_name,
			url=f"{self._base_url}/{subdir}/{owner_id}/{file_name}",
			content=content,
			mime_type=mime,
		)

	async def prepare_message_media(
		self,
		upload: UploadFile,
		owner_id: str,
		*,
		duration: Optional[float] = None,
		waveform: Optional[List[float]] = None,
	) -> PendingUpload:
		"""Check and address a message attachment; the caller saves it once the send is allowed."""
		pending = await self._prepare(upload, MESSAGE_SUBDIR, owner_id)
		pending.media = MediaDescriptor(
			url=pending.url,
			file_name=upload.filename,
			file_size=len(pending.content),
			mime_type=pending.mime_type,
			# no transcoding: videos use themselves as the thumbnail
			thumbnail=pending.url if media_type_for_mime(pending.mime_type) == VIDEO else None,
			duration=duration,
			waveform=waveform,
		)
		return pending

	async def prepare_group_avatar(self, upload: UploadFile, conversation_id: str) -> PendingUpload:
		if not (upload.content_type or "").lower().startswith("image/"):
			raise ValidationFailed("Group avatar must be an image")
		return await self._prepare(upload, AVATAR_SUBDIR, conversation_id)
