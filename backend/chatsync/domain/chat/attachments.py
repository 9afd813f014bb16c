"""Attachment helpers for gateway sends."""

from __future__ import annotations

import mimetypes
from typing import Iterable, List, Sequence, Tuple

from .errors import ValidationError
from .models import OutgoingAttachment

ALLOWED_MIME_TYPES = frozenset(
	{
		"image/jpeg",
		"image/png",
		"image/gif",
		"image/webp",
		"application/pdf",
		"text/plain",
		"application/msword",
		"application/vnd.openxmlformats-officedocument.wordprocessingml.document",
	}
)


def guess_mime_type(file_name: str) -> str:
	guessed, _ = mimetypes.guess_type(file_name)
	return guessed or "application/octet-stream"


def make_attachment(file_name: str, data: bytes, mime_type: str | None = None) -> OutgoingAttachment:
	return OutgoingAttachment(file_name=file_name, data=bytes(data), mime_type=mime_type or guess_mime_type(file_name))


def normalize_attachments(
	items: Iterable[OutgoingAttachment] | None,
	*,
	max_count: int,
	max_bytes: int,
) -> Tuple[OutgoingAttachment, ...]:
	"""Validate attachments before they reach the side channel.

	Rejects empty files, oversized files, disallowed media types and more than
	``max_count`` items. Nothing is uploaded when any item fails.
	"""

	normalized: List[OutgoingAttachment] = []
	if not items:
		return ()
	for item in items:
		if not item.file_name:
			raise ValidationError("attachment needs a file name")
		mime_type = (item.mime_type or guess_mime_type(item.file_name)).strip().lower()
		if mime_type not in ALLOWED_MIME_TYPES:
			raise ValidationError(f"file type not allowed: {mime_type}")
		if item.size_bytes == 0:
			raise ValidationError(f"attachment {item.file_name} is empty")
		if item.size_bytes > max_bytes:
			raise ValidationError(f"attachment {item.file_name} exceeds {max_bytes} bytes")
		normalized.append(item if mime_type == item.mime_type else OutgoingAttachment(item.file_name, item.data, mime_type))
	if len(normalized) > max_count:
		raise ValidationError(f"at most {max_count} attachments per message")
	return tuple(normalized)


def multipart_files(attachments: Sequence[OutgoingAttachment]) -> List[tuple]:
	"""Shape attachments the way httpx expects repeated multipart fields."""
	return [("attachments", (item.file_name, item.data, item.mime_type)) for item in attachments]
