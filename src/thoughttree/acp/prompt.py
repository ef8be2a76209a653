"""Conversation turns and their conversion into ACP prompt content."""

from __future__ import annotations

import base64
import mimetypes
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any

import aiofiles
from acp import image_block, text_block

from thoughttree.errors import EmptyPromptError

if TYPE_CHECKING:
    from pathlib import Path

SUPPORTED_IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})


@dataclass(frozen=True, slots=True)
class ImageAttachment:
    """Base64-encoded image data with its MIME type."""

    data: str
    mime_type: str


@dataclass(frozen=True, slots=True)
class Turn:
    role: str
    content: str
    images: tuple[ImageAttachment, ...] = field(default=())


async def load_image(path: Path) -> ImageAttachment:
    """Read an image file into an attachment."""
    mime_type, _ = mimetypes.guess_type(path.name)
    if mime_type not in SUPPORTED_IMAGE_TYPES:
        supported = ", ".join(sorted(SUPPORTED_IMAGE_TYPES))
        raise ValueError(f"Unsupported image type for {path.name}: {mime_type} ({supported})")
    async with aiofiles.open(path, "rb") as handle:
        raw = await handle.read()
    return ImageAttachment(data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)


def compose_prompt(turns: list[Turn], *, today: date | None = None) -> list[Any]:
    """Build prompt content blocks: dated transcript text followed by images.

    Turns with blank content contribute no text (placeholder assistant turns
    are common) but their images are kept.

    Raises:
        EmptyPromptError: no turn has text and no turn has images.
    """
    lines = [f"{turn.role}: {turn.content}" for turn in turns if turn.content.strip()]
    images = [image for turn in turns for image in turn.images]
    if not lines and not images:
        raise EmptyPromptError()

    current = (today or date.today()).isoformat()
    header = f"Current date: {current}"
    text = "\n\n".join([header, *lines])

    blocks: list[Any] = [text_block(text)]
    blocks.extend(image_block(image.data, image.mime_type) for image in images)
    return blocks


__all__ = ["ImageAttachment", "Turn", "compose_prompt", "load_image"]
