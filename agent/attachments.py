"""Attachment processing shared by all provider strategies.

Images are kept as raw bytes so each strategy can embed them in its own
wire format (inline blob for the native provider, data URL for the
compatible one). Text-like files are inlined as delimited blocks. Anything
that fails to read becomes an inline marker instead of failing the request.
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List

from agent.chat_types import FileRef
from agent.errors import AttachmentProcessingError

logger = logging.getLogger(__name__)

_TEXT_EXTENSION_RE = re.compile(r"\.(js|ts|jsx|tsx|html|css|json|md|py|lua)$")


@dataclass(frozen=True)
class ProcessedAttachment:
    name: str
    kind: str  # "image" or "text"
    mime_type: str = ""
    data: bytes = b""
    text: str = ""

    @property
    def is_image(self) -> bool:
        return self.kind == "image"

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


def is_text_file(ref: FileRef) -> bool:
    return ref.mime_type.startswith("text/") or bool(_TEXT_EXTENSION_RE.search(ref.name))


def file_block(name: str, content: str) -> str:
    return f"\n\n--- FILE: {name} ---\n{content}\n--- END FILE ---\n"


def _read_bytes(ref: FileRef) -> bytes:
    try:
        return ref.read_bytes()
    except OSError as e:
        raise AttachmentProcessingError(f"Could not read {ref.name}: {e}") from e


def _read_text(ref: FileRef) -> str:
    raw = _read_bytes(ref)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AttachmentProcessingError(f"{ref.name} is not valid UTF-8 text") from e


def process_attachments(files: Iterable[FileRef]) -> List[ProcessedAttachment]:
    """Turn attachments into image or text parts, in their original order."""
    parts: List[ProcessedAttachment] = []
    for ref in files:
        if ref.is_image:
            try:
                parts.append(ProcessedAttachment(
                    name=ref.name, kind="image", mime_type=ref.mime_type, data=_read_bytes(ref),
                ))
            except AttachmentProcessingError as e:
                logger.warning("Failed to process image attachment: %s", e)
                parts.append(ProcessedAttachment(
                    name=ref.name, kind="text", text=f"[Error attaching image: {ref.name}]",
                ))
        elif is_text_file(ref):
            try:
                parts.append(ProcessedAttachment(
                    name=ref.name, kind="text", text=file_block(ref.name, _read_text(ref)),
                ))
            except AttachmentProcessingError as e:
                logger.warning("Failed to read text attachment: %s", e)
                parts.append(ProcessedAttachment(
                    name=ref.name, kind="text", text=f"[Error reading text file: {ref.name}]",
                ))
        else:
            logger.info("Skipping unsupported attachment %s (%s)", ref.name, ref.mime_type or "unknown type")
            parts.append(ProcessedAttachment(
                name=ref.name, kind="text", text=f"[Unsupported attachment: {ref.name}]",
            ))
    return parts


def instant_mode_context(files: Iterable[FileRef]) -> str:
    """Plain-text rendition for providers that take no binary input."""
    image_note = ""
    file_context = ""
    for ref in files:
        if ref.is_image:
            image_note += f'\n[User attached image: "{ref.name}"]'
        elif is_text_file(ref):
            try:
                file_context += file_block(ref.name, _read_text(ref))
            except AttachmentProcessingError as e:
                logger.warning("Failed to read text attachment: %s", e)
                file_context += f"\n[Error reading file: {ref.name}]"
    return image_note + file_context
