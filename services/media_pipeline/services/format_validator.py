from typing import Dict, FrozenSet
import logging

from ..models import AssetKind
from ..config import Settings
from ..errors import UnsupportedFormatError, FileTooLargeError, InvalidOwnerError
from . import storage_keys

logger = logging.getLogger(__name__)

SUPPORTED_CONTENT_TYPES: Dict[AssetKind, FrozenSet[str]] = {
    AssetKind.IMAGE: frozenset({"image/jpeg", "image/png", "image/webp"}),
    AssetKind.VIDEO: frozenset({"video/mp4", "video/webm"}),
}


def normalize_content_type(content_type: str) -> str:
    """Strip parameters and case: 'Image/JPEG; q=1' -> 'image/jpeg'"""
    return (content_type or "").split(";", 1)[0].strip().lower()


def validate_format(content_type: str, kind: AssetKind) -> str:
    """Return the normalized content type or raise UnsupportedFormatError"""
    normalized = normalize_content_type(content_type)
    if normalized not in SUPPORTED_CONTENT_TYPES[kind]:
        logger.info(f"Rejected {kind.value} upload with content type {content_type!r}")
        raise UnsupportedFormatError(content_type, kind.value)
    return normalized


def validate_size(size_bytes: int, kind: AssetKind, settings: Settings) -> None:
    max_bytes = settings.max_image_bytes if kind == AssetKind.IMAGE else settings.max_video_bytes
    if size_bytes <= 0 or size_bytes > max_bytes:
        logger.info(f"Rejected {kind.value} upload of {size_bytes} bytes (max {max_bytes})")
        raise FileTooLargeError(size_bytes, max_bytes, kind.value)


def format_name(content_type: str) -> str:
    """Encoded format name from a content type: 'video/webm' -> 'webm'"""
    return normalize_content_type(content_type).split("/")[-1]


def validate_owner(owner_id: str) -> str:
    """Owner ids become a key segment: non-empty and free of '/'"""
    if not storage_keys.is_valid_segment(owner_id):
        logger.info(f"Rejected upload for invalid owner id {owner_id!r}")
        raise InvalidOwnerError(owner_id)
    return owner_id
