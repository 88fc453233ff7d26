"""
Deterministic blob key templates.

Every key of an asset is a pure function of its kind, owner, filename stem and
variant name, so the full key set can be enumerated from the registry record.
"""

import time
import uuid
from typing import Optional

from ..models import AssetKind

POSTER_VARIANT = "poster"


def is_valid_segment(value: str) -> bool:
    return bool(value) and "/" not in value


def _check_segment(name: str, value: str) -> str:
    if not is_valid_segment(value):
        raise ValueError(f"Invalid {name} for storage key: {value!r}")
    return value


def new_filename_stem() -> str:
    """Unique stem: millisecond timestamp plus a random suffix"""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def image_original_key(owner_id: str, filename_stem: str) -> str:
    return f"images/{_check_segment('owner_id', owner_id)}/{_check_segment('filename_stem', filename_stem)}"


def image_thumbnail_key(owner_id: str, filename_stem: str, variant: str) -> str:
    return (
        f"images/{_check_segment('owner_id', owner_id)}/thumbnails/"
        f"{_check_segment('variant', variant)}/{_check_segment('filename_stem', filename_stem)}"
    )


def video_original_key(owner_id: str, filename_stem: str) -> str:
    return f"videos/{_check_segment('owner_id', owner_id)}/{_check_segment('filename_stem', filename_stem)}"


def video_rendition_key(owner_id: str, filename_stem: str, preset: str) -> str:
    return (
        f"videos/{_check_segment('owner_id', owner_id)}/variants/"
        f"{_check_segment('preset', preset)}/{_check_segment('filename_stem', filename_stem)}"
    )


def video_poster_key(owner_id: str, filename_stem: str) -> str:
    return (
        f"videos/{_check_segment('owner_id', owner_id)}/thumbnails/"
        f"{_check_segment('filename_stem', filename_stem)}.jpg"
    )


def asset_key(
    kind: AssetKind,
    owner_id: str,
    filename_stem: str,
    variant: Optional[str] = None
) -> str:
    """
    Build the key of an asset's original (variant=None) or of a named variant.

    For videos the "poster" variant maps to the poster thumbnail, any other
    name to a rendition preset.
    """
    if kind == AssetKind.IMAGE:
        if variant is None:
            return image_original_key(owner_id, filename_stem)
        return image_thumbnail_key(owner_id, filename_stem, variant)

    if variant is None:
        return video_original_key(owner_id, filename_stem)
    if variant == POSTER_VARIANT:
        return video_poster_key(owner_id, filename_stem)
    return video_rendition_key(owner_id, filename_stem, variant)
