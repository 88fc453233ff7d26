import io
from dataclasses import dataclass, field
from typing import Dict, Optional, Union
from PIL import Image, ImageOps
import logging

from ..config import Settings
from ..models import FitMode
from ..errors import TransformError
from .blob_store import UploadSession
from .buffers import BufferScope
from . import storage_keys

logger = logging.getLogger(__name__)

JPEG_CONTENT_TYPE = "image/jpeg"


@dataclass
class ResizedImage:
    data: bytearray
    width: int
    height: int

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass
class ImageProcessingResult:
    original_key: str
    variants: Dict[str, str] = field(default_factory=dict)
    width: int = 0
    height: int = 0
    size_bytes: int = 0
    format: str = "jpeg"


class ImageProcessor:
    """Normalizes uploaded images and derives the configured thumbnail set"""

    def __init__(self, settings: Settings):
        self.max_dimension = settings.max_image_dimension
        self.quality = settings.image_quality
        self.thumbnail_sizes = settings.thumbnail_sizes

    def _open(self, data: Union[bytes, bytearray]) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
            # Apply camera orientation before measuring edges
            return ImageOps.exif_transpose(img)
        except Exception as e:
            logger.error(f"Error decoding image: {str(e)}")
            raise TransformError(f"Could not decode image: {str(e)}") from e

    def _flatten(self, img: Image.Image) -> Image.Image:
        """Convert RGBA/LA/P to RGB on a white background for JPEG output"""
        if img.mode in ('RGBA', 'LA', 'P'):
            if img.mode == 'P':
                img = img.convert('RGBA')
            background = Image.new('RGB', img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[-1])
            return background
        if img.mode != 'RGB':
            return img.convert('RGB')
        return img

    def _encode(self, img: Image.Image, quality: int) -> bytearray:
        output = io.BytesIO()
        img.save(output, 'JPEG', quality=quality, optimize=True, progressive=True)
        return bytearray(output.getbuffer())

    async def resize(
        self,
        data: Union[bytes, bytearray],
        width: int,
        height: int,
        fit_mode: FitMode = FitMode.INSIDE,
        quality: Optional[int] = None
    ) -> ResizedImage:
        """
        Resize an image and re-encode it as JPEG

        Args:
            data: Encoded source image
            width: Target box width
            height: Target box height
            fit_mode: INSIDE keeps the aspect ratio within the box and never
                upscales; COVER scales and center-crops to exactly fill the box
            quality: JPEG quality (1-100), defaults to the configured quality

        Returns:
            ResizedImage with the encoded bytes and final dimensions
        """
        quality = quality or self.quality
        img = self._flatten(self._open(data))

        try:
            if fit_mode == FitMode.COVER:
                img = ImageOps.fit(img, (width, height), Image.Resampling.LANCZOS)
            else:
                # thumbnail() only ever shrinks
                img.thumbnail((width, height), Image.Resampling.LANCZOS)

            encoded = self._encode(img, quality)
            return ResizedImage(data=encoded, width=img.size[0], height=img.size[1])

        except Exception as e:
            logger.error(f"Error resizing image to {width}x{height} ({fit_mode.value}): {str(e)}")
            raise TransformError(f"Resize to {width}x{height} failed: {str(e)}") from e

    async def normalize(self, data: Union[bytes, bytearray]) -> ResizedImage:
        """Bound the longest edge to the configured maximum and recompress"""
        return await self.resize(data, self.max_dimension, self.max_dimension, FitMode.INSIDE)

    async def create_thumbnails(
        self,
        data: Union[bytes, bytearray],
        scope: Optional[BufferScope] = None
    ) -> Dict[str, ResizedImage]:
        """Crop-to-cover thumbnail for every configured size, adopted into scope as produced"""
        thumbnails = {}
        for name, size in self.thumbnail_sizes.items():
            thumbnails[name] = await self.resize(data, size.width, size.height, FitMode.COVER)
            if scope is not None:
                scope.adopt(thumbnails[name].data)
        return thumbnails

    async def process(
        self,
        data: Union[bytes, bytearray],
        owner_id: str,
        filename_stem: str,
        session: UploadSession,
        scope: BufferScope
    ) -> ImageProcessingResult:
        """
        Normalize, derive and upload every rendition of an image.

        All steps must succeed; the first failure propagates and the keys
        already written stay recorded in the upload session.
        """
        normalized = await self.normalize(data)
        scope.adopt(normalized.data)

        thumbnails = await self.create_thumbnails(normalized.data, scope)

        variants = {}
        for name, thumbnail in thumbnails.items():
            key = storage_keys.image_thumbnail_key(owner_id, filename_stem, name)
            await session.put(key, thumbnail.data, JPEG_CONTENT_TYPE)
            variants[name] = key

        original_key = storage_keys.image_original_key(owner_id, filename_stem)
        await session.put(original_key, normalized.data, JPEG_CONTENT_TYPE)

        logger.info(
            f"Processed image {filename_stem} for {owner_id}: "
            f"{normalized.width}x{normalized.height}, {len(variants)} thumbnails"
        )

        return ImageProcessingResult(
            original_key=original_key,
            variants=variants,
            width=normalized.width,
            height=normalized.height,
            size_bytes=normalized.size_bytes
        )

