import pytest
import tempfile
import io
from pathlib import Path
from typing import Callable, Dict, List, Optional
from unittest.mock import AsyncMock

from services.media_pipeline.config import Settings
from services.media_pipeline.models import MediaAsset, AuditEntry, utcnow
from services.media_pipeline.errors import NotFoundError, InvalidStatusTransitionError, StorageError
from services.media_pipeline.services.asset_pipeline import AssetPipeline
from services.media_pipeline.services.audit_logger import AuditLogger
from services.media_pipeline.services.image_processor import ImageProcessor
from services.media_pipeline.services.video_processor import VideoProcessor

CDN_DOMAIN = "cdn.test"


class InMemoryRegistry:
    """Stateful stand-in for DatastoreClient with the same transition checks"""

    def __init__(self):
        self.assets: Dict[str, MediaAsset] = {}
        self.audit_entries: List[AuditEntry] = []
        self.fail_insert = False

    async def insert_asset(self, asset: MediaAsset) -> MediaAsset:
        if self.fail_insert:
            raise StorageError(f"Failed to insert asset {asset.asset_id}: registry unavailable")
        self.assets[asset.asset_id] = asset.model_copy(deep=True)
        return asset

    async def get_asset(self, asset_id: str) -> Optional[MediaAsset]:
        asset = self.assets.get(asset_id)
        return asset.model_copy(deep=True) if asset else None

    async def update_asset_fields(self, asset_id: str, fields: dict) -> MediaAsset:
        asset = self.assets.get(asset_id)
        if not asset:
            raise NotFoundError(asset_id)
        if "status" in fields and not asset.status.can_transition_to(fields["status"]):
            raise InvalidStatusTransitionError(asset_id, asset.status.value, fields["status"].value)
        updated = asset.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self.assets[asset_id] = updated
        return updated

    async def delete_asset(self, asset_id: str) -> None:
        self.assets.pop(asset_id, None)

    async def query_assets(self, status=None, owner_id=None, limit=100, offset=0) -> List[MediaAsset]:
        assets = [
            a for a in self.assets.values()
            if (status is None or a.status == status) and (owner_id is None or a.owner_id == owner_id)
        ]
        assets.sort(key=lambda a: a.created_at, reverse=True)
        return assets[offset:offset + limit]

    async def save_audit_entry(self, entry: AuditEntry) -> None:
        self.audit_entries.append(entry)

    async def close(self):
        pass


class InMemoryBlobStore:
    """Stateful stand-in for BlobStore with injectable failures"""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.put_calls = 0
        self.fail_put_when: Optional[Callable[[str], bool]] = None
        self.fail_delete_when: Optional[Callable[[str], bool]] = None

    async def put(self, key: str, data, content_type: str) -> str:
        self.put_calls += 1
        if self.fail_put_when and self.fail_put_when(key):
            raise StorageError(f"Failed to upload {key}: bucket unavailable", key=key)
        self.blobs[key] = bytes(data)
        self.content_types[key] = content_type
        return key

    async def delete(self, key: str) -> None:
        if self.fail_delete_when and self.fail_delete_when(key):
            raise StorageError(f"Failed to delete {key}: bucket unavailable", key=key)
        self.blobs.pop(key, None)

    def public_url(self, key: str) -> str:
        return f"https://{CDN_DOMAIN}/{key}"

    def key_for_url(self, url: str) -> str:
        return url[len(f"https://{CDN_DOMAIN}/"):]

    async def close(self):
        pass


def make_image_bytes(size=(800, 600), image_format="JPEG", mode="RGB", color="blue") -> bytes:
    from PIL import Image

    output = io.BytesIO()
    Image.new(mode, size, color=color).save(output, image_format)
    return output.getvalue()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def test_settings(temp_dir):
    """Create test settings"""
    return Settings(
        environment="testing",
        google_cloud_project="test-project",
        storage_bucket="test-bucket",
        cdn_domain=CDN_DOMAIN,
        temp_dir=str(temp_dir),
        video_processing_timeout=30
    )


@pytest.fixture
def registry():
    return InMemoryRegistry()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def image_processor(test_settings):
    return ImageProcessor(test_settings)


@pytest.fixture
def stub_video_processor(test_settings):
    """Video processor whose encoder calls are mocked out"""
    processor = VideoProcessor(test_settings)
    processor.transcode = AsyncMock(
        side_effect=lambda source_path, preset: f"rendition-{preset.resolution}".encode()
    )
    processor.extract_frame = AsyncMock(return_value=b"\xff\xd8\xff\xe0poster")
    return processor


@pytest.fixture
def asset_pipeline(test_settings, registry, blob_store, image_processor, stub_video_processor):
    """Create asset pipeline over in-memory storage"""
    return AssetPipeline(
        test_settings,
        registry,
        blob_store,
        image_processor,
        stub_video_processor,
        AuditLogger(registry)
    )


@pytest.fixture
def image_factory():
    """Build encoded test images of a given size and format"""
    return make_image_bytes


@pytest.fixture
def sample_jpeg():
    return make_image_bytes((800, 600))


@pytest.fixture
def sample_video():
    return b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1024
