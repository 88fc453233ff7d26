from typing import List, Optional, Union
import asyncio
import logging

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import storage

from ..config import Settings
from ..errors import StorageError

logger = logging.getLogger(__name__)


class BlobStore:
    """Google Cloud Storage bucket addressed by key, served through the CDN"""

    def __init__(self, settings: Settings, client: Optional[storage.Client] = None):
        self.bucket_name = settings.storage_bucket
        self.cdn_domain = settings.cdn_domain
        self.client = client or storage.Client(project=settings.google_cloud_project)
        self.bucket = self.client.bucket(self.bucket_name)

    async def put(self, key: str, data: Union[bytes, bytearray], content_type: str) -> str:
        """Upload bytes under key without blocking the event loop"""
        try:
            blob = self.bucket.blob(key)
            # The client only accepts immutable bytes, so this copy is never scrubbed
            await asyncio.to_thread(blob.upload_from_string, bytes(data), content_type=content_type)
            logger.info(f"Uploaded {len(data)} bytes to {key}")
            return key
        except Exception as e:
            logger.error(f"Error uploading blob {key}: {str(e)}")
            raise StorageError(f"Failed to upload {key}: {str(e)}", key=key) from e

    async def delete(self, key: str) -> None:
        """Delete a blob; a missing key is a no-op"""
        try:
            await asyncio.to_thread(self.bucket.blob(key).delete)
            logger.info(f"Deleted blob {key}")
        except gcloud_exceptions.NotFound:
            logger.info(f"Blob {key} already absent")
        except Exception as e:
            logger.error(f"Error deleting blob {key}: {str(e)}")
            raise StorageError(f"Failed to delete {key}: {str(e)}", key=key) from e
    def public_url(self, key: str) -> str:
        return f"https://{self.cdn_domain}/{key}"

    async def close(self):
        """Close storage client"""
        try:
            self.client.close()
        except Exception as e:
            logger.error(f"Error closing storage client: {str(e)}")


class UploadSession:
    """
    Records every key written through it so a failed multi-upload can be
    compensated by deleting what was already stored.
    """

    def __init__(self, blob_store: BlobStore):
        self.blob_store = blob_store
        self.keys: List[str] = []

    async def put(self, key: str, data: Union[bytes, bytearray], content_type: str) -> str:
        await self.blob_store.put(key, data, content_type)
        self.keys.append(key)
        return key

    async def rollback(self) -> List[str]:
        """
        Delete every recorded key, newest first. Failures are logged and the
        remaining keys are still attempted; returns the keys left behind.
        """
        leftover = []
        for key in reversed(self.keys):
            try:
                await self.blob_store.delete(key)
            except Exception as e:
                logger.error(f"Compensating delete failed for {key}: {str(e)}")
                leftover.append(key)
        if self.keys:
            logger.warning(
                f"Rolled back {len(self.keys) - len(leftover)} of {len(self.keys)} uploaded blobs"
            )
        self.keys = []
        return leftover
