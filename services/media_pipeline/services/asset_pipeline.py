import asyncio
from datetime import timedelta
from typing import Dict, Any, List, Optional, Set, Type, Union
import logging

from ..config import Settings
from ..models import (
    MediaAsset, AssetKind, AssetStatus, AssetMetadata, AssetError, AssetManifest,
    AssetUrls, UploadMetadata, AuditEventType, AuditSeverity, utcnow
)
from ..errors import MediaServiceError, StorageError, TransformError, NotFoundError, UnauthorizedError
from ..database.datastore import DatastoreClient
from .audit_logger import AuditLogger
from .blob_store import BlobStore, UploadSession
from .buffers import BufferScope
from .format_validator import validate_format, validate_size, validate_owner, format_name
from .image_processor import ImageProcessor
from .video_processor import VideoProcessor
from . import storage_keys

logger = logging.getLogger(__name__)


class AssetPipeline:
    """
    Coordinates format validation, transforms, blob storage and the asset
    registry for uploaded images and videos.

    Images are processed within the request. Videos are stored and registered
    as processing, then transcoded by a detached task that owns its own error
    handling and writes the terminal status.
    """

    def __init__(
        self,
        settings: Settings,
        datastore_client: DatastoreClient,
        blob_store: BlobStore,
        image_processor: ImageProcessor,
        video_processor: VideoProcessor,
        audit_logger: AuditLogger
    ):
        self.settings = settings
        self.datastore_client = datastore_client
        self.blob_store = blob_store
        self.image_processor = image_processor
        self.video_processor = video_processor
        self.audit_logger = audit_logger
        self._background_jobs: Set[asyncio.Task] = set()
        self._recovery_task: Optional[asyncio.Task] = None

    async def upload_image(
        self,
        data: Union[bytes, bytearray],
        owner_id: str,
        metadata: UploadMetadata
    ) -> AssetManifest:
        """
        Normalize an image, upload it with its thumbnails and register it as active.

        The pipeline takes ownership of the payload: buffers it holds are
        zero-filled when the call returns or raises. On failure every blob
        already uploaded is deleted and no record is written.
        """
        validate_owner(owner_id)
        content_type = validate_format(metadata.content_type, AssetKind.IMAGE)
        validate_size(len(data), AssetKind.IMAGE, self.settings)

        filename_stem = storage_keys.new_filename_stem()
        session = UploadSession(self.blob_store)

        with BufferScope() as scope:
            source = scope.adopt(data)
            try:
                result = await self.image_processor.process(
                    source, owner_id, filename_stem, session, scope
                )

                asset = MediaAsset(
                    owner_id=owner_id,
                    kind=AssetKind.IMAGE,
                    filename_stem=filename_stem,
                    original_key=result.original_key,
                    status=AssetStatus.ACTIVE,
                    variants=result.variants,
                    metadata=AssetMetadata(
                        size_bytes=result.size_bytes,
                        format=result.format,
                        content_type=content_type,
                        original_filename=metadata.filename,
                        width=result.width,
                        height=result.height,
                        tags=metadata.tags
                    )
                )
                await self.datastore_client.insert_asset(asset)

            except Exception as e:
                logger.error(
                    f"Error uploading image for {owner_id} "
                    f"(file {metadata.filename!r}, {len(data)} bytes): {str(e)}"
                )
                await self._compensate(session, owner_id, str(e))
                raise self._as_media_error(e, TransformError) from e

        await self.audit_logger.log(
            AuditEventType.MEDIA_UPLOAD,
            {
                'asset_id': asset.asset_id,
                'key': asset.original_key,
                'type': AssetKind.IMAGE.value,
                'thumbnails': asset.variants,
                'size': asset.metadata.size_bytes,
                'format': asset.metadata.format
            },
            owner_id=owner_id,
            metadata={'original_name': metadata.filename, 'mime_type': content_type}
        )

        logger.info(f"Image asset {asset.asset_id} active for {owner_id}")
        return self._to_manifest(asset)

    async def upload_video(
        self,
        data: Union[bytes, bytearray],
        owner_id: str,
        metadata: UploadMetadata
    ) -> AssetManifest:
        """
        Store the original video, register it as processing and schedule
        transcoding. Returns without waiting for the renditions.
        """
        validate_owner(owner_id)
        content_type = validate_format(metadata.content_type, AssetKind.VIDEO)
        validate_size(len(data), AssetKind.VIDEO, self.settings)

        filename_stem = storage_keys.new_filename_stem()
        original_key = storage_keys.video_original_key(owner_id, filename_stem)
        session = UploadSession(self.blob_store)

        with BufferScope() as scope:
            source = scope.adopt(data)
            try:
                await session.put(original_key, source, content_type)

                asset = MediaAsset(
                    owner_id=owner_id,
                    kind=AssetKind.VIDEO,
                    filename_stem=filename_stem,
                    original_key=original_key,
                    status=AssetStatus.PROCESSING,
                    metadata=AssetMetadata(
                        size_bytes=len(source),
                        format=format_name(content_type),
                        content_type=content_type,
                        original_filename=metadata.filename,
                        tags=metadata.tags
                    )
                )
                await self.datastore_client.insert_asset(asset)

            except Exception as e:
                logger.error(
                    f"Error uploading video for {owner_id} "
                    f"(file {metadata.filename!r}, {len(data)} bytes): {str(e)}"
                )
                await self._compensate(session, owner_id, str(e))
                raise self._as_media_error(e, StorageError) from e

            # The background job owns the source from here on
            scope.detach(source)

        self._spawn_video_job(asset, source)

        await self.audit_logger.log(
            AuditEventType.MEDIA_UPLOAD,
            {
                'asset_id': asset.asset_id,
                'key': original_key,
                'type': AssetKind.VIDEO.value,
                'size': asset.metadata.size_bytes,
                'status': AssetStatus.PROCESSING.value
            },
            owner_id=owner_id,
            metadata={'original_name': metadata.filename, 'mime_type': content_type}
        )

        logger.info(f"Video asset {asset.asset_id} processing for {owner_id}")
        return self._to_manifest(asset)

    async def get_asset(self, asset_id: str) -> AssetManifest:
        """Get an asset with its stored keys rewritten into CDN URLs"""
        asset = await self.datastore_client.get_asset(asset_id)
        if not asset:
            raise NotFoundError(asset_id)
        return self._to_manifest(asset)

    async def delete_asset(self, asset_id: str, caller_id: str) -> None:
        """
        Delete every blob of an asset, then its record.

        Only the owner may delete. If any blob delete fails the error
        propagates and the record is kept; deletes of missing blobs are
        no-ops, so the whole call can be retried.

        A video may still be transcoding while it is deleted, so its full
        deterministic key set is removed rather than the variants of the
        record read up front. Once the record is gone the job's terminal
        update fails and it rolls back anything it writes afterwards; the
        rendition keys are swept once more for uploads that landed between
        the first pass and the record delete.
        """
        asset = await self.datastore_client.get_asset(asset_id)
        if not asset:
            raise NotFoundError(asset_id)
        if asset.owner_id != caller_id:
            logger.warning(f"Caller {caller_id} attempted to delete asset {asset_id} owned by {asset.owner_id}")
            raise UnauthorizedError(asset_id, caller_id)

        keys = self._deletable_keys(asset)
        for key in keys:
            await self.blob_store.delete(key)

        await self.datastore_client.delete_asset(asset_id)

        if asset.kind == AssetKind.VIDEO:
            for key in self._derived_video_keys(asset):
                try:
                    await self.blob_store.delete(key)
                except StorageError as e:
                    logger.error(f"Could not sweep {key} of deleted asset {asset_id}: {str(e)}")

        await self.audit_logger.log(
            AuditEventType.MEDIA_DELETE,
            {'asset_id': asset_id, 'keys': keys},
            owner_id=caller_id
        )

        logger.info(f"Deleted asset {asset_id} and {len(keys)} blobs")

    async def recover_interrupted_jobs(self, page_size: int = 500) -> int:
        """
        Fail video assets left processing by a process that stopped mid-job.

        Only assets older than the processing timeout are touched, so jobs
        still running elsewhere are left alone, as are jobs running in this
        process. Their rendition and poster keys are deleted first; the keys
        are deterministic, so no listing of the bucket is needed.
        """
        cutoff = utcnow() - timedelta(seconds=self.settings.video_processing_timeout)

        # Collect every page before updating: failed assets drop out of the query
        processing = []
        offset = 0
        while True:
            page = await self.datastore_client.query_assets(
                status=AssetStatus.PROCESSING, limit=page_size, offset=offset
            )
            processing.extend(page)
            if len(page) < page_size:
                break
            offset += page_size

        running = {task.get_name() for task in self._background_jobs}

        recovered = 0
        for asset in processing:
            if asset.created_at > cutoff or f"video-{asset.asset_id}" in running:
                continue

            for key in self._derived_video_keys(asset):
                try:
                    await self.blob_store.delete(key)
                except StorageError as e:
                    logger.error(f"Could not delete {key} of interrupted asset {asset.asset_id}: {str(e)}")

            try:
                await self.datastore_client.update_asset_fields(asset.asset_id, {
                    'status': AssetStatus.FAILED,
                    'error': AssetError(
                        message="Video processing was interrupted",
                        elapsed_seconds=(utcnow() - asset.created_at).total_seconds()
                    )
                })
                recovered += 1
            except MediaServiceError as e:
                logger.error(f"Could not fail interrupted asset {asset.asset_id}: {str(e)}")

        if recovered:
            logger.info(f"Marked {recovered} interrupted video assets as failed")
        return recovered

    def start_recovery_sweep(self):
        """Re-run interrupted job recovery every recovery_interval seconds"""
        if self._recovery_task is None or self._recovery_task.done():
            self._recovery_task = asyncio.create_task(self._recovery_loop(), name="recovery-sweep")

    async def _recovery_loop(self):
        while True:
            await asyncio.sleep(self.settings.recovery_interval)
            try:
                await self.recover_interrupted_jobs()
            except Exception as e:
                logger.error(f"Recovery sweep failed: {str(e)}")

    def _derived_video_keys(self, asset: MediaAsset) -> List[str]:
        """Rendition and poster keys of a video, whether or not they exist yet"""
        names = list(self.settings.video_presets) + [storage_keys.POSTER_VARIANT]
        return [
            storage_keys.asset_key(AssetKind.VIDEO, asset.owner_id, asset.filename_stem, name)
            for name in names
        ]

    def _deletable_keys(self, asset: MediaAsset) -> List[str]:
        keys = list(asset.blob_keys)
        if asset.kind == AssetKind.VIDEO:
            keys.extend(key for key in self._derived_video_keys(asset) if key not in keys)
        return keys

    def _spawn_video_job(self, asset: MediaAsset, source: bytearray):
        task = asyncio.create_task(
            self._process_video(asset, source),
            name=f"video-{asset.asset_id}"
        )
        self._background_jobs.add(task)
        task.add_done_callback(self._on_video_job_done)

    def _on_video_job_done(self, task: asyncio.Task):
        self._background_jobs.discard(task)
        if task.cancelled():
            logger.warning(f"Background job {task.get_name()} was cancelled")
        elif task.exception() is not None:
            logger.error(f"Background job {task.get_name()} crashed: {task.exception()!r}")

    async def _process_video(self, asset: MediaAsset, source: bytearray):
        """Transcode renditions and the poster, then write the terminal status"""
        session = UploadSession(self.blob_store)

        with BufferScope() as scope:
            scope.adopt(source)
            try:
                variants = await asyncio.wait_for(
                    self.video_processor.process_renditions(
                        source, asset.owner_id, asset.filename_stem, session
                    ),
                    timeout=self.settings.video_processing_timeout
                )
                await self.datastore_client.update_asset_fields(asset.asset_id, {
                    'status': AssetStatus.READY,
                    'variants': variants
                })
            except Exception as e:
                await self._fail_video(asset, session, e)
                return

        await self.audit_logger.log(
            AuditEventType.VIDEO_PROCESS,
            {'asset_id': asset.asset_id, 'variants': variants},
            owner_id=asset.owner_id
        )
        logger.info(f"Video asset {asset.asset_id} ready with {len(variants)} variants")

    async def _fail_video(self, asset: MediaAsset, session: UploadSession, error: Exception):
        if isinstance(error, asyncio.TimeoutError):
            message = f"Video processing timed out after {self.settings.video_processing_timeout}s"
        else:
            message = str(error) or error.__class__.__name__
        elapsed = (utcnow() - asset.created_at).total_seconds()

        logger.error(f"Error processing video {asset.asset_id} for {asset.owner_id}: {message}")

        leftover = await session.rollback()

        try:
            await self.datastore_client.update_asset_fields(asset.asset_id, {
                'status': AssetStatus.FAILED,
                'error': AssetError(message=message, elapsed_seconds=elapsed)
            })
        except Exception as e:
            logger.error(f"Could not mark video {asset.asset_id} as failed: {str(e)}")

        await self.audit_logger.log(
            AuditEventType.PROCESSING_FAILED,
            {'asset_id': asset.asset_id, 'error': message, 'leftover_keys': leftover},
            owner_id=asset.owner_id,
            severity=AuditSeverity.ERROR
        )

    async def _compensate(self, session: UploadSession, owner_id: str, reason: str):
        """Delete the blobs of a failed upload"""
        written = list(session.keys)
        if not written:
            return

        leftover = await session.rollback()
        await self.audit_logger.log(
            AuditEventType.STORAGE_CLEANUP,
            {'removed': [k for k in written if k not in leftover], 'leftover': leftover, 'reason': reason},
            owner_id=owner_id,
            severity=AuditSeverity.WARNING if not leftover else AuditSeverity.ERROR
        )

    def _as_media_error(
        self,
        error: Exception,
        default: Type[MediaServiceError]
    ) -> MediaServiceError:
        if isinstance(error, MediaServiceError):
            return error
        return default(str(error) or error.__class__.__name__)

    def _to_manifest(self, asset: MediaAsset) -> AssetManifest:
        url = self.blob_store.public_url
        urls = AssetUrls(original=url(asset.original_key))

        if asset.kind == AssetKind.IMAGE:
            urls.thumbnails = {name: url(key) for name, key in asset.variants.items()}
        else:
            renditions = {
                name: url(key) for name, key in asset.variants.items()
                if name != storage_keys.POSTER_VARIANT
            }
            if renditions:
                urls.variants = renditions
            if storage_keys.POSTER_VARIANT in asset.variants:
                urls.poster = url(asset.variants[storage_keys.POSTER_VARIANT])

        return AssetManifest(
            id=asset.asset_id,
            kind=asset.kind,
            status=asset.status,
            urls=urls,
            metadata=asset.metadata,
            error=asset.error,
            created_at=asset.created_at,
            updated_at=asset.updated_at
        )

    async def drain(self):
        """Wait until every in-flight video job has settled"""
        while self._background_jobs:
            await asyncio.gather(*list(self._background_jobs), return_exceptions=True)

    async def close(self):
        """Stop the recovery sweep and let in-flight video jobs finish"""
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            try:
                await self._recovery_task
            except asyncio.CancelledError:
                pass
            self._recovery_task = None
        if self._background_jobs:
            logger.info(f"Waiting for {len(self._background_jobs)} video jobs to settle")
        await self.drain()

    def get_metrics(self) -> Dict[str, Any]:
        return {'active_video_jobs': len(self._background_jobs)}
