import pytest
import asyncio
import io
from datetime import timedelta
from unittest.mock import AsyncMock
from PIL import Image

from services.media_pipeline.models import (
    AssetKind, AssetStatus, AssetMetadata, MediaAsset, UploadMetadata, AuditEventType, utcnow
)
from services.media_pipeline.errors import (
    UnsupportedFormatError, FileTooLargeError, StorageError, TransformError,
    NotFoundError, UnauthorizedError, InvalidStatusTransitionError, InvalidOwnerError
)

JPEG = UploadMetadata(content_type="image/jpeg", filename="photo.jpg", tags={"album": "trip"})
MP4 = UploadMetadata(content_type="video/mp4", filename="clip.mp4")


def audit_events(registry):
    return [entry.event_type for entry in registry.audit_entries]


class TestImageUpload:
    """Test cases for synchronous image ingestion"""

    @pytest.mark.asyncio
    async def test_upload_image_stores_every_rendition(self, asset_pipeline, blob_store, sample_jpeg):
        manifest = await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)

        assert manifest.kind == AssetKind.IMAGE
        assert manifest.status == AssetStatus.ACTIVE
        assert set(manifest.urls.thumbnails) == {"small", "medium", "large"}
        assert manifest.urls.variants is None
        assert manifest.metadata.tags == {"album": "trip"}
        assert manifest.metadata.original_filename == "photo.jpg"
        assert manifest.metadata.content_type == "image/jpeg"

        urls = [manifest.urls.original] + list(manifest.urls.thumbnails.values())
        for url in urls:
            assert url.startswith("https://cdn.test/images/user-1/")
            assert blob_store.key_for_url(url) in blob_store.blobs

    @pytest.mark.asyncio
    async def test_thumbnails_match_configured_boxes(self, asset_pipeline, blob_store, sample_jpeg):
        manifest = await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)

        for name, expected in (("small", 150), ("medium", 300), ("large", 600)):
            data = blob_store.blobs[blob_store.key_for_url(manifest.urls.thumbnails[name])]
            with Image.open(io.BytesIO(data)) as img:
                assert img.size == (expected, expected)

    @pytest.mark.asyncio
    async def test_large_image_is_bounded(self, asset_pipeline, blob_store, image_factory):
        """Test a 4000x3000 image is stored as a 2000x1500 JPEG"""
        manifest = await asset_pipeline.upload_image(image_factory((4000, 3000)), "user-1", JPEG)

        assert (manifest.metadata.width, manifest.metadata.height) == (2000, 1500)
        assert manifest.metadata.format == "jpeg"
        data = blob_store.blobs[blob_store.key_for_url(manifest.urls.original)]
        with Image.open(io.BytesIO(data)) as img:
            assert img.size == (2000, 1500)
            assert img.format == "JPEG"

    @pytest.mark.asyncio
    async def test_upload_registers_record_and_audits(self, asset_pipeline, registry, sample_jpeg):
        manifest = await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)

        asset = registry.assets[manifest.id]
        assert asset.owner_id == "user-1"
        assert asset.status == AssetStatus.ACTIVE
        assert audit_events(registry) == [AuditEventType.MEDIA_UPLOAD]

    @pytest.mark.asyncio
    async def test_unsupported_format_has_no_side_effects(self, asset_pipeline, registry, blob_store, sample_jpeg):
        with pytest.raises(UnsupportedFormatError):
            await asset_pipeline.upload_image(
                sample_jpeg, "user-1", UploadMetadata(content_type="image/gif")
            )

        assert blob_store.put_calls == 0
        assert registry.assets == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_id", ["", "team/alice"])
    async def test_invalid_owner_rejected_before_any_work(
        self, asset_pipeline, image_processor, blob_store, registry, sample_jpeg, owner_id
    ):
        image_processor.normalize = AsyncMock(side_effect=AssertionError("should not decode"))

        with pytest.raises(InvalidOwnerError) as exc_info:
            await asset_pipeline.upload_image(sample_jpeg, owner_id, JPEG)

        assert exc_info.value.status_code == 400
        image_processor.normalize.assert_not_awaited()
        assert blob_store.put_calls == 0
        assert registry.assets == {}

    @pytest.mark.asyncio
    async def test_oversized_image_rejected(self, asset_pipeline, blob_store):
        with pytest.raises(FileTooLargeError):
            await asset_pipeline.upload_image(b"\x00" * (5 * 1024 * 1024 + 1), "user-1", JPEG)

        assert blob_store.put_calls == 0

    @pytest.mark.asyncio
    async def test_undecodable_image_raises_transform_error(self, asset_pipeline, registry, blob_store):
        with pytest.raises(TransformError):
            await asset_pipeline.upload_image(b"definitely not a jpeg", "user-1", JPEG)

        assert blob_store.blobs == {}
        assert registry.assets == {}

    @pytest.mark.asyncio
    async def test_partial_upload_failure_rolls_back(self, asset_pipeline, registry, blob_store, sample_jpeg):
        """Test blobs written before a failing upload are deleted"""
        blob_store.fail_put_when = lambda key: "/large/" in key

        with pytest.raises(StorageError):
            await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)

        assert blob_store.put_calls == 3
        assert blob_store.blobs == {}
        assert registry.assets == {}
        assert AuditEventType.STORAGE_CLEANUP in audit_events(registry)

    @pytest.mark.asyncio
    async def test_registry_failure_rolls_back_blobs(self, asset_pipeline, registry, blob_store, sample_jpeg):
        registry.fail_insert = True

        with pytest.raises(StorageError):
            await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)

        assert blob_store.put_calls == 4
        assert blob_store.blobs == {}

    @pytest.mark.asyncio
    async def test_payload_buffer_is_scrubbed(self, asset_pipeline, sample_jpeg):
        payload = bytearray(sample_jpeg)

        await asset_pipeline.upload_image(payload, "user-1", JPEG)

        assert payload == bytearray(len(sample_jpeg))

    @pytest.mark.asyncio
    async def test_payload_buffer_is_scrubbed_on_failure(self, asset_pipeline, blob_store, sample_jpeg):
        blob_store.fail_put_when = lambda key: True
        payload = bytearray(sample_jpeg)

        with pytest.raises(StorageError):
            await asset_pipeline.upload_image(payload, "user-1", JPEG)

        assert payload == bytearray(len(sample_jpeg))

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_upload(self, asset_pipeline, registry, sample_jpeg):
        registry.save_audit_entry = AsyncMock(side_effect=RuntimeError("audit sink down"))

        manifest = await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)

        assert manifest.status == AssetStatus.ACTIVE


class TestVideoUpload:
    """Test cases for two-phase video ingestion"""

    @pytest.mark.asyncio
    async def test_upload_returns_processing_then_becomes_ready(self, asset_pipeline, blob_store, registry, sample_video):
        manifest = await asset_pipeline.upload_video(sample_video, "user-1", MP4)

        assert manifest.status == AssetStatus.PROCESSING
        assert manifest.urls.variants is None
        assert manifest.urls.poster is None
        assert blob_store.blobs[blob_store.key_for_url(manifest.urls.original)] == sample_video

        await asset_pipeline.drain()

        ready = await asset_pipeline.get_asset(manifest.id)
        assert ready.status == AssetStatus.READY
        assert set(ready.urls.variants) == {"480p", "720p", "1080p"}
        assert ready.urls.poster == f"https://cdn.test/videos/user-1/thumbnails/{registry.assets[manifest.id].filename_stem}.jpg"
        for url in list(ready.urls.variants.values()) + [ready.urls.poster]:
            assert blob_store.key_for_url(url) in blob_store.blobs
        assert AuditEventType.VIDEO_PROCESS in audit_events(registry)

    @pytest.mark.asyncio
    async def test_unsupported_video_format(self, asset_pipeline, blob_store, registry, sample_video):
        with pytest.raises(UnsupportedFormatError):
            await asset_pipeline.upload_video(
                sample_video, "user-1", UploadMetadata(content_type="video/quicktime")
            )

        assert blob_store.put_calls == 0
        assert registry.assets == {}
        assert asset_pipeline.get_metrics()['active_video_jobs'] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_id", ["", "team/alice"])
    async def test_invalid_owner_rejected(self, asset_pipeline, blob_store, registry, sample_video, owner_id):
        with pytest.raises(InvalidOwnerError):
            await asset_pipeline.upload_video(sample_video, owner_id, MP4)

        assert blob_store.put_calls == 0
        assert registry.assets == {}
        assert asset_pipeline.get_metrics()['active_video_jobs'] == 0

    @pytest.mark.asyncio
    async def test_original_upload_failure_schedules_nothing(self, asset_pipeline, blob_store, registry, sample_video):
        blob_store.fail_put_when = lambda key: True

        with pytest.raises(StorageError):
            await asset_pipeline.upload_video(sample_video, "user-1", MP4)

        assert registry.assets == {}
        assert asset_pipeline.get_metrics()['active_video_jobs'] == 0

    @pytest.mark.asyncio
    async def test_registry_failure_deletes_original(self, asset_pipeline, blob_store, registry, sample_video):
        registry.fail_insert = True

        with pytest.raises(StorageError):
            await asset_pipeline.upload_video(sample_video, "user-1", MP4)

        assert blob_store.blobs == {}
        assert asset_pipeline.get_metrics()['active_video_jobs'] == 0

    @pytest.mark.asyncio
    async def test_encoder_failure_marks_failed_and_rolls_back(
        self, asset_pipeline, stub_video_processor, blob_store, registry, sample_video
    ):
        async def transcode(source_path, preset):
            if preset.resolution == "1920x1080":
                raise TransformError("Transcode to 1920x1080 failed: encoder crashed")
            return b"rendition"

        stub_video_processor.transcode.side_effect = transcode

        manifest = await asset_pipeline.upload_video(sample_video, "user-1", MP4)
        await asset_pipeline.drain()

        failed = await asset_pipeline.get_asset(manifest.id)
        assert failed.status == AssetStatus.FAILED
        assert "encoder crashed" in failed.error.message
        assert failed.urls.variants is None
        # Only the original survives; earlier renditions were deleted
        assert list(blob_store.blobs) == [blob_store.key_for_url(manifest.urls.original)]
        assert AuditEventType.PROCESSING_FAILED in audit_events(registry)

    @pytest.mark.asyncio
    async def test_processing_timeout_marks_failed(
        self, asset_pipeline, stub_video_processor, blob_store, test_settings, sample_video
    ):
        test_settings.video_processing_timeout = 0.05

        async def slow_transcode(source_path, preset):
            if preset.resolution == "854x480":
                return b"rendition"
            await asyncio.sleep(5)

        stub_video_processor.transcode.side_effect = slow_transcode

        manifest = await asset_pipeline.upload_video(sample_video, "user-1", MP4)
        await asset_pipeline.drain()

        failed = await asset_pipeline.get_asset(manifest.id)
        assert failed.status == AssetStatus.FAILED
        assert "timed out" in failed.error.message
        assert list(blob_store.blobs) == [blob_store.key_for_url(manifest.urls.original)]

    @pytest.mark.asyncio
    async def test_video_payload_scrubbed_after_processing(self, asset_pipeline, sample_video):
        payload = bytearray(sample_video)

        await asset_pipeline.upload_video(payload, "user-1", MP4)
        # Still owned by the background job
        assert payload == bytearray(sample_video)

        await asset_pipeline.drain()

        assert payload == bytearray(len(sample_video))

    @pytest.mark.asyncio
    async def test_terminal_status_is_never_overwritten(self, asset_pipeline, registry, sample_video):
        manifest = await asset_pipeline.upload_video(sample_video, "user-1", MP4)
        await asset_pipeline.drain()

        with pytest.raises(InvalidStatusTransitionError):
            await registry.update_asset_fields(manifest.id, {"status": AssetStatus.FAILED})

        assert registry.assets[manifest.id].status == AssetStatus.READY


class TestAssetLifecycle:
    """Test cases for reads and deletes"""

    @pytest.mark.asyncio
    async def test_get_unknown_asset(self, asset_pipeline):
        with pytest.raises(NotFoundError):
            await asset_pipeline.get_asset("does-not-exist")

    @pytest.mark.asyncio
    async def test_reads_are_idempotent(self, asset_pipeline, sample_jpeg):
        manifest = await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)

        first = await asset_pipeline.get_asset(manifest.id)
        second = await asset_pipeline.get_asset(manifest.id)

        assert first == second

    @pytest.mark.asyncio
    async def test_delete_removes_blobs_and_record(self, asset_pipeline, blob_store, registry, sample_jpeg):
        manifest = await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)

        await asset_pipeline.delete_asset(manifest.id, "user-1")

        assert blob_store.blobs == {}
        with pytest.raises(NotFoundError):
            await asset_pipeline.get_asset(manifest.id)
        assert AuditEventType.MEDIA_DELETE in audit_events(registry)

    @pytest.mark.asyncio
    async def test_delete_ready_video_removes_all_renditions(self, asset_pipeline, blob_store, sample_video):
        manifest = await asset_pipeline.upload_video(sample_video, "user-1", MP4)
        await asset_pipeline.drain()
        assert len(blob_store.blobs) == 5

        await asset_pipeline.delete_asset(manifest.id, "user-1")

        assert blob_store.blobs == {}

    @pytest.mark.asyncio
    async def test_delete_by_non_owner(self, asset_pipeline, blob_store, registry, sample_jpeg):
        manifest = await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)
        stored = dict(blob_store.blobs)

        with pytest.raises(UnauthorizedError):
            await asset_pipeline.delete_asset(manifest.id, "user-2")

        assert blob_store.blobs == stored
        assert manifest.id in registry.assets

    @pytest.mark.asyncio
    async def test_delete_unknown_asset(self, asset_pipeline):
        with pytest.raises(NotFoundError):
            await asset_pipeline.delete_asset("does-not-exist", "user-1")

    @pytest.mark.asyncio
    async def test_blob_delete_failure_keeps_record_and_retry_succeeds(
        self, asset_pipeline, blob_store, registry, sample_jpeg
    ):
        manifest = await asset_pipeline.upload_image(sample_jpeg, "user-1", JPEG)
        blob_store.fail_delete_when = lambda key: "/medium/" in key

        with pytest.raises(StorageError):
            await asset_pipeline.delete_asset(manifest.id, "user-1")

        assert manifest.id in registry.assets

        blob_store.fail_delete_when = None
        await asset_pipeline.delete_asset(manifest.id, "user-1")

        assert blob_store.blobs == {}
        assert manifest.id not in registry.assets

    @pytest.mark.asyncio
    async def test_delete_racing_with_job_completion_leaves_no_renditions(
        self, asset_pipeline, stub_video_processor, blob_store, registry, sample_video
    ):
        """Test renditions written while a delete is in flight are removed with the record"""
        release = asyncio.Event()

        async def gated_transcode(source_path, preset):
            await release.wait()
            return b"rendition"

        stub_video_processor.transcode.side_effect = gated_transcode

        manifest = await asset_pipeline.upload_video(sample_video, "user-1", MP4)
        original_delete = blob_store.delete

        async def yielding_delete(key):
            if not release.is_set():
                # Let the background job finish and mark the asset ready mid-delete
                release.set()
                for _ in range(200):
                    if registry.assets[manifest.id].status != AssetStatus.PROCESSING:
                        break
                    await asyncio.sleep(0.01)
            await original_delete(key)

        blob_store.delete = yielding_delete

        await asset_pipeline.delete_asset(manifest.id, "user-1")
        await asset_pipeline.drain()

        assert manifest.id not in registry.assets
        assert blob_store.blobs == {}

    @pytest.mark.asyncio
    async def test_delete_while_processing_discards_renditions(
        self, asset_pipeline, stub_video_processor, blob_store, registry, sample_video
    ):
        release = asyncio.Event()

        async def gated_transcode(source_path, preset):
            await release.wait()
            return b"rendition"

        stub_video_processor.transcode.side_effect = gated_transcode

        manifest = await asset_pipeline.upload_video(sample_video, "user-1", MP4)
        await asset_pipeline.delete_asset(manifest.id, "user-1")
        release.set()
        await asset_pipeline.drain()

        assert manifest.id not in registry.assets
        assert blob_store.blobs == {}


class TestRecovery:
    """Test cases for interrupted video jobs"""

    def make_processing_asset(self, age_seconds):
        return MediaAsset(
            owner_id="user-1",
            kind=AssetKind.VIDEO,
            filename_stem=f"stem-{age_seconds}",
            original_key=f"videos/user-1/stem-{age_seconds}",
            status=AssetStatus.PROCESSING,
            metadata=AssetMetadata(size_bytes=10, format="mp4", content_type="video/mp4"),
            created_at=utcnow() - timedelta(seconds=age_seconds)
        )

    @pytest.mark.asyncio
    async def test_stale_processing_assets_are_failed(self, asset_pipeline, registry, blob_store):
        stale = self.make_processing_asset(3600)
        fresh = self.make_processing_asset(1)
        await registry.insert_asset(stale)
        await registry.insert_asset(fresh)
        await blob_store.put(stale.original_key, b"source", "video/mp4")
        await blob_store.put("videos/user-1/variants/480p/stem-3600", b"partial", "video/mp4")

        recovered = await asset_pipeline.recover_interrupted_jobs()

        assert recovered == 1
        assert registry.assets[stale.asset_id].status == AssetStatus.FAILED
        assert registry.assets[stale.asset_id].error.message == "Video processing was interrupted"
        assert registry.assets[fresh.asset_id].status == AssetStatus.PROCESSING
        assert list(blob_store.blobs) == [stale.original_key]

    @pytest.mark.asyncio
    async def test_recovery_pages_through_every_processing_asset(self, asset_pipeline, registry):
        stale = [self.make_processing_asset(3600 + i) for i in range(5)]
        for asset in stale:
            await registry.insert_asset(asset)

        recovered = await asset_pipeline.recover_interrupted_jobs(page_size=2)

        assert recovered == 5
        assert all(registry.assets[a.asset_id].status == AssetStatus.FAILED for a in stale)

    @pytest.mark.asyncio
    async def test_recovery_skips_jobs_running_in_this_process(
        self, asset_pipeline, stub_video_processor, registry, test_settings, sample_video
    ):
        release = asyncio.Event()

        async def gated_transcode(source_path, preset):
            await release.wait()
            return b"rendition"

        stub_video_processor.transcode.side_effect = gated_transcode
        manifest = await asset_pipeline.upload_video(sample_video, "user-1", MP4)
        await asyncio.sleep(0)
        test_settings.video_processing_timeout = 0

        recovered = await asset_pipeline.recover_interrupted_jobs()

        assert recovered == 0
        release.set()
        await asset_pipeline.drain()
        assert registry.assets[manifest.id].status == AssetStatus.READY

    @pytest.mark.asyncio
    async def test_periodic_sweep_fails_assets_that_become_stale(self, asset_pipeline, registry, test_settings):
        test_settings.recovery_interval = 0.01
        stale = self.make_processing_asset(3600)
        await registry.insert_asset(stale)

        asset_pipeline.start_recovery_sweep()
        for _ in range(200):
            if registry.assets[stale.asset_id].status == AssetStatus.FAILED:
                break
            await asyncio.sleep(0.01)
        await asset_pipeline.close()

        assert registry.assets[stale.asset_id].status == AssetStatus.FAILED
