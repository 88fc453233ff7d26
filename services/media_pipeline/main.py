from fastapi import FastAPI, HTTPException, Depends, File, Form, Header, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import json
import uvicorn
import os
from typing import Dict, Optional
import logging

from .config import Settings
from .models import AssetKind, UploadMetadata
from .errors import MediaServiceError
from .services.asset_pipeline import AssetPipeline
from .services.audit_logger import AuditLogger
from .services.blob_store import BlobStore
from .services.image_processor import ImageProcessor
from .services.video_processor import VideoProcessor
from .database.datastore import DatastoreClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = Settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Media Pipeline...")

    datastore_client = DatastoreClient(settings.google_cloud_project, settings.datastore_namespace)
    blob_store = BlobStore(settings)

    asset_pipeline = AssetPipeline(
        settings,
        datastore_client,
        blob_store,
        ImageProcessor(settings),
        VideoProcessor(settings),
        AuditLogger(datastore_client)
    )
    await asset_pipeline.recover_interrupted_jobs()
    asset_pipeline.start_recovery_sweep()

    app.state.asset_pipeline = asset_pipeline
    app.state.datastore_client = datastore_client
    app.state.blob_store = blob_store

    logger.info("Media Pipeline started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Media Pipeline...")
    await asset_pipeline.close()
    await blob_store.close()
    await datastore_client.close()
    logger.info("Media Pipeline shutdown complete")


app = FastAPI(
    title="Media Pipeline",
    description="Image and video ingestion with derived renditions",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_asset_pipeline(request: Request) -> AssetPipeline:
    return request.app.state.asset_pipeline


def _parse_tags(tags: Optional[str]) -> Dict[str, str]:
    if not tags:
        return {}
    try:
        parsed = json.loads(tags)
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="tags must be a JSON object"
        )
    if not isinstance(parsed, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="tags must be a JSON object"
        )
    return {str(k): str(v) for k, v in parsed.items()}


async def _upload(
    kind: AssetKind,
    file: UploadFile,
    owner_id: str,
    tags: Optional[str],
    asset_pipeline: AssetPipeline
):
    metadata = UploadMetadata(
        content_type=file.content_type or "application/octet-stream",
        filename=file.filename or "",
        tags=_parse_tags(tags)
    )
    data = await file.read()

    try:
        if kind == AssetKind.IMAGE:
            manifest = await asset_pipeline.upload_image(data, owner_id, metadata)
        else:
            manifest = await asset_pipeline.upload_video(data, owner_id, metadata)
        return manifest.to_response()
    except MediaServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Failed to upload {kind.value}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to upload {kind.value}: {str(e)}"
        )


# Health check
@app.get("/health")
async def health_check(request: Request):
    response = {"status": "healthy", "service": "media-pipeline"}
    asset_pipeline = getattr(request.app.state, "asset_pipeline", None)
    if asset_pipeline:
        response.update(asset_pipeline.get_metrics())
    return response


@app.post("/api/v1/media/images", status_code=status.HTTP_201_CREATED)
async def upload_image(
    file: UploadFile = File(...),
    tags: Optional[str] = Form(None),
    owner_id: str = Header(..., alias="X-User-Id"),
    asset_pipeline: AssetPipeline = Depends(get_asset_pipeline)
):
    """Upload an image; returns once every thumbnail is stored"""
    return await _upload(AssetKind.IMAGE, file, owner_id, tags, asset_pipeline)


@app.post("/api/v1/media/videos", status_code=status.HTTP_202_ACCEPTED)
async def upload_video(
    file: UploadFile = File(...),
    tags: Optional[str] = Form(None),
    owner_id: str = Header(..., alias="X-User-Id"),
    asset_pipeline: AssetPipeline = Depends(get_asset_pipeline)
):
    """Upload a video; renditions are produced in the background"""
    return await _upload(AssetKind.VIDEO, file, owner_id, tags, asset_pipeline)


@app.get("/api/v1/media/{asset_id}")
async def get_asset(
    asset_id: str,
    asset_pipeline: AssetPipeline = Depends(get_asset_pipeline)
):
    """Get asset status and URLs"""
    try:
        manifest = await asset_pipeline.get_asset(asset_id)
        return manifest.to_response()
    except MediaServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Failed to get asset {asset_id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get asset: {str(e)}"
        )


@app.delete("/api/v1/media/{asset_id}")
async def delete_asset(
    asset_id: str,
    caller_id: str = Header(..., alias="X-User-Id"),
    asset_pipeline: AssetPipeline = Depends(get_asset_pipeline)
):
    """Delete an asset and every stored rendition"""
    try:
        await asset_pipeline.delete_asset(asset_id, caller_id)
        return {"message": "Asset deleted successfully"}
    except MediaServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Failed to delete asset {asset_id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to delete asset: {str(e)}"
        )


if __name__ == "__main__":
    uvicorn.run(
        "services.media_pipeline.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=settings.environment == "development"
    )
