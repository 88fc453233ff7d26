"""
Media pipeline components
"""

from .asset_pipeline import AssetPipeline
from .audit_logger import AuditLogger
from .blob_store import BlobStore, UploadSession
from .image_processor import ImageProcessor
from .video_processor import VideoProcessor

__all__ = [
    'AssetPipeline',
    'AuditLogger',
    'BlobStore',
    'UploadSession',
    'ImageProcessor',
    'VideoProcessor'
]
