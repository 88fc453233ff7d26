from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from enum import Enum
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssetKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class AssetStatus(str, Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS.get(self)

    def can_transition_to(self, target: "AssetStatus") -> bool:
        return target in ALLOWED_TRANSITIONS.get(self, frozenset())


# Active, ready and failed have no outgoing transitions
ALLOWED_TRANSITIONS = {
    AssetStatus.PROCESSING: frozenset({AssetStatus.READY, AssetStatus.FAILED}),
}


class FitMode(str, Enum):
    COVER = "cover"
    INSIDE = "inside"


class UploadMetadata(BaseModel):
    """What the caller declares alongside the uploaded bytes"""
    content_type: str
    filename: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)


class AssetMetadata(BaseModel):
    size_bytes: int
    format: str
    content_type: str
    original_filename: str = ""
    width: Optional[int] = None
    height: Optional[int] = None
    tags: Dict[str, str] = Field(default_factory=dict)


class AssetError(BaseModel):
    message: str
    failed_at: datetime = Field(default_factory=utcnow)
    elapsed_seconds: float = 0.0

    @field_validator("message")
    @classmethod
    def validate_message(cls, v):
        if not v:
            raise ValueError("Failure message must not be empty")
        return v


class MediaAsset(BaseModel):
    asset_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    kind: AssetKind
    filename_stem: str
    original_key: str
    status: AssetStatus
    variants: Dict[str, str] = Field(default_factory=dict)
    metadata: AssetMetadata
    error: Optional[AssetError] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def blob_keys(self) -> List[str]:
        """Every blob key the record references, original first"""
        keys = [self.original_key]
        keys.extend(key for key in self.variants.values() if key not in keys)
        return keys


class AssetUrls(BaseModel):
    original: str
    thumbnails: Optional[Dict[str, str]] = None
    variants: Optional[Dict[str, str]] = None
    poster: Optional[str] = None


class AssetManifest(BaseModel):
    id: str
    kind: AssetKind
    status: AssetStatus
    urls: AssetUrls
    metadata: AssetMetadata
    error: Optional[AssetError] = None
    created_at: datetime
    updated_at: datetime

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    MEDIA_UPLOAD = "media.upload"
    MEDIA_DELETE = "media.delete"
    VIDEO_PROCESS = "media.video.process"
    PROCESSING_FAILED = "media.processing.failed"
    STORAGE_CLEANUP = "media.storage.cleanup"


class AuditEntry(BaseModel):
    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO
    owner_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
