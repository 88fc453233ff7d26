"""
Media pipeline exceptions
"""

from typing import Optional, Dict, Any


class MediaServiceError(Exception):
    """Base exception for the media pipeline."""

    def __init__(
        self,
        message: str,
        code: str = "MEDIA_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "details": self.details,
        }


class UnsupportedFormatError(MediaServiceError):
    """Raised when a declared content type is not accepted for an asset kind."""

    def __init__(
        self,
        content_type: str,
        kind: Optional[str] = None,
        message: Optional[str] = None,
    ):
        msg = message or f"Unsupported {kind or 'media'} format: {content_type}"
        super().__init__(
            msg,
            "UNSUPPORTED_FORMAT",
            415,
            {"content_type": content_type, "kind": kind},
        )


class FileTooLargeError(UnsupportedFormatError):
    """Raised when an upload is empty or exceeds the size limit for its kind."""

    def __init__(self, size_bytes: int, max_bytes: int, kind: str):
        super().__init__(
            content_type="",
            kind=kind,
            message=f"{kind.capitalize()} of {size_bytes} bytes is outside the accepted size (max {max_bytes})",
        )
        self.code = "FILE_TOO_LARGE"
        self.status_code = 413
        self.details = {"size_bytes": size_bytes, "max_bytes": max_bytes, "kind": kind}


class StorageError(MediaServiceError):
    """Raised when the blob store or the registry fails."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "STORAGE_FAILURE", 502, details)
        self.key = key
        if key:
            self.details.setdefault("key", key)


class TransformError(MediaServiceError):
    """Raised when resizing, transcoding or frame extraction fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "TRANSFORM_FAILURE", 422, details)


class NotFoundError(MediaServiceError):
    """Raised when an asset does not exist."""

    def __init__(self, asset_id: str):
        super().__init__(f"Asset not found: {asset_id}", "NOT_FOUND", 404, {"asset_id": asset_id})
        self.asset_id = asset_id


class UnauthorizedError(MediaServiceError):
    """Raised when a caller acts on an asset it does not own."""

    def __init__(self, asset_id: str, caller_id: str):
        super().__init__(
            f"Caller {caller_id} is not the owner of asset {asset_id}",
            "UNAUTHORIZED",
            403,
            {"asset_id": asset_id, "caller_id": caller_id},
        )


class InvalidStatusTransitionError(MediaServiceError):
    """Raised when an update would move an asset out of a terminal status."""

    def __init__(self, asset_id: str, current: str, requested: str):
        super().__init__(
            f"Asset {asset_id} cannot move from {current} to {requested}",
            "INVALID_STATUS_TRANSITION",
            409,
            {"asset_id": asset_id, "current": current, "requested": requested},
        )


class InvalidOwnerError(MediaServiceError):
    """Raised when an owner id cannot be used as a storage key segment."""

    def __init__(self, owner_id: str):
        super().__init__(
            f"Invalid owner id: {owner_id!r}",
            "INVALID_OWNER",
            400,
            {"owner_id": owner_id},
        )
