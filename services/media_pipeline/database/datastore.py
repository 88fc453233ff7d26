from typing import Dict, Any, List, Optional
from datetime import datetime
import logging
from google.cloud import datastore

from ..models import MediaAsset, AssetStatus, AuditEntry, utcnow
from ..errors import StorageError, NotFoundError, InvalidStatusTransitionError

logger = logging.getLogger(__name__)

# Nested values are stored as embedded entities and never queried
UNINDEXED_ASSET_FIELDS = ("variants", "metadata", "error")


class DatastoreClient:
    """Google Cloud Datastore client for media asset records and the audit trail"""

    def __init__(
        self,
        project_id: str,
        namespace: str = "media-pipeline",
        client: Optional[datastore.Client] = None
    ):
        self.project_id = project_id
        self.namespace = namespace
        self.client = client or datastore.Client(project=project_id, namespace=namespace)

        # Kind names
        self.ASSET_KIND = "MediaAsset"
        self.AUDIT_KIND = "AuditLog"

    async def insert_asset(self, asset: MediaAsset) -> MediaAsset:
        """Create the record of a new asset"""
        try:
            key = self.client.key(self.ASSET_KIND, asset.asset_id)
            entity = datastore.Entity(key=key, exclude_from_indexes=UNINDEXED_ASSET_FIELDS)
            entity.update(self._asset_to_dict(asset))

            self.client.put(entity)
            logger.info(f"Inserted asset {asset.asset_id} with status {asset.status.value}")
            return asset

        except Exception as e:
            logger.error(f"Error inserting asset {asset.asset_id}: {str(e)}")
            raise StorageError(f"Failed to insert asset {asset.asset_id}: {str(e)}") from e

    async def get_asset(self, asset_id: str) -> Optional[MediaAsset]:
        """Get asset by id, None when it does not exist"""
        try:
            key = self.client.key(self.ASSET_KIND, asset_id)
            entity = self.client.get(key)

            if not entity:
                return None

            return self._entity_to_asset(entity)

        except Exception as e:
            logger.error(f"Error getting asset {asset_id}: {str(e)}")
            raise StorageError(f"Failed to read asset {asset_id}: {str(e)}") from e

    async def update_asset_fields(self, asset_id: str, fields: Dict[str, Any]) -> MediaAsset:
        """
        Merge the given fields into the stored record inside a transaction.

        Only the named fields are written, so concurrent writers touching
        different fields of one asset do not overwrite each other. A status
        change is checked against the current stored status.
        """
        key = self.client.key(self.ASSET_KIND, asset_id)
        updates = self._fields_to_dict(fields)

        try:
            with self.client.transaction():
                entity = self.client.get(key)
                if not entity:
                    raise NotFoundError(asset_id)

                if "status" in updates:
                    current = AssetStatus(entity["status"])
                    requested = AssetStatus(updates["status"])
                    if not current.can_transition_to(requested):
                        raise InvalidStatusTransitionError(asset_id, current.value, requested.value)

                entity.update(updates)
                entity["updated_at"] = utcnow()
                self.client.put(entity)

            logger.info(f"Updated asset {asset_id} fields: {sorted(updates)}")
            return self._entity_to_asset(entity)

        except (NotFoundError, InvalidStatusTransitionError):
            raise
        except Exception as e:
            logger.error(f"Error updating asset {asset_id}: {str(e)}")
            raise StorageError(f"Failed to update asset {asset_id}: {str(e)}") from e

    async def delete_asset(self, asset_id: str) -> None:
        """Delete asset record"""
        try:
            key = self.client.key(self.ASSET_KIND, asset_id)
            self.client.delete(key)
            logger.info(f"Deleted asset record {asset_id}")

        except Exception as e:
            logger.error(f"Error deleting asset {asset_id}: {str(e)}")
            raise StorageError(f"Failed to delete asset {asset_id}: {str(e)}") from e

    async def query_assets(
        self,
        status: Optional[AssetStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[MediaAsset]:
        """Query asset records, newest first"""
        try:
            query = self.client.query(kind=self.ASSET_KIND)

            if status:
                query.add_filter('status', '=', status.value)
            if owner_id:
                query.add_filter('owner_id', '=', owner_id)

            query.order = ['-created_at']

            assets = []
            for entity in query.fetch(limit=limit, offset=offset):
                assets.append(self._entity_to_asset(entity))

            return assets

        except Exception as e:
            logger.error(f"Error querying assets: {str(e)}")
            raise StorageError(f"Failed to query assets: {str(e)}") from e

    async def save_audit_entry(self, entry: AuditEntry) -> None:
        """Append an audit entry"""
        try:
            key = self.client.key(self.AUDIT_KIND, entry.entry_id)
            entity = datastore.Entity(key=key, exclude_from_indexes=("payload", "metadata"))
            data = entry.model_dump()
            data["event_type"] = entry.event_type.value
            data["severity"] = entry.severity.value
            entity.update(data)

            self.client.put(entity)

        except Exception as e:
            logger.error(f"Error saving audit entry {entry.entry_id}: {str(e)}")
            raise StorageError(f"Failed to save audit entry: {str(e)}") from e

    def _asset_to_dict(self, asset: MediaAsset) -> Dict[str, Any]:
        data = asset.model_dump()
        data["kind"] = asset.kind.value
        data["status"] = asset.status.value
        return data

    def _fields_to_dict(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Convert enum and model values of a partial update into storable values"""
        updates = {}
        for name, value in fields.items():
            if isinstance(value, AssetStatus):
                value = value.value
            elif hasattr(value, "model_dump"):
                value = value.model_dump()
            updates[name] = value
        return updates

    def _entity_to_asset(self, entity: datastore.Entity) -> MediaAsset:
        """Convert datastore entity to MediaAsset"""
        data = dict(entity)

        # Embedded entities come back as Entity objects
        for name in UNINDEXED_ASSET_FIELDS:
            if data.get(name) is not None:
                data[name] = dict(data[name])

        if data.get("metadata") and data["metadata"].get("tags") is not None:
            data["metadata"]["tags"] = dict(data["metadata"]["tags"])

        for name in ("created_at", "updated_at"):
            if not isinstance(data.get(name), datetime):
                data.pop(name, None)

        return MediaAsset(**data)

    async def close(self):
        """Close datastore client"""
        try:
            self.client.close()
        except Exception as e:
            logger.error(f"Error closing datastore client: {str(e)}")
