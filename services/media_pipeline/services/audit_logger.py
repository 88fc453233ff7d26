from typing import Dict, Any, Optional
import logging

from ..models import AuditEntry, AuditEventType, AuditSeverity
from ..database.datastore import DatastoreClient

logger = logging.getLogger(__name__)


class AuditLogger:
    """Fire-and-forget audit trail of media lifecycle events"""

    def __init__(self, datastore_client: DatastoreClient):
        self.datastore_client = datastore_client

    async def log(
        self,
        event_type: AuditEventType,
        payload: Dict[str, Any],
        owner_id: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEntry]:
        """
        Record an audit event. Never raises: a failing audit sink must not
        fail the operation being audited.
        """
        try:
            entry = AuditEntry(
                event_type=event_type,
                severity=severity,
                owner_id=owner_id,
                payload=payload,
                metadata=metadata or {}
            )

            if severity == AuditSeverity.CRITICAL:
                logger.critical(f"Critical audit event {event_type.value}: {payload}")

            await self.datastore_client.save_audit_entry(entry)
            return entry

        except Exception as e:
            logger.error(f"Error recording audit event {event_type.value}: {str(e)}")
            return None
