import logging
from typing import Optional

from sqlmodel import Session

from exam_integrity.models import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    session: Session,
    *,
    institute_id: Optional[int],
    actor_id: Optional[int],
    action: str,
    resource_type: str,
    resource_id: Optional[int],
    details: Optional[dict] = None,
    now=None,
) -> Optional[AuditLog]:
    """Stage an audit row on ``session``; committed with the caller's change.

    A row without an institute would be invisible to every tenant, so it is
    skipped and reported instead.
    """
    if institute_id is None:
        logger.error("Audit record for %s on %s %s has no institute", action, resource_type, resource_id)
        return None

    entry = AuditLog(
        institute_id=institute_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details or {},
    )
    if now is not None:
        entry.created_at = now
    session.add(entry)
    return entry
