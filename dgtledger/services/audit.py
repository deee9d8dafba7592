"""
dgtledger.services.audit — Admin audit trail helpers
=====================================================

Every admin mutation of the ledger (reverse, adjust, freeze, unfreeze,
flag) writes one ``admin_log`` row **inside the same database transaction**
as the mutation itself, with before/after JSON snapshots:

  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after JSON
  5. Commit
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dgtledger.database.models import AdminLog

logger = logging.getLogger(__name__)


def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key if col.key != "metadata" else "metadata_", None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def log_admin_action(
    session: Session,
    *,
    actor_id: int,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))
    logger.info(
        "Admin %s: %s %s/%s (%s)", actor_id, action_type, target_table, target_id, reason or "-"
    )


def get_audit_log(
    engine,
    *,
    target_table: str | None = None,
    target_id: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> list[dict]:
    """Paginated audit entries, newest first."""
    with Session(engine) as session:
        stmt = select(AdminLog).order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
        if target_table is not None:
            stmt = stmt.where(AdminLog.target_table == target_table)
        if target_id is not None:
            stmt = stmt.where(AdminLog.target_id == target_id)
        rows = session.scalars(
            stmt.offset((page - 1) * page_size).limit(page_size)
        ).all()
        return [
            {
                "id": r.id,
                "actor_id": str(r.actor_id),
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before": r.before_snapshot,
                "after": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ]
