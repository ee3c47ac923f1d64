"""
Audit trail for escrow accounts.

Entries are append-only and immutable. Successful operations stage their
entry in the same unit of work as the balance change, so the history and
the balances commit together; rejected admin attempts are appended on
their own with ``{"rejected": True, "error": ...}`` metadata.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from escrow_errors import EscrowError
from escrow_models import AuditAction, AuditTrailEntry
from utils import sanitize_input

logger = logging.getLogger(__name__)


def new_entry(
    escrow_id: str,
    action: AuditAction,
    performed_by: str,
    reason: str,
    timestamp: datetime,
    amount: Optional[Decimal] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditTrailEntry:
    """Build an audit entry with a fresh id and a sanitized reason."""
    return AuditTrailEntry(
        id=str(uuid.uuid4()),
        escrow_id=escrow_id,
        action=AuditAction(action),
        performed_by=str(performed_by),
        reason=sanitize_input(reason or ''),
        timestamp=timestamp,
        amount=amount,
        metadata=dict(metadata or {}),
    )


class AuditTrail:
    """Read and append access to the audit history of escrow accounts."""

    def __init__(self, repository):
        self.repository = repository

    async def record_rejection(
        self,
        escrow_id: str,
        action: AuditAction,
        performed_by: str,
        reason: str,
        timestamp: datetime,
        error: EscrowError,
        amount: Optional[Decimal] = None
    ) -> AuditTrailEntry:
        """Append an entry for an admin attempt that was refused."""
        entry = new_entry(
            escrow_id,
            action,
            performed_by,
            reason,
            timestamp,
            amount=amount,
            metadata={
                'rejected': True,
                'error': error.error_label,
                'message': error.message,
            },
        )
        await self.repository.append_audit(entry)
        logger.warning(
            f"Rejected {entry.action.value} on escrow {escrow_id} by {performed_by}: {error.message}"
        )
        return entry

    async def history(
        self,
        escrow_id: str,
        action: Optional[AuditAction] = None,
        include_rejected: bool = True
    ) -> List[AuditTrailEntry]:
        """Entries of one account, oldest first, optionally filtered."""
        entries = await self.repository.list_audit(escrow_id)
        if action is not None:
            entries = [e for e in entries if e.action == AuditAction(action)]
        if not include_rejected:
            entries = [e for e in entries if not e.rejected]
        return entries
