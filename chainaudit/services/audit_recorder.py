"""
Append-only recorder for the audit hash chain.

Every append runs in one transaction:

    lock head -> next id / prev hash -> hash -> insert -> advance head -> commit

The head row is locked FOR UPDATE (a no-op on SQLite, where the process lock
and the database write lock do the same job) and released only by the commit,
so commits land in id order and readers always see a gapless prefix.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from chainaudit.core.config import get_hash_secret, settings
from chainaudit.core.errors import AuditWriteError
from chainaudit.models.audit_event import AuditChainHead, AuditEvent
from chainaudit.schemas.audit import (
    AuditAction,
    AuditActorContext,
    AuditEventCreate,
    AuditEventRead,
)
from chainaudit.utils.hash_utils import (
    GENESIS_HASH,
    canonical_event,
    chain_digest,
    normalize_details,
)

logger = logging.getLogger(__name__)

HEAD_ROW_ID = 1

_append_lock = threading.Lock()
_unkeyed_warned = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _build_event(
    action: Any,
    actor: AuditActorContext,
    *,
    tenant_id: Optional[str],
    entity_type: Optional[str],
    entity_id: Any,
    details: Any,
) -> AuditEventCreate:
    try:
        return AuditEventCreate(
            tenant_id=tenant_id or actor.tenant_id,
            actor_user_id=actor.actor_user_id,
            actor_email=actor.actor_email,
            action=action.value if isinstance(action, AuditAction) else action,
            entity_type=entity_type,
            entity_id=entity_id,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            details=details,
        )
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_input=False, include_context=False)
        raise AuditWriteError("Audit event rejected", detail={"errors": errors}) from exc


def _warn_unkeyed_once() -> None:
    global _unkeyed_warned
    if not _unkeyed_warned:
        _unkeyed_warned = True
        logger.warning(
            "AUDIT_HASH_SECRET is not set; audit hashes use plain SHA-256 "
            "and can be recomputed by anyone with write access"
        )


class AuditRecorder:
    """
    Writes audit events onto the global chain.

    Note: ``append`` commits the session it is given. Callers that want the
    business change and its audit event to be atomic must do both on the same
    session and let ``append`` commit them together.
    """

    def __init__(
        self,
        db: Session,
        secret: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self._secret = secret
        self._clock = clock or _utcnow

    @property
    def secret(self) -> Optional[str]:
        return self._secret if self._secret is not None else get_hash_secret()

    def append(self, event: AuditEventCreate) -> AuditEventRead:
        """
        Persist one event at the chain tail.

        Raises:
            AuditWriteError: nothing was written (transaction rolled back)
        """
        secret = self.secret
        if not secret:
            _warn_unkeyed_once()

        with _append_lock:
            try:
                head = self._lock_head()

                created_at = as_utc(self._clock())
                last_created_at = as_utc(head.last_created_at)
                if last_created_at is not None and created_at < last_created_at:
                    # Clock skew between writers; keep created_at monotonic
                    created_at = last_created_at

                fields = {
                    "id": head.last_id + 1,
                    "tenant_id": event.tenant_id,
                    "actor_user_id": event.actor_user_id,
                    "actor_email": event.actor_email,
                    "action": event.action,
                    "entity_type": event.entity_type,
                    "entity_id": event.entity_id,
                    "ip_address": event.ip_address,
                    "user_agent": event.user_agent,
                    "details": normalize_details(event.details),
                    "created_at": created_at,
                }
                digest = chain_digest(canonical_event(fields), head.last_hash, secret)

                row = AuditEvent(**fields, prev_hash=head.last_hash, hash=digest)
                self.db.add(row)

                head.last_id = row.id
                head.last_hash = digest
                head.last_created_at = created_at

                self.db.commit()
            except Exception as exc:
                self.db.rollback()
                logger.error(
                    "Audit append failed for action=%s tenant=%s: %s",
                    event.action,
                    event.tenant_id,
                    exc,
                )
                raise AuditWriteError(
                    "Audit event could not be recorded",
                    detail={"action": event.action},
                ) from exc

        self.db.refresh(row)
        logger.debug("Audit event %s recorded (%s)", row.id, row.action)
        return AuditEventRead.model_validate(row)

    def record(
        self,
        action: Any,
        *,
        actor: Optional[AuditActorContext] = None,
        entity_type: Optional[str] = None,
        entity_id: Any = None,
        details: Any = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[AuditEventRead]:
        """
        Convenience wrapper used by business call sites.

        With ``AUDIT_FAIL_CLOSED`` disabled a failed write is logged and
        ``None`` is returned instead of raising.
        """
        actor = actor or AuditActorContext()
        try:
            event = _build_event(
                action,
                actor,
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
            )
            return self.append(event)
        except AuditWriteError:
            if settings.AUDIT_FAIL_CLOSED:
                raise
            logger.error("Audit event dropped (fail-open): action=%s", action)
            return None

    def _lock_head(self) -> AuditChainHead:
        head = self.db.execute(
            select(AuditChainHead)
            .where(AuditChainHead.id == HEAD_ROW_ID)
            .with_for_update()
        ).scalar_one_or_none()
        if head is not None:
            return head

        # Fresh database or recreated head table: derive the tail from the log
        last = self.db.execute(
            select(AuditEvent).order_by(AuditEvent.id.desc()).limit(1)
        ).scalar_one_or_none()
        head = AuditChainHead(
            id=HEAD_ROW_ID,
            last_id=last.id if last else 0,
            last_hash=last.hash if last else GENESIS_HASH,
            last_created_at=last.created_at if last else None,
        )
        self.db.add(head)
        self.db.flush()
        logger.info("Audit chain head initialised at id=%s", head.last_id)
        return head
