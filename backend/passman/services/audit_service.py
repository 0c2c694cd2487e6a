"""
Audit Logger for PassMan
Append-only trail of security-relevant events, itself access controlled
by the authorization resolver
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..config import Settings, get_settings
from ..database import AuditLog, Clock, Credential, User, Vault, utcnow
from ..exceptions import ForbiddenError, NotFoundError, OperationResult, TransientError
from ..models.audit_models import AuditAction, AuditLogEntryView, AuditLogFilter, PaginatedAuditResult
from ..models.authorization_models import ResourceIdentifier, Subject
from ..rbac import ActionType, Permission
from ..utils.logging_security import sanitize_for_log, sanitize_id_for_log
from .authorization import AuthorizationService
from .base import service_operation
from .share_store import VaultShareStore

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("passman.audit")


class AuditService:
    """Write and query the audit trail"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        authorizer: Optional[AuthorizationService] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.authorizer = authorizer or AuthorizationService(db)
        self.share_store = VaultShareStore(db)
        self.clock = clock

    def log(
        self,
        user_id: Optional[int],
        action: AuditAction,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        vault_id: Optional[int] = None,
        credential_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        details: Optional[str] = None,
    ) -> OperationResult[AuditLog]:
        """
        Append an audit entry in its own transaction.

        Call only after the primary operation has committed. A failure here
        is reported as a TransientError result and never raised, so it cannot
        undo or fail the operation being described.
        """
        action = AuditAction(action)
        entry = AuditLog(
            user_id=user_id,
            action=int(action),
            entity_type=entity_type,
            entity_id=entity_id,
            vault_id=vault_id,
            credential_id=credential_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            timestamp=self.clock(),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to write audit entry {action.label}: {type(e).__name__}")
            return OperationResult.fail(TransientError("Audit entry could not be persisted"))

        security_logger.info(
            f"{action.label} - User: {sanitize_id_for_log(user_id)}, "
            f"Vault: {sanitize_id_for_log(vault_id)}, IP: {sanitize_for_log(ip_address)}"
        )
        return OperationResult.ok(entry)

    @service_operation
    def query_for_user(
        self,
        subject: Subject,
        user_id: Optional[int] = None,
        filters: Optional[AuditLogFilter] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> PaginatedAuditResult:
        """
        Entries authored by a user.

        Without ``audit.read`` the caller only ever sees their own entries.
        With it, ``user_id`` narrows the trail to one author and None returns
        everyone's entries.
        """
        if subject.has_permission(Permission.AUDIT_READ):
            author_id = user_id
        else:
            if user_id is not None and user_id != subject.user_id:
                raise ForbiddenError("Access denied")
            author_id = subject.user_id

        query = self._filtered_query(filters)
        if author_id is not None:
            query = query.filter(AuditLog.user_id == author_id)
        return self._paginate(query, page, page_size)

    @service_operation
    def query_for_vault(
        self,
        vault_id: int,
        subject: Subject,
        filters: Optional[AuditLogFilter] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> PaginatedAuditResult:
        """Entries about one vault, for its owner, its sharers or an audit reader.

        Soft-deleted vaults keep their history readable.
        """
        if self.share_store.get_vault(vault_id, include_deleted=True) is None:
            raise NotFoundError("Vault not found")

        self.authorizer.require(
            subject, ActionType.AUDIT_VAULT_READ, ResourceIdentifier.vault(vault_id), include_deleted=True
        )

        query = self._filtered_query(filters).filter(AuditLog.vault_id == vault_id)
        return self._paginate(query, page, page_size)

    @service_operation
    def query_all(
        self,
        subject: Subject,
        filters: Optional[AuditLogFilter] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> PaginatedAuditResult:
        """The whole trail; requires ``audit.read``"""
        self.authorizer.require(subject, ActionType.AUDIT_READ_ALL)
        return self._paginate(self._filtered_query(filters), page, page_size)

    @service_operation
    def get_by_id(self, entry_id: int, subject: Subject) -> AuditLogEntryView:
        """One entry, for its author, the owner of its vault or an audit reader"""
        entry = self.db.get(AuditLog, entry_id)
        if entry is None:
            raise NotFoundError("Audit log entry not found")

        self.authorizer.require(subject, ActionType.AUDIT_ENTRY_READ, ResourceIdentifier.audit_entry(entry_id))
        return self._to_views([entry])[0]

    def clamp_pagination(self, page: Optional[int], page_size: Optional[int]):
        """Clamp out-of-range paging instead of rejecting it"""
        cap = self.settings.audit_max_page_size
        page = max(1, page or 1)
        if page_size is None:
            page_size = self.settings.audit_default_page_size
        page_size = min(max(1, page_size), cap)
        return page, page_size

    def _filtered_query(self, filters: Optional[AuditLogFilter]) -> Query:
        query = self.db.query(AuditLog)
        if filters is None:
            return query
        if filters.action is not None:
            query = query.filter(AuditLog.action == int(filters.action))
        if filters.start_date is not None:
            query = query.filter(AuditLog.timestamp >= filters.start_date)
        if filters.end_date is not None:
            query = query.filter(AuditLog.timestamp <= filters.end_date)
        if filters.vault_id is not None:
            query = query.filter(AuditLog.vault_id == filters.vault_id)
        if filters.credential_id is not None:
            query = query.filter(AuditLog.credential_id == filters.credential_id)
        if filters.entity_type:
            query = query.filter(AuditLog.entity_type == filters.entity_type)
        return query

    def _paginate(self, query: Query, page: int, page_size: Optional[int]) -> PaginatedAuditResult:
        page, page_size = self.clamp_pagination(page, page_size)
        total = query.count()
        rows = (
            query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return PaginatedAuditResult(
            items=self._to_views(rows), total_count=total, page=page, page_size=page_size
        )

    def _to_views(self, rows: Iterable[AuditLog]) -> List[AuditLogEntryView]:
        """Resolve emails, vault names and credential titles in one query each.

        Vault names are looked up without the soft-delete filter.
        """
        rows = list(rows)
        user_ids = {r.user_id for r in rows if r.user_id is not None}
        vault_ids = {r.vault_id for r in rows if r.vault_id is not None}
        credential_ids = {r.credential_id for r in rows if r.credential_id is not None}

        emails = dict(self.db.query(User.id, User.email).filter(User.id.in_(user_ids)).all()) if user_ids else {}
        vault_names = (
            dict(self.db.query(Vault.id, Vault.name).filter(Vault.id.in_(vault_ids)).all()) if vault_ids else {}
        )
        titles = (
            dict(self.db.query(Credential.id, Credential.title).filter(Credential.id.in_(credential_ids)).all())
            if credential_ids
            else {}
        )

        views = []
        for row in rows:
            action = AuditAction(row.action)
            views.append(
                AuditLogEntryView(
                    id=row.id,
                    action=action,
                    action_name=action.label,
                    entity_type=row.entity_type,
                    entity_id=row.entity_id,
                    details=row.details,
                    user_id=row.user_id,
                    user_email=emails.get(row.user_id),
                    vault_id=row.vault_id,
                    vault_name=vault_names.get(row.vault_id),
                    credential_id=row.credential_id,
                    credential_title=titles.get(row.credential_id),
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    timestamp=row.timestamp,
                )
            )
        return views


def get_audit_service(db: Session) -> AuditService:
    """Factory function to get audit service instance"""
    return AuditService(db)
