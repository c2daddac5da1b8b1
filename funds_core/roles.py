"""
Role Directory Module

Grants and checks the app-level roles (admin, user). Admin operations call
require_admin() before touching anything.
"""

from datetime import datetime, timezone
from typing import List, Optional
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .errors import NotAdmin
from .logging_config import get_logger, log_action
from .storage import StorageInterface


class AppRole(Enum):
    """Application roles"""
    ADMIN = "admin"
    USER = "user"


class RoleDirectory:
    """Role grants stored per (user, role)"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit = audit_trail
        self.table_name = "user_roles"
        self.logger = get_logger("funds_core.roles")

    @staticmethod
    def _grant_id(user_id: str, role: AppRole) -> str:
        return f"{user_id}:{role.value}"

    def grant_role(self, user_id: str, role: AppRole, granted_by: Optional[str] = None) -> None:
        """Grant a role; granting an active role again is a no-op, a revoked one is restored"""
        role = AppRole(role)
        grant_id = self._grant_id(user_id, role)
        existing = self.storage.load(self.table_name, grant_id)
        if existing and not existing.get('revoked'):
            return

        self.storage.save(self.table_name, grant_id, {
            'id': grant_id,
            'user_id': user_id,
            'role': role.value,
            'created_at': datetime.now(timezone.utc).isoformat(),
            'revoked': False
        })
        self.audit.log_event(
            AuditEventType.ROLE_GRANTED, 'user', user_id,
            {'role': role.value}, granted_by
        )

    def revoke_role(self, user_id: str, role: AppRole, revoked_by: Optional[str] = None) -> bool:
        """Revoke a role. Returns False if the user did not hold it"""
        role = AppRole(role)
        grant_id = self._grant_id(user_id, role)
        data = self.storage.load(self.table_name, grant_id)
        if not data or data.get('revoked'):
            return False

        data['revoked'] = True
        data['revoked_at'] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table_name, grant_id, data)
        self.audit.log_event(
            AuditEventType.ROLE_REVOKED, 'user', user_id,
            {'role': role.value}, revoked_by
        )
        return True

    def has_role(self, user_id: str, role: AppRole) -> bool:
        """Check whether a user currently holds a role"""
        if not user_id:
            return False
        data = self.storage.load(self.table_name, self._grant_id(user_id, AppRole(role)))
        return bool(data) and not data.get('revoked', False)

    def list_roles(self, user_id: str) -> List[AppRole]:
        grants = self.storage.find(self.table_name, {'user_id': user_id})
        return [AppRole(g['role']) for g in grants if not g.get('revoked')]

    def require_admin(self, user_id: str) -> None:
        """
        Raises:
            NotAdmin: If the caller does not hold the admin role
        """
        if self.has_role(user_id, AppRole.ADMIN):
            return

        log_action(self.logger, "warning", "Admin operation refused",
                   user_id=user_id, action="admin_access_denied")
        self.audit.log_event(
            AuditEventType.ADMIN_ACCESS_DENIED, 'user', user_id or 'anonymous', {}, user_id
        )
        raise NotAdmin(f"User {user_id} lacks the admin role")
