"""
Admin permission checks for billing operations.

Administrative access is granted through rows in `admin_role_assignments`; each
role maps to a fixed set of permissions.

```python
policy = PolicyEvaluator(orm)
policy.require(user_id, Permission.MANAGE_CREDITS)
```
"""

import enum
import logging
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from rebound_relay.common.orm import normalize_uuid
from .billing_constants import AdminRole
from .models import AdminRoleModel, OrgModel

logger = logging.getLogger(__name__)


class Permission(str, enum.Enum):
    VIEW_CREDITS = "credits:read"
    MANAGE_CREDITS = "credits:manage"
    RECALCULATE_CREDITS = "credits:recalculate"
    VIEW_INVOICES = "invoices:read"
    MANAGE_INVOICES = "invoices:manage"


ROLE_PERMISSIONS: dict[AdminRole, frozenset[Permission]] = {
    AdminRole.super_admin: frozenset(Permission),
    AdminRole.billing_admin: frozenset(
        {
            Permission.VIEW_CREDITS,
            Permission.MANAGE_CREDITS,
            Permission.RECALCULATE_CREDITS,
            Permission.VIEW_INVOICES,
        }
    ),
    AdminRole.support: frozenset({Permission.VIEW_CREDITS, Permission.VIEW_INVOICES}),
}


class PolicyEvaluator:
    def __init__(self, orm: Session):
        self.orm = orm
        self._roles: dict = {}

    def roles_for(self, user_id) -> set[AdminRole]:
        try:
            user_id = normalize_uuid(user_id)
        except (ValueError, TypeError, AttributeError):
            return set()

        if user_id not in self._roles:
            rows = self.orm.query(AdminRoleModel.role).filter(AdminRoleModel.user_id == user_id).all()
            roles = set()
            for (role,) in rows:
                try:
                    roles.add(AdminRole(role))
                except ValueError:
                    logger.warning(f"Ignoring unknown admin role {role!r} for user {user_id}")
            self._roles[user_id] = roles
        return self._roles[user_id]

    def permissions_for(self, user_id) -> set[Permission]:
        permissions: set[Permission] = set()
        for role in self.roles_for(user_id):
            permissions |= ROLE_PERMISSIONS.get(role, frozenset())
        return permissions

    def is_allowed(self, user_id, permission: Permission) -> bool:
        return Permission(permission) in self.permissions_for(user_id)

    def require(self, user_id, permission: Permission) -> None:
        if not self.is_allowed(user_id, permission):
            logger.warning(f"User {user_id} denied {Permission(permission).value}")
            raise HTTPException(status_code=403, detail="Access denied")

    def can_access_org(self, user_id, org: Optional[OrgModel], permission: Permission) -> bool:
        """Members see their own organization; everyone else needs the admin permission."""
        if org is not None and org.is_user_member(self.orm, user_id):
            return True
        return self.is_allowed(user_id, permission)
