import uuid

import pytest
from fastapi import HTTPException

from rebound_relay.billing.billing_constants import AdminRole
from rebound_relay.billing.models import AdminRoleModel
from rebound_relay.billing.policy import ROLE_PERMISSIONS, Permission, PolicyEvaluator


class TestRolePermissions:
    def test_super_admin_holds_every_permission(self):
        assert ROLE_PERMISSIONS[AdminRole.super_admin] == frozenset(Permission)

    def test_support_is_read_only(self):
        assert ROLE_PERMISSIONS[AdminRole.support] == {Permission.VIEW_CREDITS, Permission.VIEW_INVOICES}

    def test_billing_admin_cannot_manage_invoices(self):
        assert Permission.MANAGE_INVOICES not in ROLE_PERMISSIONS[AdminRole.billing_admin]
        assert Permission.MANAGE_CREDITS in ROLE_PERMISSIONS[AdminRole.billing_admin]


class TestPolicyEvaluator:
    def test_billing_admin_permissions(self, orm_session, billing_admin_user):
        policy = PolicyEvaluator(orm_session)

        assert policy.roles_for(billing_admin_user.id) == {AdminRole.billing_admin}
        assert policy.is_allowed(billing_admin_user.id, Permission.RECALCULATE_CREDITS)
        assert not policy.is_allowed(billing_admin_user.id, Permission.MANAGE_INVOICES)

    def test_roles_union_across_assignments(self, orm_session, support_user):
        orm_session.add(AdminRoleModel(user_id=support_user.id, role=AdminRole.billing_admin))
        orm_session.commit()

        permissions = PolicyEvaluator(orm_session).permissions_for(str(support_user.id))

        assert Permission.MANAGE_CREDITS in permissions
        assert Permission.VIEW_INVOICES in permissions

    def test_user_without_roles(self, orm_session, test_user):
        policy = PolicyEvaluator(orm_session)

        assert policy.permissions_for(test_user.id) == set()

    def test_malformed_user_id_has_no_roles(self, orm_session, db_engine):
        assert PolicyEvaluator(orm_session).roles_for("not-a-uuid") == set()

    def test_require_raises_403(self, orm_session, support_user):
        policy = PolicyEvaluator(orm_session)

        policy.require(support_user.id, Permission.VIEW_CREDITS)
        with pytest.raises(HTTPException) as exc_info:
            policy.require(support_user.id, Permission.MANAGE_CREDITS)

        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == "Access denied"


class TestCanAccessOrg:
    def test_member_sees_own_org(self, orm_session, test_org, test_user):
        assert PolicyEvaluator(orm_session).can_access_org(test_user.id, test_org, Permission.VIEW_CREDITS)

    def test_outsider_is_denied(self, orm_session, test_org, test_user2):
        assert not PolicyEvaluator(orm_session).can_access_org(test_user2.id, test_org, Permission.VIEW_CREDITS)

    def test_admin_permission_grants_access(self, orm_session, test_org, support_user):
        policy = PolicyEvaluator(orm_session)

        assert policy.can_access_org(support_user.id, test_org, Permission.VIEW_CREDITS)
        assert not policy.can_access_org(support_user.id, test_org, Permission.MANAGE_CREDITS)

    def test_missing_org_needs_permission(self, orm_session, billing_admin_user):
        policy = PolicyEvaluator(orm_session)

        assert policy.can_access_org(billing_admin_user.id, None, Permission.VIEW_CREDITS)
        assert not policy.can_access_org(uuid.uuid4(), None, Permission.VIEW_CREDITS)
