from types import SimpleNamespace

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import TestCase

from .models import UserRole
from .permissions import IsAdminUserRole, IsCustomerRole


class RolePermissionTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="admin", password="pass1234", role=UserRole.ADMIN)
        self.customer = user_model.objects.create_user(username="pelanggan", password="pass1234")
        self.superuser = user_model.objects.create_superuser(username="root", password="pass1234")

    def _allowed(self, permission, user):
        return permission().has_permission(SimpleNamespace(user=user), view=None)

    def test_new_accounts_default_to_customer_role(self):
        self.assertEqual(self.customer.role, UserRole.CUSTOMER)

    def test_admin_permission(self):
        self.assertTrue(self._allowed(IsAdminUserRole, self.admin))
        self.assertTrue(self._allowed(IsAdminUserRole, self.superuser))
        self.assertFalse(self._allowed(IsAdminUserRole, self.customer))
        self.assertFalse(self._allowed(IsAdminUserRole, AnonymousUser()))

    def test_customer_permission(self):
        self.assertTrue(self._allowed(IsCustomerRole, self.customer))
        self.assertFalse(self._allowed(IsCustomerRole, self.admin))
        self.assertFalse(self._allowed(IsCustomerRole, AnonymousUser()))
