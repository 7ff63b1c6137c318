import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.access import AccessChecker, AllowAllAccessChecker, DenyAllAccessChecker, RoleAccessChecker


class TestRoleAccessChecker(unittest.TestCase):
    def setUp(self) -> None:
        self.checker = RoleAccessChecker()

    def _allowed(self, principal, operation: str, tenant_id: str = "t1") -> bool:
        return self.checker.check_access(tenant_id, None, "contact", operation, principal)

    def test_roles(self) -> None:
        editor = {"id": "u1", "roles": ["editor"], "tenants": ["t1"]}
        self.assertTrue(self._allowed(editor, "delete"))
        self.assertFalse(self._allowed(editor, "manage"))
        member = {"id": "u2", "roles": ["member"], "tenants": ["t1"]}
        self.assertTrue(self._allowed(member, "update"))
        self.assertFalse(self._allowed(member, "delete"))
        reader = {"id": "u3", "roles": ["readonly"], "tenants": ["t1"]}
        self.assertTrue(self._allowed(reader, "view"))
        self.assertFalse(self._allowed(reader, "create"))

    def test_owner_maps_to_admin(self) -> None:
        owner = {"id": "u1", "roles": [" Owner "], "tenants": ["t1"]}
        self.assertTrue(self._allowed(owner, "manage"))

    def test_tenant_membership(self) -> None:
        admin = {"id": "u1", "roles": ["admin"], "tenants": ["t2"]}
        self.assertFalse(self._allowed(admin, "view"))
        self.assertTrue(self._allowed(admin, "view", tenant_id="t2"))
        everywhere = {"id": "u1", "roles": ["admin"], "tenants": ["*"]}
        self.assertTrue(self._allowed(everywhere, "view", tenant_id="t9"))
        no_tenants = {"id": "u1", "roles": ["admin"]}
        self.assertFalse(self._allowed(no_tenants, "view"))

    def test_anonymous_denied(self) -> None:
        self.assertFalse(self._allowed(None, "view"))
        self.assertFalse(self._allowed({"roles": ["admin"], "tenants": ["t1"]}, "view"))

    def test_superadmin(self) -> None:
        root = {"id": "root", "platform_role": "superadmin"}
        self.assertTrue(self._allowed(root, "manage", tenant_id="anything"))

    def test_unknown_role(self) -> None:
        self.assertFalse(self._allowed({"id": "u1", "roles": ["guest", 7], "tenants": ["t1"]}, "view"))

    def test_custom_role_table(self) -> None:
        checker = RoleAccessChecker({"auditor": ["view"]})
        auditor = {"id": "u1", "roles": ["auditor"], "tenants": ["t1"]}
        self.assertTrue(checker.check_access("t1", None, "contact", "view", auditor))
        admin = {"id": "u2", "roles": ["admin"], "tenants": ["t1"]}
        self.assertFalse(checker.check_access("t1", None, "contact", "view", admin))


class TestFixedCheckers(unittest.TestCase):
    def test_allow_and_deny(self) -> None:
        self.assertTrue(AllowAllAccessChecker().check_access("t1", None, "x", "manage", None))
        self.assertFalse(DenyAllAccessChecker().check_access("t1", None, "x", "view", {"id": "u1"}))

    def test_base_checker_is_abstract(self) -> None:
        with self.assertRaises(TypeError):
            AccessChecker()

        class Incomplete(AccessChecker):
            pass

        with self.assertRaises(TypeError):
            Incomplete()


if __name__ == "__main__":
    unittest.main()
