"""
Test suite for identity resolution and role checks
"""

import pytest

from microfinance.errors import AccessDeniedError, DuplicateKeyError, ValidationError
from microfinance.identity import UserDirectory, UserIdentity, ensure_approver, ensure_owner
from microfinance.storage import InMemoryStorage

from support import ADMIN, OFFICER, OTHER_OFFICER


class TestUserDirectory:
    """Test registration and header resolution"""

    def setup_method(self):
        self.users = UserDirectory(InMemoryStorage())

    def test_register_and_resolve(self):
        self.users.register_user("  JKollie@MFI.test ", "jkollie", "Loan Officer",
                                 branch_name="Monrovia Central", branch_code="MC01")
        identity = self.users.resolve("jkollie@mfi.test")

        assert identity.email == "jkollie@mfi.test"
        assert identity.role == "loan officer"
        assert identity.is_restricted
        assert not identity.is_approver

    def test_unknown_or_missing_email_is_anonymous(self):
        assert self.users.resolve(None) is None
        assert self.users.resolve("   ") is None
        assert self.users.resolve("nobody@mfi.test") is None

    def test_duplicate_email_rejected(self):
        self.users.register_user("a@mfi.test", "alpha", "admin")
        with pytest.raises(DuplicateKeyError):
            self.users.register_user("A@mfi.test", "alpha2", "admin")

    def test_duplicate_username_rejected(self):
        self.users.register_user("a@mfi.test", "alpha", "admin")
        with pytest.raises(DuplicateKeyError):
            self.users.register_user("b@mfi.test", "alpha", "admin")

    def test_required_fields(self):
        with pytest.raises(ValidationError) as exc:
            self.users.register_user("", "", "")
        assert len(exc.value.reasons) == 3


class TestRoleChecks:
    """Test ownership and approver guards"""

    def test_approver_roles(self):
        assert ADMIN.is_approver
        head = UserIdentity(email="head@mfi.test", username="head", role="Branch Head")
        assert head.is_approver
        ensure_approver(head, "approve loans")

    def test_non_approver_rejected(self):
        with pytest.raises(AccessDeniedError):
            ensure_approver(OFFICER, "approve loans")
        with pytest.raises(AccessDeniedError):
            ensure_approver(None, "approve loans")

    def test_owner_by_email_or_officer_name(self):
        assert OFFICER.owns("OFFICER@mfi.test", None)
        assert OFFICER.owns(None, " JKollie ")
        assert not OFFICER.owns("someone@mfi.test", "mdoe")

    def test_restricted_non_owner_rejected(self):
        with pytest.raises(AccessDeniedError):
            ensure_owner(OTHER_OFFICER, OFFICER.email, OFFICER.username, resource="loan")

    def test_unrestricted_and_anonymous_pass(self):
        ensure_owner(ADMIN, OFFICER.email, OFFICER.username)
        ensure_owner(None, OFFICER.email, OFFICER.username)
