"""
Tests for password credential hashing.
"""

import pytest

from authcentral.auth import CredentialStore
from authcentral.errors import CorruptCredentialError, ValidationError


class TestCredentialStore:
    """Test cases for CredentialStore."""

    @pytest.fixture
    def store(self):
        return CredentialStore(rounds=4)

    def test_hash_then_verify(self, store):
        """Test a hashed password verifies."""
        stored = store.hash("s3cret-password")
        assert stored != "s3cret-password"
        assert store.verify("s3cret-password", stored) is True

    def test_wrong_password_rejected(self, store):
        stored = store.hash("s3cret-password")
        assert store.verify("s3cret-passwore", stored) is False

    def test_hashes_are_salted(self, store):
        """Test the same password never yields the same hash twice."""
        assert store.hash("same-password") != store.hash("same-password")

    def test_configured_cost_is_used(self, store):
        assert store.hash("any-password").startswith("$2b$04$")

    def test_malformed_stored_hash_is_corrupt(self, store):
        """Test an unparseable hash is reported, not treated as a mismatch."""
        with pytest.raises(CorruptCredentialError):
            store.verify("whatever", "not-a-bcrypt-hash")

    def test_nul_byte_rejected_on_hash(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.hash("abc\x00def-ghi")
        assert "password" in exc_info.value.fields

    def test_nul_byte_never_verifies(self, store):
        stored = store.hash("abcdefgh")
        assert store.verify("abcdefgh\x00", stored) is False

    def test_dummy_verify_always_fails(self, store):
        assert store.verify_dummy("authcentral-dummy") is False
        assert store.verify_dummy("anything") is False

    def test_unicode_password(self, store):
        stored = store.hash("pässwörd-ünïcode")
        assert store.verify("pässwörd-ünïcode", stored) is True
