"""
Tests for hosting credential checks.
"""

import pytest
from pydantic import SecretStr

from mcpgate.core.exceptions import CredentialError
from mcpgate.core.logging import REDACTED, redact_text
from mcpgate.services.credentials import check_credential, fingerprint, registered_secret, scrub

PATTERN = r"^apify_api_[A-Za-z0-9]{20,64}$"


class TestCheckCredential:
    def test_well_formed_credential_is_returned(self, credential):
        assert check_credential(SecretStr(f"  {credential} "), PATTERN) == credential

    @pytest.mark.parametrize("value", [None, SecretStr(""), SecretStr("   ")])
    def test_missing_credential(self, value):
        with pytest.raises(CredentialError, match="required"):
            check_credential(value, PATTERN)

    def test_malformed_credential_is_not_echoed(self):
        bad = "apify_api_short!"

        with pytest.raises(CredentialError) as exc_info:
            check_credential(SecretStr(bad), PATTERN)

        assert bad not in exc_info.value.message
        assert exc_info.value.status_code == 400


class TestFingerprint:
    def test_stable_and_opaque(self, credential):
        assert fingerprint(credential) == fingerprint(credential)
        assert credential not in fingerprint(credential)
        assert fingerprint(credential) != fingerprint(credential + "x")


def test_scrub_replaces_every_occurrence(credential):
    text = f"first {credential} then {credential}"

    assert scrub(text, credential) == f"first {REDACTED} then {REDACTED}"


def test_registered_secret_is_redacted_only_inside_block(credential):
    opaque = "opaque-" + credential[-12:]

    with registered_secret(opaque):
        assert opaque not in redact_text(f"token={opaque}")

    assert redact_text(opaque) == opaque
