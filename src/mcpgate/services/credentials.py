"""Hosting credential handling.

A credential is checked for syntax only, fingerprinted for rate limiting and
ownership records, and registered with the log redactor for as long as it is
in use. The raw value never leaves this module in any message.
"""

import hashlib
import re
from collections.abc import Iterator
from contextlib import contextmanager

from pydantic import SecretStr

from ..core.exceptions import CredentialError
from ..core.logging import REDACTED, register_secret, unregister_secret


def fingerprint(credential: str) -> str:
    """Stable, non-reversible identifier for a credential."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


def check_credential(credential: SecretStr | None, pattern: str) -> str:
    """Return the raw credential if it is present and well-formed.

    Raises:
        CredentialError: Missing or malformed. The message never contains the value.
    """
    if credential is None:
        raise CredentialError("a hosting credential is required for deployment")
    raw = credential.get_secret_value().strip()
    if not raw:
        raise CredentialError("a hosting credential is required for deployment")
    if not re.fullmatch(pattern, raw):
        raise CredentialError("hosting credential does not have the expected format")
    return raw


def scrub(text: str, *secrets: str) -> str:
    """Replace every occurrence of ``secrets`` in ``text``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


@contextmanager
def registered_secret(credential: str) -> Iterator[str]:
    """Keep ``credential`` out of every log line while the block runs."""
    register_secret(credential)
    try:
        yield credential
    finally:
        unregister_secret(credential)
