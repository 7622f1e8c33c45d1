"""
Tests for secret redaction in log output.
"""

import json
import logging
import sys

import pytest

from mcpgate.core.logging import (
    REDACTED,
    ColoredFormatter,
    JSONFormatter,
    SecretRedactingFilter,
    get_logger,
    redact_text,
    register_secret,
    unregister_secret,
)

TOKEN = "apify_api_" + "Q1w2E3r4T5y6U7i8O9p0A1s2"


def _record(msg, *args, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("mcpgate.test", logging.ERROR, __file__, 1, msg, args, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRedactText:
    def test_token_shapes_are_redacted(self):
        text = f"token {TOKEN} header Bearer abc.def-ghi url ?token=abcdefgh1234"

        redacted = redact_text(text)

        assert TOKEN not in redacted
        assert "abc.def-ghi" not in redacted
        assert "abcdefgh1234" not in redacted

    def test_registered_secret_is_redacted_until_released(self):
        secret = "opaque-secret-value"
        register_secret(secret)
        assert redact_text(f"value={secret}") == f"value={REDACTED}"

        unregister_secret(secret)
        assert redact_text(f"value={secret}") == f"value={secret}"

    def test_registration_is_reference_counted(self):
        secret = "shared-credential-value"
        register_secret(secret)
        register_secret(secret)
        unregister_secret(secret)

        assert secret not in redact_text(secret)

        unregister_secret(secret)
        assert redact_text(secret) == secret


class TestSecretRedactingFilter:
    def test_message_args_and_extras_are_scrubbed(self):
        record = _record("deploying with %s", TOKEN, upstream=f"Authorization: Bearer {TOKEN}")

        SecretRedactingFilter().filter(record)

        assert TOKEN not in record.getMessage()
        assert TOKEN not in record.upstream

    def test_exception_text_is_scrubbed(self):
        try:
            raise RuntimeError(f"platform rejected {TOKEN}")
        except RuntimeError:
            record = _record("failed", exc_info=sys.exc_info())

        SecretRedactingFilter().filter(record)

        assert record.exc_info is None
        assert "RuntimeError" in record.exc_text
        assert TOKEN not in record.exc_text


class TestFormatters:
    def test_json_formatter_redacts_and_includes_extras(self):
        record = _record("charge for %s", TOKEN, billing_event="deployment")

        payload = json.loads(JSONFormatter().format(record))

        assert payload["billing_event"] == "deployment"
        assert TOKEN not in json.dumps(payload)

    def test_colored_formatter_redacts_without_filter(self):
        line = ColoredFormatter(use_colors=False).format(_record(f"raw {TOKEN}"))

        assert TOKEN not in line
        assert REDACTED in line


@pytest.mark.parametrize("name", ["services.router", "mcpgate.services.router"])
def test_get_logger_namespaces(name):
    assert get_logger(name).name == "mcpgate.services.router"
