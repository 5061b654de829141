from __future__ import annotations

import logging

from learnsync.logging_config import RedactSecretsFilter, configure_logging


def _record(message: str, *args: object) -> logging.LogRecord:
    return logging.LogRecord("learnsync.identity", logging.INFO, __file__, 1, message, args, None)


def test_filter_masks_bearer_tokens_and_passwords() -> None:
    record = _record("calling %s with Bearer abc.def-123 password=hunter2", "token endpoint")

    assert RedactSecretsFilter().filter(record) is True
    assert record.getMessage() == "calling token endpoint with Bearer *** password=***"


def test_filter_leaves_plain_messages_alone() -> None:
    record = _record("user %s signed in", "u-1")

    RedactSecretsFilter().filter(record)

    assert record.args == ("u-1",)


def test_configure_logging_respects_overrides(monkeypatch) -> None:
    monkeypatch.setenv("LEARNSYNC_TELEMETRY_LOG", "0")

    configure_logging("debug")

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("learnsync.telemetry").level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING
