"""Unit tests for the change-history logging helpers."""

from __future__ import annotations

import json
import logging

import pytest

from change_history.config import LoggingSettings
from change_history.logging import (
    PACKAGE_LOGGER,
    JsonFormatter,
    MutationFilter,
    PlainFormatter,
    configure_logging,
    current_mutation,
    mutation_context,
)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Restore the package logger after each test."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    handlers = list(package_logger.handlers)
    level = package_logger.level
    propagate = package_logger.propagate
    try:
        yield
    finally:
        package_logger.handlers[:] = handlers
        package_logger.setLevel(level)
        package_logger.propagate = propagate


def _record(message: str) -> logging.LogRecord:
    record = logging.LogRecord("change_history.plugin", logging.INFO, __file__, 1, message, (), None)
    MutationFilter("svc", "test").filter(record)
    return record


def test_mutation_context_nests_and_restores() -> None:
    """Inner blocks extend the outer fields; exiting restores them."""
    with mutation_context(history_table="accounts_history", actor_id=None):
        with mutation_context(entity_id=3):
            assert current_mutation() == {"history_table": "accounts_history", "entity_id": "3"}
        assert current_mutation() == {"history_table": "accounts_history"}

    assert current_mutation() == {}


def test_json_formatter_includes_service_and_mutation() -> None:
    """JSON lines carry core fields, service fields and mutation fields."""
    with mutation_context(operation="update", entity_id=3):
        record = _record("Recorded update on accounts.")

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "change_history.plugin"
    assert payload["message"] == "Recorded update on accounts."
    assert payload["service"] == "svc"
    assert payload["environment"] == "test"
    assert payload["operation"] == "update"
    assert payload["entity_id"] == "3"


def test_plain_formatter_appends_sorted_mutation_fields() -> None:
    """Plain lines suffix the mutation fields as sorted key=value pairs."""
    with mutation_context(operation="remove", entity_id=9):
        record = _record("Recorded remove on accounts.")

    line = PlainFormatter().format(record)

    assert line.endswith("Recorded remove on accounts. entity_id=9 operation=remove")


def test_configure_logging_defaults_to_propagation() -> None:
    """Without stdout output the level applies and records reach the host's handlers."""
    package_logger = configure_logging(LoggingSettings(level="WARNING"))

    assert package_logger.name == "change_history"
    assert package_logger.level == logging.WARNING
    assert package_logger.propagate is True


def test_configure_logging_stdout_installs_one_handler(capsys) -> None:
    """Stdout output installs a single handler, even when configured twice."""
    configure_logging(LoggingSettings(stdout=True, json_output=True, service="svc"))
    package_logger = configure_logging(LoggingSettings(stdout=True, json_output=True, service="svc"))

    logging.getLogger("change_history.plugin").info("Tracking accounts.")

    assert len(package_logger.handlers) == 1
    assert package_logger.propagate is False
    (line,) = capsys.readouterr().out.strip().splitlines()
    assert json.loads(line)["service"] == "svc"
