"""Pytest configuration for the change-history test suite."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Generator, Mapping

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))
sys.path.insert(0, str(ROOT))

from change_history import HistoryPlugin, HistorySettings, TrackingOptions  # noqa: E402
from test.helpers.models import Base  # noqa: E402

HistoryEnvFactory = Callable[..., "tuple[HistoryPlugin, sessionmaker]"]


@pytest.fixture
def sqlite_engine() -> Generator[Engine, None, None]:
    """Provide an in-memory sqlite engine and ensure cleanup.

    pysqlite's own transaction handling is switched off and BEGIN is emitted
    explicitly, otherwise SAVEPOINT rollbacks do not work.
    """
    engine = create_engine("sqlite:///:memory:")

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(connection):
        connection.exec_driver_sql("BEGIN")

    yield engine
    engine.dispose()


@pytest.fixture
def history_env(sqlite_engine: Engine) -> Generator[HistoryEnvFactory, None, None]:
    """Build a plugin tracking the given entity types on a fresh database.

    Every plugin built here is uninstalled after the test so listeners never
    leak between tests.
    """
    plugins: list[HistoryPlugin] = []

    def build(
        tracked: Mapping[type, TrackingOptions],
        *,
        settings: HistorySettings | None = None,
    ) -> tuple[HistoryPlugin, sessionmaker]:
        plugin = HistoryPlugin(settings or HistorySettings(diff_only=False))
        plugins.append(plugin)
        for entity_type, options in tracked.items():
            plugin.track(entity_type, options)
        Base.metadata.create_all(sqlite_engine)
        factory = sessionmaker(bind=sqlite_engine)
        plugin.attach(factory)
        return plugin, factory

    yield build

    for plugin in plugins:
        plugin.uninstall()
