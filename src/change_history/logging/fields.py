"""Canonical structured logging field names."""

TIMESTAMP = "timestamp"
LEVEL = "level"
LOGGER = "logger"
MESSAGE = "message"

# History capture fields.
HISTORY_TABLE = "history_table"
SOURCE_TABLE = "source_table"
OPERATION = "operation"
ENTITY_ID = "entity_id"
ACTOR_ID = "actor_id"

# Service-level fields.
SERVICE = "service"
ENVIRONMENT = "environment"
