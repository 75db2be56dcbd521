"""
Schema manager — create the queue's tables and indexes if they are missing.

Every statement is "create if not exists", so ensure_schema() is safe to call
from many processes at once. PostgreSQL can still report a lost race on its
catalog (duplicate table/object or a unique violation on pg_type); those
errors mean another process created the object first and are ignored.
"""

from __future__ import annotations

import logging

from txqueue.core.plans import plans_for
from txqueue.domain.errors import ExecutionError, SchemaError
from txqueue.ports.sql import SqlExecutionPort

logger = logging.getLogger(__name__)

# duplicate_table, duplicate_object, unique_violation
_ALREADY_EXISTS = frozenset({"42P07", "42710", "23505"})

# insufficient_privilege; SQLite read-only / authorizer denials
_NO_PRIVILEGE = frozenset({"42501", "SQLITE_READONLY", "SQLITE_AUTH", "SQLITE_PERM"})


async def ensure_schema(port: SqlExecutionPort) -> None:
    """
    Create the queues, subscriptions and jobs tables plus their indexes.

    Raises
    ------
    SchemaError     if the store denies DDL privileges (fatal)
    ExecutionError  for any other store failure
    """
    plans = plans_for(port.dialect)
    for statement in plans.ddl:
        try:
            await port.execute(statement)
        except ExecutionError as exc:
            if exc.code in _ALREADY_EXISTS:
                logger.debug("Schema object created concurrently: %s", exc)
                continue
            if exc.code in _NO_PRIVILEGE or _is_readonly(exc):
                raise SchemaError("Cannot create txqueue schema", exc) from exc
            raise
    logger.info("txqueue schema ready (%s)", plans.dialect)


def _is_readonly(exc: ExecutionError) -> bool:
    return "readonly" in exc.message.lower() or "read-only" in exc.message.lower()
