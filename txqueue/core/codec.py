"""
Codec — convert between domain values and the column values the store keeps.

Pydantic v2 handles the wire format:
  - payloads are any JSON value, encoded with pydantic-core (datetimes,
    UUIDs, enums and models serialise without custom hooks)
  - QueueConfig is stored as JSON text; timedeltas become ISO-8601 durations
  - rows coming back from either adapter are validated into Job / Queue

Column format (queues.config):
------------------------------
{
  "retry_limit": 2,
  "retry_delay": "PT0S",
  "retry_backoff": false,
  "retry_delay_max": null,
  "lease_duration": "PT15M",
  "dead_letter": null,
  "delete_on_complete": false,
  "poll_interval": "PT2S"
}
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic_core import from_json, to_json

from txqueue.domain.models import Job, Queue, QueueConfig


def encode_payload(payload: Any) -> str:
    """Serialize a job payload to JSON text."""
    return to_json(payload).decode("utf-8")


def decode_payload(data: str | bytes | None) -> Any:
    """Deserialize JSON text to a payload. NULL → None."""
    if data is None:
        return None
    return from_json(data)


def encode_config(config: QueueConfig) -> str:
    """Serialize QueueConfig to JSON text."""
    return config.model_dump_json()


def decode_config(data: str | bytes | None) -> QueueConfig:
    """Deserialize JSON text to QueueConfig. NULL or empty → defaults."""
    if not data:
        return QueueConfig()
    return QueueConfig.model_validate_json(data)


def job_from_row(row: Mapping[str, Any]) -> Job:
    """Build a Job from a jobs-table row (payload still JSON text)."""
    values = dict(row)
    values["payload"] = decode_payload(values.get("payload"))
    return Job.model_validate(values)


def queue_from_row(row: Mapping[str, Any]) -> Queue:
    """Build a Queue handle from a queues-table row."""
    return Queue(
        name=row["name"],
        config=decode_config(row["config"]),
        created_at=row["created_at"],
    )
