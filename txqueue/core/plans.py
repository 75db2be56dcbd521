"""
Plans — every SQL statement txqueue issues, rendered for one dialect.

Statements are written once with numbered placeholders ($1, $2, ...). The two
supported dialects differ only in:
  - column types in the DDL (jsonb/timestamptz vs TEXT)
  - a ::jsonb cast on JSON parameters
  - FOR UPDATE SKIP LOCKED on the lease subquery (PostgreSQL only; SQLite
    takes the database write lock for the whole UPDATE statement)

Every state transition is one conditional statement. Transitions out of
"active" are fenced on (id, state = 'active', attempt) so a worker whose lease
was reclaimed and re-leased elsewhere cannot overwrite the newer attempt.
"""

from __future__ import annotations

import dataclasses
import functools

SQLITE = "sqlite"
POSTGRESQL = "postgresql"

JOB_COLUMNS: tuple[str, ...] = (
    "id",
    "topic",
    "queue_name",
    "payload",
    "state",
    "priority",
    "attempt",
    "max_attempts",
    "visible_after",
    "lease_expiry",
    "last_error",
    "created_at",
    "started_at",
    "finished_at",
)

_COLS = ", ".join(JOB_COLUMNS)
_STATES = "'created', 'active', 'completed', 'failed', 'dead'"

_POSTGRES_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS queues (
        name        text PRIMARY KEY,
        config      jsonb NOT NULL,
        created_at  timestamptz NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        topic       text NOT NULL,
        queue_name  text NOT NULL REFERENCES queues (name) ON DELETE CASCADE,
        created_at  timestamptz NOT NULL,
        PRIMARY KEY (topic, queue_name)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS jobs (
        id            text PRIMARY KEY,
        topic         text NOT NULL,
        queue_name    text,
        payload       jsonb NOT NULL,
        state         text NOT NULL DEFAULT 'created' CHECK (state IN ({_STATES})),
        priority      integer NOT NULL DEFAULT 0,
        attempt       integer NOT NULL DEFAULT 0,
        max_attempts  integer NOT NULL,
        retry_limit   integer,
        visible_after timestamptz NOT NULL,
        lease_expiry  timestamptz,
        last_error    text,
        created_at    timestamptz NOT NULL,
        started_at    timestamptz,
        finished_at   timestamptz,
        CHECK (state <> 'active' OR lease_expiry IS NOT NULL)
    )
    """,
    "CREATE INDEX IF NOT EXISTS jobs_fetch_idx"
    " ON jobs (queue_name, state, priority, visible_after)",
    "CREATE INDEX IF NOT EXISTS jobs_lease_idx ON jobs (state, lease_expiry)",
    "CREATE INDEX IF NOT EXISTS jobs_unrouted_idx ON jobs (topic)"
    " WHERE queue_name IS NULL",
)

_SQLITE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS queues (
        name        TEXT PRIMARY KEY,
        config      TEXT NOT NULL,
        created_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        topic       TEXT NOT NULL,
        queue_name  TEXT NOT NULL REFERENCES queues (name) ON DELETE CASCADE,
        created_at  TEXT NOT NULL,
        PRIMARY KEY (topic, queue_name)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS jobs (
        id            TEXT PRIMARY KEY,
        topic         TEXT NOT NULL,
        queue_name    TEXT,
        payload       TEXT NOT NULL,
        state         TEXT NOT NULL DEFAULT 'created' CHECK (state IN ({_STATES})),
        priority      INTEGER NOT NULL DEFAULT 0,
        attempt       INTEGER NOT NULL DEFAULT 0,
        max_attempts  INTEGER NOT NULL,
        retry_limit   INTEGER,
        visible_after TEXT NOT NULL,
        lease_expiry  TEXT,
        last_error    TEXT,
        created_at    TEXT NOT NULL,
        started_at    TEXT,
        finished_at   TEXT,
        CHECK (state <> 'active' OR lease_expiry IS NOT NULL)
    )
    """,
    "CREATE INDEX IF NOT EXISTS jobs_fetch_idx"
    " ON jobs (queue_name, state, priority, visible_after)",
    "CREATE INDEX IF NOT EXISTS jobs_lease_idx ON jobs (state, lease_expiry)",
    "CREATE INDEX IF NOT EXISTS jobs_unrouted_idx ON jobs (topic)"
    " WHERE queue_name IS NULL",
)


@dataclasses.dataclass(frozen=True)
class Plans:
    """Statement texts for one dialect. Obtain instances via plans_for()."""

    dialect: str
    ddl: tuple[str, ...]
    json_cast: str
    skip_locked: str

    # ------------------------------------------------------------------ #
    # Queues and subscriptions                                             #
    # ------------------------------------------------------------------ #

    @property
    def create_queue(self) -> str:
        return (
            "INSERT INTO queues (name, config, created_at)"
            f" VALUES ($1, $2{self.json_cast}, $3)"
            " ON CONFLICT (name) DO NOTHING"
        )

    @property
    def get_queue(self) -> str:
        return "SELECT name, config, created_at FROM queues WHERE name = $1"

    @property
    def queue_size(self) -> str:
        return (
            "SELECT COUNT(*) AS size FROM jobs"
            " WHERE queue_name = $1 AND state = 'created'"
        )

    @property
    def subscribe(self) -> str:
        return (
            "INSERT INTO subscriptions (topic, queue_name, created_at)"
            " VALUES ($1, $2, $3)"
            " ON CONFLICT (topic, queue_name) DO NOTHING"
        )

    @property
    def claim_unrouted(self) -> str:
        # $1 topic, $2 queue, $3 max_attempts of that queue
        return (
            "UPDATE jobs SET queue_name = $2,"
            " max_attempts = COALESCE(retry_limit + 1, $3)"
            " WHERE topic = $1 AND queue_name IS NULL AND state = 'created'"
        )

    @property
    def stranded_topics(self) -> str:
        # unrouted jobs whose topic has gained a subscription since publish
        return (
            "SELECT j.topic AS topic, MIN(s.queue_name) AS queue_name"
            " FROM jobs j JOIN subscriptions s ON s.topic = j.topic"
            " WHERE j.queue_name IS NULL AND j.state = 'created'"
            " GROUP BY j.topic"
        )

    @property
    def unsubscribe(self) -> str:
        return "DELETE FROM subscriptions WHERE topic = $1 AND queue_name = $2"

    @property
    def subscribed_queues(self) -> str:
        return (
            "SELECT q.name AS name, q.config AS config, q.created_at AS created_at"
            " FROM subscriptions s JOIN queues q ON q.name = s.queue_name"
            " WHERE s.topic = $1 ORDER BY q.name"
        )

    # ------------------------------------------------------------------ #
    # Jobs                                                                 #
    # ------------------------------------------------------------------ #

    def insert_jobs(self, count: int) -> str:
        """Multi-row insert; each row binds 9 consecutive parameters."""
        if count < 1:
            raise ValueError("count must be >= 1")
        rows = []
        for i in range(count):
            n = i * 9
            rows.append(
                f"(${n + 1}, ${n + 2}, ${n + 3}, ${n + 4}{self.json_cast},"
                f" 'created', ${n + 5}, 0, ${n + 6}, ${n + 7}, ${n + 8}, ${n + 9})"
            )
        return (
            "INSERT INTO jobs (id, topic, queue_name, payload, state, priority,"
            " attempt, max_attempts, retry_limit, visible_after, created_at) VALUES "
            + ", ".join(rows)
            + " RETURNING id"
        )

    @property
    def lease(self) -> str:
        # $1 queue, $2 now, $3 lease expiry, $4 batch size
        return (
            "WITH next AS ("
            " SELECT id FROM jobs"
            " WHERE queue_name = $1 AND state = 'created' AND visible_after <= $2"
            " ORDER BY priority, created_at, id"
            f" LIMIT $4{self.skip_locked}"
            ")"
            " UPDATE jobs SET state = 'active', attempt = attempt + 1,"
            " started_at = $2, lease_expiry = $3"
            " WHERE id IN (SELECT id FROM next)"
            f" RETURNING {_COLS}"
        )

    @property
    def complete(self) -> str:
        return (
            "UPDATE jobs SET state = 'completed', finished_at = $3,"
            " lease_expiry = NULL"
            " WHERE id = $1 AND state = 'active' AND attempt = $2"
        )

    @property
    def complete_delete(self) -> str:
        return "DELETE FROM jobs WHERE id = $1 AND state = 'active' AND attempt = $2"

    def retry(self, *, expired_only: bool = False) -> str:
        # $1 id, $2 attempt, $3 visible_after, $4 last_error, [$5 now]
        text = (
            "UPDATE jobs SET state = 'created', visible_after = $3,"
            " lease_expiry = NULL, last_error = $4"
            " WHERE id = $1 AND state = 'active' AND attempt = $2"
        )
        if expired_only:
            text += " AND lease_expiry < $5"
        return text

    def finish(self, *, expired_only: bool = False) -> str:
        # $1 id, $2 attempt, $3 terminal state, $4 finished_at, $5 last_error, [$6 now]
        text = (
            "UPDATE jobs SET state = $3, finished_at = $4,"
            " lease_expiry = NULL, last_error = $5"
            " WHERE id = $1 AND state = 'active' AND attempt = $2"
        )
        if expired_only:
            text += " AND lease_expiry < $6"
        return text

    @property
    def extend_lease(self) -> str:
        return (
            "UPDATE jobs SET lease_expiry = $3"
            " WHERE id = $1 AND state = 'active' AND attempt = $2"
        )

    @property
    def get_job(self) -> str:
        return f"SELECT {_COLS} FROM jobs WHERE id = $1"

    @property
    def expired(self) -> str:
        cols = ", ".join(f"j.{c}" for c in JOB_COLUMNS)
        return (
            f"SELECT {cols}, q.config AS queue_config"
            " FROM jobs j LEFT JOIN queues q ON q.name = j.queue_name"
            " WHERE j.state = 'active' AND j.lease_expiry < $1"
            " ORDER BY j.lease_expiry LIMIT $2"
        )

    @property
    def purge(self) -> str:
        return (
            "DELETE FROM jobs"
            " WHERE state IN ('completed', 'failed', 'dead') AND finished_at < $1"
        )


@functools.cache
def plans_for(dialect: str) -> Plans:
    """Return the Plans for a port's dialect. Raises ValueError if unknown."""
    match dialect:
        case "postgresql":
            return Plans(
                dialect=POSTGRESQL,
                ddl=_POSTGRES_DDL,
                json_cast="::jsonb",
                skip_locked=" FOR UPDATE SKIP LOCKED",
            )
        case "sqlite":
            return Plans(dialect=SQLITE, ddl=_SQLITE_DDL, json_cast="", skip_locked="")
        case _:
            raise ValueError(f"unsupported SQL dialect {dialect!r}")
