"""Pydantic schemas for run coordination files and the trigger/status protocol."""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class CamelModel(BaseModel):
    """Serialized with camelCase keys; accepts either casing on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class Checkpoint(CamelModel):
    """
    Resume position of a run.

    ``offset`` is the index of the next unprocessed record in the
    deterministic ordering; the totals cover every record before it.
    The date window is pinned here too (the lookback start for forward
    runs, the half-open range for backfill) so a resumed run reads the
    same result set even after the clock or the store has moved on.
    """

    offset: int = 0
    total_inserted: int = 0
    total_modified: int = 0
    total_unchanged: int = 0
    total_skipped: int = 0
    error_count: int = 0
    started_at: str = Field(default_factory=utc_now_iso)
    last_batch_at: str = Field(default_factory=utc_now_iso)
    window_start: str | None = None  # YYYY-MM-DD, inclusive
    window_end: str | None = None  # YYYY-MM-DD, exclusive


class LockInfo(CamelModel):
    """Contents of a run-kind lock file."""

    started_at: str = Field(default_factory=utc_now_iso)
    pid: str


class RunOptions(CamelModel):
    """Options forwarded from a trigger to the detached run."""

    months: int | None = Field(default=None, ge=1, le=120)
    fresh: bool = False
    limit: int | None = Field(default=None, ge=1)
    full: bool = False

    def to_argv(self) -> list[str]:
        argv: list[str] = []
        if self.months is not None:
            argv += ["--months", str(self.months)]
        if self.fresh:
            argv.append("--fresh")
        if self.limit is not None:
            argv += ["--limit", str(self.limit)]
        if self.full:
            argv.append("--full")
        return argv


class RunStatus(CamelModel):
    """Combined lock, log tail and session state for one run kind."""

    kind: str
    running: bool
    started_at: str | None = None
    pid: str | None = None
    lock_stale: bool = False
    session_active: bool = False
    log_tail: list[str] = Field(default_factory=list)


class StartStatus(StrEnum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


class StartResult(CamelModel):
    """Outcome of a trigger request."""

    status: StartStatus
    kind: str
    message: str
    started_at: str | None = None
    pid: str | None = None
    options: RunOptions = Field(default_factory=RunOptions)


class RunOutcome(StrEnum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ABORTED = "aborted"
    CONFLICT = "conflict"


class RunReport(CamelModel):
    """Final report of one pipeline run."""

    kind: str
    outcome: RunOutcome
    inserted: int = 0
    modified: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    processed: int = 0
    message: str | None = None
    window_start: str | None = None
    window_end: str | None = None

    @property
    def exit_code(self) -> int:
        return {
            RunOutcome.COMPLETED: 0,
            RunOutcome.INTERRUPTED: 0,
            RunOutcome.ABORTED: 1,
            RunOutcome.CONFLICT: 3,
        }[self.outcome]
