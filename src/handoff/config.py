"""Runtime configuration for the job queue, worker and notifications."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from handoff.clients.droid import (
    AUTONOMY_LEVELS,
    REASONING_EFFORTS,
    DroidOptions,
    normalize_autonomy,
    normalize_reasoning_effort,
)


@dataclass(slots=True)
class WorkerSettings:
    """Background worker tunables."""

    poll_interval_seconds: float = 5.0
    max_concurrent: int = 3
    job_types: tuple[str, ...] = ()
    progress_interval_seconds: float = 30.0
    verbose: bool = False
    grace_seconds: float = 30.0
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 900.0
    stale_after_seconds: int = 0
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class NotifierSettings:
    """Progress notification throttling and formatting."""

    min_progress_interval_seconds: float = 30.0
    percent_threshold: int = 10
    show_progress_bar: bool = True
    show_job_id: bool = True


@dataclass(slots=True)
class LockSettings:
    """Conversation lock limits."""

    max_concurrent_conversations: int = 10


@dataclass(slots=True)
class DroidSettings:
    """Droid CLI invocation defaults."""

    bin: str = "droid"
    model: str | None = None
    reasoning_effort: str | None = None
    use_spec: bool = False
    spec_model: str | None = None
    spec_reasoning_effort: str | None = None
    auto: str | None = None
    max_timeout_seconds: float = 15 * 60

    def to_options(self) -> DroidOptions:
        return DroidOptions(
            bin=self.bin,
            model=self.model,
            reasoning_effort=normalize_reasoning_effort(self.reasoning_effort),
            use_spec=self.use_spec,
            spec_model=self.spec_model,
            spec_reasoning_effort=normalize_reasoning_effort(self.spec_reasoning_effort),
            auto=normalize_autonomy(self.auto),
            max_timeout_seconds=self.max_timeout_seconds,
        )


@dataclass(slots=True)
class TelegramSettings:
    """Telegram Bot API delivery."""

    bot_token: str | None = None
    api_base: str = "https://api.telegram.org"
    timeout_seconds: float = 15.0

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".handoff.db")
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    notifier: NotifierSettings = field(default_factory=NotifierSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    droid: DroidSettings = field(default_factory=DroidSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_interval = float(os.getenv("HANDOFF_JOB_PROGRESS_INTERVAL_SECONDS", "30"))
        return cls(
            db_path=db_path or Path(os.getenv("HANDOFF_DB_PATH", ".handoff.db")),
            worker=WorkerSettings(
                poll_interval_seconds=float(os.getenv("HANDOFF_JOB_POLL_INTERVAL_SECONDS", "5")),
                max_concurrent=int(os.getenv("HANDOFF_JOB_MAX_CONCURRENT", "3")),
                job_types=_env_csv("HANDOFF_JOB_TYPES"),
                progress_interval_seconds=worker_interval,
                verbose=_env_bool("HANDOFF_JOB_VERBOSE", default=False),
                grace_seconds=float(os.getenv("HANDOFF_JOB_GRACE_SECONDS", "30")),
                retry_base_seconds=float(os.getenv("HANDOFF_JOB_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=float(os.getenv("HANDOFF_JOB_RETRY_MAX_SECONDS", "900")),
                stale_after_seconds=int(os.getenv("HANDOFF_JOB_STALE_AFTER_SECONDS", "0")),
                busy_timeout_ms=int(os.getenv("HANDOFF_DB_BUSY_TIMEOUT_MS", "5000")),
            ),
            notifier=NotifierSettings(
                min_progress_interval_seconds=worker_interval,
                percent_threshold=int(os.getenv("HANDOFF_NOTIFY_PERCENT_THRESHOLD", "10")),
                show_progress_bar=_env_bool("HANDOFF_NOTIFY_SHOW_PROGRESS_BAR", default=True),
                show_job_id=_env_bool("HANDOFF_NOTIFY_SHOW_JOB_ID", default=True),
            ),
            locks=LockSettings(
                max_concurrent_conversations=int(
                    os.getenv("HANDOFF_MAX_CONCURRENT_CONVERSATIONS", "10"),
                ),
            ),
            droid=DroidSettings(
                bin=_env_str("DROID_BIN") or "droid",
                model=_env_str("DROID_MODEL"),
                reasoning_effort=_env_str("DROID_REASONING_EFFORT"),
                use_spec=_env_bool("DROID_USE_SPEC", default=False),
                spec_model=_env_str("DROID_SPEC_MODEL"),
                spec_reasoning_effort=_env_str("DROID_SPEC_REASONING_EFFORT"),
                auto=_env_str("DROID_AUTO"),
                max_timeout_seconds=int(os.getenv("DROID_MAX_TIMEOUT_MS", "900000")) / 1000,
            ),
            telegram=TelegramSettings(
                bot_token=_env_str("HANDOFF_TELEGRAM_BOT_TOKEN"),
                api_base=os.getenv("HANDOFF_TELEGRAM_API_BASE", "https://api.telegram.org"),
                timeout_seconds=float(os.getenv("HANDOFF_TELEGRAM_TIMEOUT_SECONDS", "15")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        worker = self.worker
        if worker.poll_interval_seconds <= 0:
            raise ValueError("HANDOFF_JOB_POLL_INTERVAL_SECONDS must be > 0.")
        if worker.max_concurrent < 1:
            raise ValueError("HANDOFF_JOB_MAX_CONCURRENT must be >= 1.")
        if worker.progress_interval_seconds < 0:
            raise ValueError("HANDOFF_JOB_PROGRESS_INTERVAL_SECONDS must be >= 0.")
        if worker.grace_seconds < 0:
            raise ValueError("HANDOFF_JOB_GRACE_SECONDS must be >= 0.")
        if worker.retry_base_seconds <= 0:
            raise ValueError("HANDOFF_JOB_RETRY_BASE_SECONDS must be > 0.")
        if worker.retry_max_seconds < worker.retry_base_seconds:
            raise ValueError(
                "HANDOFF_JOB_RETRY_MAX_SECONDS must be >= HANDOFF_JOB_RETRY_BASE_SECONDS.",
            )
        if worker.stale_after_seconds < 0:
            raise ValueError("HANDOFF_JOB_STALE_AFTER_SECONDS must be >= 0.")
        if worker.busy_timeout_ms <= 0:
            raise ValueError("HANDOFF_DB_BUSY_TIMEOUT_MS must be > 0.")
        if not 1 <= self.notifier.percent_threshold <= 100:
            raise ValueError("HANDOFF_NOTIFY_PERCENT_THRESHOLD must be between 1 and 100.")
        if self.locks.max_concurrent_conversations < 1:
            raise ValueError("HANDOFF_MAX_CONCURRENT_CONVERSATIONS must be >= 1.")

        droid = self.droid
        if droid.reasoning_effort and droid.reasoning_effort.lower() not in REASONING_EFFORTS:
            raise ValueError(
                f"Invalid DROID_REASONING_EFFORT: {droid.reasoning_effort!r}. "
                f"Expected one of: {', '.join(sorted(REASONING_EFFORTS))}.",
            )
        if (
            droid.spec_reasoning_effort
            and droid.spec_reasoning_effort.lower() not in REASONING_EFFORTS
        ):
            raise ValueError(
                f"Invalid DROID_SPEC_REASONING_EFFORT: {droid.spec_reasoning_effort!r}.",
            )
        if droid.auto and droid.auto.lower() not in AUTONOMY_LEVELS:
            raise ValueError(
                f"Invalid DROID_AUTO: {droid.auto!r}. "
                f"Expected one of: {', '.join(sorted(AUTONOMY_LEVELS))}.",
            )
        if droid.max_timeout_seconds <= 0:
            raise ValueError("DROID_MAX_TIMEOUT_MS must be > 0.")


def _env_str(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
