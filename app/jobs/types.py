from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

JobConfig = dict[str, Any]
JobStatus = Literal["pending", "running", "success", "failed"]
ParseMode = Literal["HTML", "Markdown", "MarkdownV2"]

DEFAULT_TIMEZONE = "Asia/Tehran"


@dataclass(frozen=True)
class JobTargets:
    include_user_ids: list[str] = field(default_factory=list)
    exclude_user_ids: list[str] = field(default_factory=list)
    pack_ids: list[str] = field(default_factory=list)
    final_user_ids: list[str] = field(default_factory=list)
    # base audience fell back to every known user (no includes or pack members)
    everyone: bool = False

    @property
    def is_restricted(self) -> bool:
        # No include/exclude/pack rows means the job was not targeted at all.
        return bool(self.include_user_ids or self.exclude_user_ids or self.pack_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "include_user_ids": list(self.include_user_ids),
            "exclude_user_ids": list(self.exclude_user_ids),
            "pack_ids": list(self.pack_ids),
            "final_user_ids": list(self.final_user_ids),
            "everyone": self.everyone,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> JobTargets | None:
        if raw is None:
            return None
        return cls(
            include_user_ids=[str(x) for x in raw.get("include_user_ids") or []],
            exclude_user_ids=[str(x) for x in raw.get("exclude_user_ids") or []],
            pack_ids=[str(x) for x in raw.get("pack_ids") or []],
            final_user_ids=[str(x) for x in raw.get("final_user_ids") or []],
            everyone=bool(raw.get("everyone", False)),
        )


@dataclass(frozen=True)
class JobNotification:
    telegram_user_id: str
    message: str
    parse_mode: ParseMode = "HTML"
    silent: bool = False
    reply_markup: dict[str, Any] | None = None


@dataclass
class JobResult:
    success: bool
    users_affected: int
    summary: str
    details: dict[str, Any] | None = None
    errors: list[str] | None = None
    notifications: list[JobNotification] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "users_affected": self.users_affected,
            "summary": self.summary,
            "details": self.details,
            "errors": self.errors,
            "notifications": len(self.notifications or []),
        }


@dataclass(frozen=True)
class JobContext:
    job_id: str
    job_name: str
    job_key: str
    execution_id: str
    config: JobConfig
    started_at: datetime
    targets: JobTargets | None = None
    attempt: int = 1
    max_attempts: int = 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


JobHandler = Callable[[JobContext], Awaitable[JobResult]]


@dataclass(frozen=True)
class JobDefinition:
    """Stateless description of a job, registered once at process start."""

    name: str
    display_name: str
    description: str
    default_schedule: str
    handler: JobHandler
    default_timezone: str = DEFAULT_TIMEZONE
    default_config: JobConfig = field(default_factory=dict)
    seed_on_startup: bool = True


@dataclass(frozen=True)
class JobDefaults:
    name: str
    display_name: str
    description: str
    schedule: str
    timezone: str
    config: JobConfig
