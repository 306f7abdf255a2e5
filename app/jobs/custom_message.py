from __future__ import annotations

from dataclasses import dataclass

from app.jobs.lifecycle import ExecutionHooks, define_job
from app.jobs.types import JobConfig, JobContext, JobDefinition, JobNotification, JobResult, ParseMode

CUSTOM_MESSAGE = "custom-message"

_PARSE_MODES = ("HTML", "Markdown", "MarkdownV2")


@dataclass(frozen=True)
class CustomMessageConfig:
    message: str = ""
    parse_mode: ParseMode = "HTML"
    silent: bool = False

    @classmethod
    def from_config(cls, config: JobConfig) -> CustomMessageConfig:
        parse_mode = config.get("parse_mode") or "HTML"
        return cls(
            message=str(config.get("message") or ""),
            parse_mode=parse_mode if parse_mode in _PARSE_MODES else "HTML",
            silent=bool(config.get("silent", False)),
        )


def build_custom_message_job(hooks: ExecutionHooks) -> JobDefinition:
    async def execute(context: JobContext) -> JobResult:
        config = CustomMessageConfig.from_config(context.config)
        if not config.message.strip():
            return JobResult(
                success=False,
                users_affected=0,
                summary="Custom message is empty",
                errors=["Custom message text is required"],
            )

        recipients = context.targets.final_user_ids if context.targets else []
        notifications = [
            JobNotification(
                telegram_user_id=uid,
                message=config.message,
                parse_mode=config.parse_mode,
                silent=config.silent,
            )
            for uid in recipients
        ]
        return JobResult(
            success=True,
            users_affected=len(notifications),
            summary=f"Prepared {len(notifications)} custom notifications",
            notifications=notifications,
        )

    # Records for this job are created by operators, never seeded.
    return define_job(
        name=CUSTOM_MESSAGE,
        display_name="✉️ Custom Message",
        description="Send a custom message to targeted users",
        default_schedule="0 9 * * *",
        default_timezone="Asia/Tehran",
        default_config={"message": ""},
        execute=execute,
        hooks=hooks,
        seed_on_startup=False,
    )
