import uuid

from sqlalchemy import BigInteger, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base_class import Base


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    job_key: Mapped[str] = mapped_column(String(128), nullable=False)  # registry key of the handler
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default="coded")

    # display/meta
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # schedule
    schedule: Mapped[str] = mapped_column(String(128), nullable=False)  # cron expression
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="Asia/Tehran")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    config_json: Mapped[str | None] = mapped_column("config", Text, nullable=True)  # JSON string

    # epoch millis
    last_run_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    next_run_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
