import uuid

from sqlalchemy import BigInteger, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base_class import Base


class JobExecution(Base):
    __tablename__ = "job_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("scheduled_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending|running|success|failed

    # epoch millis
    started_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    result_json: Mapped[str | None] = mapped_column("result", Text, nullable=True)  # JSON string
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    users_affected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)  # JSON string
