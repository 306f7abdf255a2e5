from sqlalchemy import BigInteger, Column, Integer, ForeignKey, String, UniqueConstraint

from app.db.base_class import Base


class ScheduledJobTargetUser(Base):
    __tablename__ = "scheduled_job_target_users"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("scheduled_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    telegram_user_id = Column(String(64), nullable=False)

    # mode: "include" | "exclude"
    mode = Column(String(16), nullable=False, default="include")

    __table_args__ = (
        UniqueConstraint("job_id", "telegram_user_id", "mode", name="uq_target_user_job_user_mode"),
    )


class ScheduledJobTargetPack(Base):
    __tablename__ = "scheduled_job_target_packs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("scheduled_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    pack_id = Column(String(64), nullable=False)
    mode = Column(String(16), nullable=False, default="include")

    __table_args__ = (
        UniqueConstraint("job_id", "pack_id", name="uq_target_pack_job_pack"),
    )
