from sqlalchemy import BigInteger, Column, Integer, String, UniqueConstraint

from app.db.base_class import Base


class UserPackAssignment(Base):
    __tablename__ = "user_pack_assignments"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    telegram_user_id = Column(String(64), nullable=False, index=True)
    pack_id = Column(String(64), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("telegram_user_id", "pack_id", name="uq_user_pack"),
    )
