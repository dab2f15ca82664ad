"""
Модель Referral: материализованные рёбра реферального дерева
"""
from sqlalchemy import BigInteger, Column, DateTime, Integer, Index, UniqueConstraint
from shared.database import Base, utcnow


class Referral(Base):
    """Рефералы (уровень 1 = прямой пригласитель)"""
    __tablename__ = "referrals"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)  # Кого пригласили
    inviter_id = Column(BigInteger, nullable=False, index=True)  # Предок на уровне level
    level = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'level', name='uq_referral_user_level'),
        Index('idx_referral_inviter_level', 'inviter_id', 'level'),
    )
