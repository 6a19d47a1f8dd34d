import uuid

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import relationship

from chat_core.database import Base


class ParticipantModel(Base):
    """SQLAlchemy model for participants table."""

    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "user_id", name="uq_participants_conversation_user"
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    unread_count = Column(Integer, nullable=False, default=0)
    last_read_at = Column(DateTime(timezone=True))
    joined_at = Column(DateTime(timezone=True), default=func.now())

    # Relationships
    conversation = relationship("ConversationModel", back_populates="participants")

    # Constraints (enforced by database CHECK constraints in the migration)
    # role IN ('customer', 'driver', 'merchant', 'support', 'admin')
    # unread_count >= 0
