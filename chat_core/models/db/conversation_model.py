import uuid

from sqlalchemy import Column, DateTime, String, Uuid, func
from sqlalchemy.orm import relationship

from chat_core.database import Base


class ConversationModel(Base):
    """SQLAlchemy model for conversations table."""

    __tablename__ = "conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(String(20), nullable=False)
    order_context_id = Column(String(64))
    # sha256 of type, order context and sorted participant ids
    participant_key = Column(String(64), nullable=False, unique=True)
    last_message_preview = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=func.now())
    last_activity_at = Column(DateTime(timezone=True), default=func.now(), index=True)
    archived_at = Column(DateTime(timezone=True))

    # Relationships
    messages = relationship("MessageModel", back_populates="conversation")
    participants = relationship("ParticipantModel", back_populates="conversation")

    # Constraints (enforced by database CHECK constraints in the migration)
    # type IN ('direct', 'order-linked', 'support')
