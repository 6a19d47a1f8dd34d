import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from chat_core.database import Base


class MessageModel(Base):
    """SQLAlchemy model for messages table."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "conversation_id",
            "sender_id",
            "client_message_id",
            name="uq_messages_client_message",
        ),
        Index("idx_messages_conversation_order", "conversation_id", "created_at", "id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String(64), nullable=False)
    content_type = Column(String(20), nullable=False)
    # Plain text of the message, used for previews and search
    body = Column(Text, nullable=False, default="")
    content = Column(JSON, nullable=False)
    client_message_id = Column(String(64))
    created_at = Column(DateTime(timezone=True), nullable=False)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime(timezone=True))
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True))

    # Relationships
    conversation = relationship("ConversationModel", back_populates="messages")

    # Constraints (enforced by database CHECK constraints in the migration)
    # content_type IN ('text', 'system', 'location')
