import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from chat_core.errors import ConversationNotFound
from chat_core.logging_config import get_logger
from chat_core.models.api.conversations import ConversationResponse
from chat_core.models.api.participants import ParticipantResponse, ParticipantSpec
from chat_core.models.db.conversation_model import ConversationModel
from chat_core.models.db.participant_model import ParticipantModel
from chat_core.repositories.base_repository import BaseRepository, as_uuid, store_errors
from chat_core.repositories.participant_repository import ParticipantRepository

logger = get_logger(__name__)


def participant_key(
    type: str, order_context_id: Optional[str], user_ids: Iterable[str]
) -> str:
    """Identity of a conversation: type, order context and the participant set."""
    raw = json.dumps([type, order_context_id, sorted(set(user_ids))])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ConversationRepository(BaseRepository[ConversationModel, ConversationResponse]):
    """Repository for conversation operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, ConversationModel)

    async def find_or_create(
        self,
        type: str,
        order_context_id: Optional[str],
        participants: List[ParticipantSpec],
    ) -> Tuple[ConversationResponse, bool]:
        """Return the conversation for this participant set, creating it if needed.

        Commits on its own: the insert either wins the unique participant_key
        or is rolled back and the row that won is returned. Must be called
        outside of an open transaction.
        """
        key = participant_key(type, order_context_id, (p.user_id for p in participants))
        now = datetime.now(timezone.utc)
        db_model = ConversationModel(
            id=uuid.uuid4(),
            type=type,
            order_context_id=order_context_id,
            participant_key=key,
            created_at=now,
            last_activity_at=now,
        )
        seen = set()
        rows = []
        for spec in participants:
            if spec.user_id in seen:
                continue
            seen.add(spec.user_id)
            rows.append(
                ParticipantModel(
                    id=uuid.uuid4(),
                    conversation_id=db_model.id,
                    user_id=spec.user_id,
                    role=spec.role,
                    unread_count=0,
                    joined_at=now,
                )
            )

        with store_errors("create conversation"):
            try:
                self.db.add(db_model)
                self.db.add_all(rows)
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                logger.info("conversation_create_conflict", participant_key=key)
            else:
                logger.info(
                    "conversation_created",
                    conversation_id=str(db_model.id),
                    type=type,
                    participants=len(rows),
                )
                return self._to_pydantic(db_model), True

        existing = await self.get_by_participant_key(key)
        if existing is None:
            raise ConversationNotFound(
                f"Conversation for key {key} conflicted but could not be read back"
            )
        return existing, False

    async def get_by_participant_key(self, key: str) -> Optional[ConversationResponse]:
        query = select(self.model_class).where(self.model_class.participant_key == key)
        with store_errors("get conversation by key"):
            result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        include_archived: bool = False,
    ) -> List[Tuple[ConversationResponse, ParticipantResponse]]:
        """The user's conversations, most recent activity first, with their own row."""
        query = (
            select(self.model_class, ParticipantModel)
            .join(ParticipantModel, ParticipantModel.conversation_id == self.model_class.id)
            .where(ParticipantModel.user_id == user_id)
        )
        if not include_archived:
            query = query.where(self.model_class.archived_at.is_(None))
        query = (
            query.order_by(
                self.model_class.last_activity_at.desc(), self.model_class.id.desc()
            )
            .limit(limit)
            .offset(offset)
        )
        with store_errors("list conversations"):
            result = await self.db.execute(query)
        participants = ParticipantRepository(self.db)
        return [
            (self._to_pydantic(conversation), participants._to_pydantic(participant))
            for conversation, participant in result.all()
        ]

    async def archive(self, conversation_id: Any) -> ConversationResponse:
        """Hide a conversation from default listings; a new message revives it."""
        conversation_id = as_uuid(conversation_id)
        with store_errors("archive conversation"):
            result = await self.db.execute(
                update(self.model_class)
                .where(self.model_class.id == conversation_id)
                .values(archived_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 0:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        conversation = await self.get_by_id(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation

    def _to_pydantic(self, db_model: Any) -> ConversationResponse:
        """Convert SQLAlchemy ConversationModel to Pydantic ConversationResponse."""
        return ConversationResponse(
            id=db_model.id,
            type=db_model.type,
            order_context_id=db_model.order_context_id,
            created_at=db_model.created_at,
            last_activity_at=db_model.last_activity_at,
            last_message_preview=db_model.last_message_preview,
            archived_at=db_model.archived_at,
        )
