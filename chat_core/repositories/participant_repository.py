import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from chat_core.errors import NotFound
from chat_core.models.api.participants import ParticipantResponse, ParticipantSpec
from chat_core.models.db.participant_model import ParticipantModel
from chat_core.repositories.base_repository import BaseRepository, as_uuid, store_errors


class ParticipantRepository(BaseRepository[ParticipantModel, ParticipantResponse]):
    """Participants of each conversation and their unread counters.

    Counters are only changed through single UPDATE statements so that
    concurrent increments and resets serialize on the row lock.
    """

    def __init__(self, db: AsyncSession):
        super().__init__(db, ParticipantModel)

    async def ensure_participants(
        self, conversation_id: Any, participants: Iterable[ParticipantSpec]
    ) -> List[ParticipantResponse]:
        """Add the participants that are not in the conversation yet."""
        conversation_id = as_uuid(conversation_id)
        wanted: Dict[str, ParticipantSpec] = {}
        for spec in participants:
            wanted.setdefault(spec.user_id, spec)

        existing = {p.user_id for p in await self.list_for_conversation(conversation_id)}
        now = datetime.now(timezone.utc)
        for user_id, spec in wanted.items():
            if user_id in existing:
                continue
            self.db.add(
                ParticipantModel(
                    id=uuid.uuid4(),
                    conversation_id=conversation_id,
                    user_id=user_id,
                    role=spec.role,
                    unread_count=0,
                    last_read_at=None,
                    joined_at=now,
                )
            )
        with store_errors("ensure participants"):
            await self.db.flush()
        return await self.list_for_conversation(conversation_id)

    async def on_message_appended(
        self, conversation_id: Any, sender_id: str
    ) -> List[ParticipantResponse]:
        """Increment unread for everyone but the sender; return the bumped rows."""
        conversation_id = as_uuid(conversation_id)
        with store_errors("increment unread"):
            await self.db.execute(
                update(self.model_class)
                .where(
                    self.model_class.conversation_id == conversation_id,
                    self.model_class.user_id != sender_id,
                )
                .values(unread_count=self.model_class.unread_count + 1)
                .execution_options(synchronize_session=False)
            )
        participants = await self.list_for_conversation(conversation_id)
        return [p for p in participants if p.user_id != sender_id]

    async def mark_read(self, conversation_id: Any, user_id: str) -> ParticipantResponse:
        """Reset one participant's counter and stamp last_read_at."""
        conversation_id = as_uuid(conversation_id)
        with store_errors("mark read"):
            result = await self.db.execute(
                update(self.model_class)
                .where(
                    self.model_class.conversation_id == conversation_id,
                    self.model_class.user_id == user_id,
                )
                .values(unread_count=0, last_read_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 0:
            raise NotFound(
                f"User {user_id} is not a participant of conversation {conversation_id}"
            )
        participant = await self.get(conversation_id, user_id)
        if participant is None:
            raise NotFound(f"Participant {user_id} disappeared during mark read")
        return participant

    async def get(self, conversation_id: Any, user_id: str) -> Optional[ParticipantResponse]:
        query = (
            select(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.user_id == user_id,
            )
            .execution_options(populate_existing=True)
        )
        with store_errors("get participant"):
            result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    async def list_for_conversation(self, conversation_id: Any) -> List[ParticipantResponse]:
        """Get all participants for a conversation."""
        query = (
            select(self.model_class)
            .where(self.model_class.conversation_id == as_uuid(conversation_id))
            .order_by(self.model_class.joined_at, self.model_class.user_id)
            .execution_options(populate_existing=True)
        )
        with store_errors("list participants"):
            result = await self.db.execute(query)
        return [self._to_pydantic(m) for m in result.scalars().all()]

    async def list_for_conversations(
        self, conversation_ids: List[Any]
    ) -> Dict[Any, List[ParticipantResponse]]:
        """Participants of several conversations, keyed by conversation id."""
        grouped: Dict[Any, List[ParticipantResponse]] = {
            as_uuid(cid): [] for cid in conversation_ids
        }
        if not grouped:
            return grouped
        query = (
            select(self.model_class)
            .where(self.model_class.conversation_id.in_(list(grouped)))
            .order_by(self.model_class.joined_at, self.model_class.user_id)
        )
        with store_errors("list participants"):
            result = await self.db.execute(query)
        for db_model in result.scalars().all():
            grouped[db_model.conversation_id].append(self._to_pydantic(db_model))
        return grouped

    async def total_unread(self, user_id: str) -> int:
        """Sum of unread counters across the user's conversations."""
        query = select(func.coalesce(func.sum(self.model_class.unread_count), 0)).where(
            self.model_class.user_id == user_id
        )
        with store_errors("total unread"):
            result = await self.db.execute(query)
        return int(result.scalar_one())

    async def unread_conversations(self, user_id: str) -> int:
        """Number of the user's conversations with at least one unread message."""
        query = (
            select(func.count())
            .select_from(self.model_class)
            .where(
                self.model_class.user_id == user_id, self.model_class.unread_count > 0
            )
        )
        with store_errors("unread conversations"):
            result = await self.db.execute(query)
        return int(result.scalar_one())

    def _to_pydantic(self, db_model: Any) -> ParticipantResponse:
        """Convert SQLAlchemy ParticipantModel to Pydantic ParticipantResponse."""
        return ParticipantResponse(
            id=db_model.id,
            conversation_id=db_model.conversation_id,
            user_id=db_model.user_id,
            role=db_model.role,
            unread_count=db_model.unread_count,
            last_read_at=db_model.last_read_at,
            joined_at=db_model.joined_at,
        )
