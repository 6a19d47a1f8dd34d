import base64
import binascii
import json
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple, Union
from uuid import UUID, uuid4

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import and_, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from chat_core import settings
from chat_core.errors import ConversationNotFound, InvalidContent, InvalidCursor, NotFound
from chat_core.models.api.common import as_utc
from chat_core.models.api.messages import (
    LocationContent,
    MessageContent,
    MessageResponse,
    SystemContent,
    TextContent,
)
from chat_core.models.db.conversation_model import ConversationModel
from chat_core.models.db.message_model import MessageModel
from chat_core.repositories.base_repository import BaseRepository, as_uuid, store_errors

_content_adapter: TypeAdapter = TypeAdapter(MessageContent)

# Smallest step between two messages of one conversation
_TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_content(value: Union[str, dict, Any]) -> MessageContent:
    """Accept plain text, a tagged dict or an already built content model."""
    if isinstance(value, (TextContent, SystemContent, LocationContent)):
        return value
    if isinstance(value, str):
        return TextContent(text=value)
    try:
        return _content_adapter.validate_python(value)
    except ValidationError as e:
        raise InvalidContent(f"Malformed message content: {e.errors()}") from e


def validate_content(content: MessageContent) -> Tuple[MessageContent, str]:
    """Check limits and return the normalised content with its searchable text."""
    limit = settings.MESSAGE_MAX_LENGTH
    if isinstance(content, TextContent):
        text = content.text.strip()
        if not text:
            raise InvalidContent("Message content cannot be empty")
        if len(text) > limit:
            raise InvalidContent(f"Message content exceeds {limit} characters")
        return TextContent(text=text), text

    if isinstance(content, SystemContent):
        if not content.payload:
            raise InvalidContent("System message payload cannot be empty")
        if len(json.dumps(content.payload, default=str)) > limit:
            raise InvalidContent(f"System message payload exceeds {limit} characters")
        return content, str(content.payload.get("text", ""))

    if isinstance(content, LocationContent):
        if not -90 <= content.latitude <= 90 or not -180 <= content.longitude <= 180:
            raise InvalidContent("Location coordinates are out of range")
        label = (content.label or "").strip()
        if len(label) > limit:
            raise InvalidContent(f"Location label exceeds {limit} characters")
        return content, label

    raise InvalidContent(f"Unsupported message type: {getattr(content, 'type', None)}")


def preview_for(content: MessageContent, body: str) -> str:
    """Short text shown in conversation lists."""
    if isinstance(content, LocationContent):
        body = f"Location: {body}" if body else "Location"
    elif isinstance(content, SystemContent) and not body:
        body = str(content.payload.get("event", "Update"))
    return body[: settings.PREVIEW_LENGTH]


def encode_cursor(created_at: datetime, message_id: UUID) -> str:
    raw = f"{as_utc(created_at).isoformat()}|{message_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[datetime, UUID]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        ts_str, id_str = raw.split("|", 1)
        return as_utc(datetime.fromisoformat(ts_str)), UUID(id_str)
    except (ValueError, binascii.Error, UnicodeError) as e:
        raise InvalidCursor(f"Invalid cursor: {cursor!r}") from e


def cursor_for(message: MessageResponse) -> str:
    return encode_cursor(message.created_at, message.id)


class MessageRepository(BaseRepository[MessageModel, MessageResponse]):
    """Ordered append log of messages per conversation.

    Write methods only flush; the caller owns the transaction so that an
    append and the unread bump commit together.
    """

    def __init__(self, db: AsyncSession):
        super().__init__(db, MessageModel)

    async def append(
        self,
        conversation_id: Any,
        sender_id: str,
        content: Any,
        client_message_id: Optional[str] = None,
    ) -> MessageResponse:
        """Store a new message and bump the conversation's activity.

        The conversation row is locked before the timestamp is assigned, so
        `created_at` strictly increases in commit order and always equals the
        conversation's `last_activity_at` after the append.
        """
        content, body = validate_content(parse_content(content))
        conversation_id = as_uuid(conversation_id)

        with store_errors("append message"):
            locked = await self.db.execute(
                update(ConversationModel)
                .where(ConversationModel.id == conversation_id)
                .values(archived_at=None)
                .returning(ConversationModel.last_activity_at)
            )
            row = locked.first()
            if row is None:
                raise ConversationNotFound(f"Conversation {conversation_id} not found")

            created_at = utcnow()
            if row.last_activity_at is not None:
                created_at = max(created_at, as_utc(row.last_activity_at) + _TICK)
            await self.db.execute(
                update(ConversationModel)
                .where(ConversationModel.id == conversation_id)
                .values(
                    last_activity_at=created_at,
                    last_message_preview=preview_for(content, body),
                )
            )

            db_model = MessageModel(
                id=uuid4(),
                conversation_id=conversation_id,
                sender_id=sender_id,
                content_type=content.type,
                body=body,
                content=content.model_dump(mode="json"),
                client_message_id=client_message_id,
                created_at=created_at,
                is_edited=False,
                is_deleted=False,
            )
            self.db.add(db_model)
            await self.db.flush()

        return self._to_pydantic(db_model)

    async def get_by_client_message_id(
        self, conversation_id: Any, sender_id: str, client_message_id: str
    ) -> Optional[MessageResponse]:
        """Find a message by the correlation id its sender attached."""
        query = select(self.model_class).where(
            self.model_class.conversation_id == as_uuid(conversation_id),
            self.model_class.sender_id == sender_id,
            self.model_class.client_message_id == client_message_id,
        )
        with store_errors("get message by client id"):
            result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    async def list(
        self,
        conversation_id: Any,
        limit: int = settings.MESSAGES_PAGE_SIZE,
        before: Optional[str] = None,
    ) -> List[MessageResponse]:
        """Up to `limit` live messages strictly older than `before`, newest first."""
        query = select(self.model_class).where(
            self.model_class.conversation_id == as_uuid(conversation_id),
            self.model_class.is_deleted.is_(False),
        )
        if before:
            ts, message_id = decode_cursor(before)
            query = query.where(
                or_(
                    self.model_class.created_at < ts,
                    and_(
                        self.model_class.created_at == ts,
                        self.model_class.id < message_id,
                    ),
                )
            )
        query = query.order_by(
            self.model_class.created_at.desc(), self.model_class.id.desc()
        ).limit(limit)

        with store_errors("list messages"):
            result = await self.db.execute(query)
        return [self._to_pydantic(m) for m in result.scalars().all()]

    async def list_after(
        self,
        conversation_id: Any,
        after: str,
        limit: int = settings.MESSAGES_PAGE_SIZE,
    ) -> List[MessageResponse]:
        """Up to `limit` live messages strictly newer than `after`, oldest first."""
        ts, message_id = decode_cursor(after)
        query = (
            select(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.is_deleted.is_(False),
                or_(
                    self.model_class.created_at > ts,
                    and_(
                        self.model_class.created_at == ts,
                        self.model_class.id > message_id,
                    ),
                ),
            )
            .order_by(self.model_class.created_at.asc(), self.model_class.id.asc())
            .limit(limit)
        )
        with store_errors("list messages after cursor"):
            result = await self.db.execute(query)
        return [self._to_pydantic(m) for m in result.scalars().all()]

    async def edit(self, message_id: Any, new_content: Any) -> MessageResponse:
        """Replace a message's content and flag it as edited."""
        content, body = validate_content(parse_content(new_content))
        db_model = await self._get_live_for_update(message_id)

        db_model.content_type = content.type
        db_model.body = body
        db_model.content = content.model_dump(mode="json")
        db_model.is_edited = True
        db_model.edited_at = utcnow()
        with store_errors("edit message"):
            await self.db.flush()
        return self._to_pydantic(db_model)

    async def soft_delete(self, message_id: Any) -> MessageResponse:
        """Hide a message from listings without removing the row."""
        db_model = await self._get_live_for_update(message_id)

        db_model.is_deleted = True
        db_model.deleted_at = utcnow()
        with store_errors("delete message"):
            await self.db.flush()
        return self._to_pydantic(db_model)

    async def search(
        self,
        conversation_id: Any,
        substring: str,
        limit: int = settings.SEARCH_RESULT_LIMIT,
    ) -> List[MessageResponse]:
        """Case-insensitive substring match over live messages, newest first."""
        needle = substring.strip().lower()
        if not needle:
            return []
        query = (
            select(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.is_deleted.is_(False),
                func.lower(self.model_class.body).contains(needle, autoescape=True),
            )
            .order_by(self.model_class.created_at.desc(), self.model_class.id.desc())
            .limit(limit)
        )
        with store_errors("search messages"):
            result = await self.db.execute(query)
        return [self._to_pydantic(m) for m in result.scalars().all()]

    async def _get_live_for_update(self, message_id: Any) -> MessageModel:
        query = (
            select(self.model_class)
            .where(self.model_class.id == as_uuid(message_id))
            .with_for_update()
        )
        with store_errors("get message"):
            result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        if db_model is None or db_model.is_deleted:
            raise NotFound(f"Message {message_id} not found")
        return db_model

    def _to_pydantic(self, db_model: Any) -> MessageResponse:
        """Convert SQLAlchemy MessageModel to Pydantic MessageResponse."""
        return MessageResponse(
            id=db_model.id,
            conversation_id=db_model.conversation_id,
            sender_id=db_model.sender_id,
            content=_content_adapter.validate_python(db_model.content),
            client_message_id=db_model.client_message_id,
            created_at=db_model.created_at,
            is_edited=db_model.is_edited,
            edited_at=db_model.edited_at,
            is_deleted=db_model.is_deleted,
        )
