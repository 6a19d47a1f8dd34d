import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_core import settings
from chat_core.clients.base_profile_client import BaseProfileClient
from chat_core.clients.base_push_client import BasePushClient
from chat_core.errors import (
    ConversationNotFound,
    Forbidden,
    InvalidRequest,
    NotFound,
    TransientStoreError,
)
from chat_core.logging_config import get_logger
from chat_core.models.api.conversations import (
    ConversationResponse,
    ConversationSummary,
    OpenConversationResponse,
    UnreadResponse,
)
from chat_core.models.api.events import RealtimeEvent
from chat_core.models.api.messages import MessagePage, MessageResponse, MessageWithSender
from chat_core.models.api.notifications import PushSummary
from chat_core.models.api.participants import (
    ParticipantResponse,
    ParticipantSpec,
    ParticipantWithProfile,
)
from chat_core.realtime.hub import ConversationScope, RealtimeHub, Scope, Subscription, UserScope
from chat_core.repositories.base_repository import as_uuid, store_errors
from chat_core.repositories.conversation_repository import ConversationRepository
from chat_core.repositories.message_repository import (
    MessageRepository,
    cursor_for,
    parse_content,
    preview_for,
    validate_content,
)
from chat_core.repositories.participant_repository import ParticipantRepository
from chat_core.services.rate_limiter import SenderRateLimiter

logger = get_logger(__name__)

T = TypeVar("T")

CONVERSATION_TYPES = ("direct", "order-linked", "support")


class MessagingService:
    """Coordinates the directory, store, registry and fan-out.

    Every operation opens its own session, so one instance can be shared by
    concurrent requests. This is the only layer that retries transient store
    failures and the only one that decides what the caller sees.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hub: RealtimeHub,
        profiles: BaseProfileClient,
        push: Optional[BasePushClient] = None,
        rate_limiter: Optional[SenderRateLimiter] = None,
        max_retries: int = settings.STORE_MAX_RETRIES,
        retry_base_delay: float = settings.STORE_RETRY_BASE_DELAY,
        store_timeout: float = settings.SEND_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.hub = hub
        self.profiles = profiles
        self.push = push
        self.rate_limiter = rate_limiter or SenderRateLimiter(
            settings.RATE_LIMIT_PER_MINUTE
        )
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.store_timeout = store_timeout
        self._background: Set[asyncio.Task] = set()

    # Conversations

    async def find_or_create_conversation(
        self,
        type: str,
        order_context_id: Optional[str],
        participants: List[ParticipantSpec],
    ) -> ConversationResponse:
        """Converge concurrent callers on a single conversation per participant set."""
        self._validate_conversation_request(type, order_context_id, participants)

        async def work(db: AsyncSession) -> Tuple[ConversationResponse, bool]:
            return await ConversationRepository(db).find_or_create(
                type, order_context_id, participants
            )

        conversation, created = await self._bounded(
            self._run("find_or_create_conversation", work)
        )
        if created:
            self.hub.publish(
                RealtimeEvent(
                    event_type="conversation.created",
                    conversation_id=conversation.id,
                    payload=conversation.model_dump(mode="json"),
                    recipients=[p.user_id for p in participants],
                )
            )
        return conversation

    async def join_conversation(
        self, conversation_id: Any, user_id: str, role: str
    ) -> List[ParticipantResponse]:
        """Add a participant after creation (support agents picking up a thread)."""
        conversation_id = as_uuid(conversation_id)

        async def work(db: AsyncSession) -> List[ParticipantResponse]:
            conversation = await ConversationRepository(db).get_by_id(conversation_id)
            if conversation is None:
                raise ConversationNotFound(f"Conversation {conversation_id} not found")
            if conversation.type == "direct":
                raise InvalidRequest("Direct conversations cannot be joined")
            registry = ParticipantRepository(db)
            try:
                joined = await registry.ensure_participants(
                    conversation_id, [ParticipantSpec(user_id=user_id, role=role)]
                )
                with store_errors("join conversation"):
                    await db.commit()
            except IntegrityError:
                # Someone else added the same user first
                await db.rollback()
                joined = await registry.list_for_conversation(conversation_id)
            return joined

        participants = await self._run("join_conversation", work)
        logger.info(
            "participant_joined",
            conversation_id=str(conversation_id),
            user_id=user_id,
            role=role,
        )
        self._publish_participants(conversation_id, participants, only=[user_id])
        return participants

    async def list_conversations(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        include_archived: bool = False,
    ) -> List[ConversationSummary]:
        """The user's conversations by recent activity, with the other party's identity."""
        if limit <= 0 or limit > 1000:
            raise InvalidRequest("Limit must be between 1 and 1000")
        if offset < 0:
            raise InvalidRequest("Offset must be non-negative")

        async def work(
            db: AsyncSession,
        ) -> Tuple[
            List[Tuple[ConversationResponse, ParticipantResponse]],
            Dict[Any, List[ParticipantResponse]],
        ]:
            rows = await ConversationRepository(db).list_for_user(
                user_id, limit=limit, offset=offset, include_archived=include_archived
            )
            members = await ParticipantRepository(db).list_for_conversations(
                [conversation.id for conversation, _ in rows]
            )
            return rows, members

        rows, members = await self._run("list_conversations", work)

        others: Dict[UUID, Optional[str]] = {}
        for conversation, _ in rows:
            other = next(
                (p.user_id for p in members.get(conversation.id, []) if p.user_id != user_id),
                None,
            )
            others[conversation.id] = other
        profiles = await self.profiles.resolve_many(
            uid for uid in others.values() if uid is not None
        )

        return [
            ConversationSummary(
                conversation_id=conversation.id,
                type=conversation.type,
                order_context_id=conversation.order_context_id,
                other_participant=profiles.get(others[conversation.id] or ""),
                last_message_preview=conversation.last_message_preview,
                unread_count=own.unread_count,
                last_activity_at=conversation.last_activity_at,
            )
            for conversation, own in rows
        ]

    async def open_conversation(
        self,
        conversation_id: Any,
        user_id: str,
        limit: int = settings.MESSAGES_PAGE_SIZE,
    ) -> OpenConversationResponse:
        """Conversation details, participants and the newest page of messages."""
        conversation_id = as_uuid(conversation_id)

        async def work(
            db: AsyncSession,
        ) -> Tuple[ConversationResponse, List[ParticipantResponse], List[MessageResponse]]:
            conversation = await ConversationRepository(db).get_by_id(conversation_id)
            if conversation is None:
                raise ConversationNotFound(f"Conversation {conversation_id} not found")
            participants = await ParticipantRepository(db).list_for_conversation(
                conversation_id
            )
            self._require_member(conversation_id, participants, user_id)
            messages = await MessageRepository(db).list(conversation_id, limit=limit)
            return conversation, participants, messages

        conversation, participants, messages = await self._run("open_conversation", work)

        profiles = await self.profiles.resolve_many(
            [p.user_id for p in participants] + [m.sender_id for m in messages]
        )
        return OpenConversationResponse(
            conversation=conversation,
            participants=[
                ParticipantWithProfile(
                    user_id=p.user_id,
                    role=p.role,
                    unread_count=p.unread_count,
                    last_read_at=p.last_read_at,
                    profile=profiles[p.user_id],
                )
                for p in participants
            ],
            messages=self._with_senders(list(reversed(messages)), profiles),
            next_cursor=cursor_for(messages[-1]) if len(messages) == limit else None,
        )

    async def archive_conversation(
        self, conversation_id: Any, user_id: str
    ) -> ConversationResponse:
        conversation_id = as_uuid(conversation_id)

        async def work(db: AsyncSession) -> ConversationResponse:
            await self._check_member(db, conversation_id, user_id)
            conversation = await ConversationRepository(db).archive(conversation_id)
            with store_errors("archive conversation"):
                await db.commit()
            return conversation

        conversation = await self._run("archive_conversation", work)
        logger.info(
            "conversation_archived", conversation_id=str(conversation_id), user_id=user_id
        )
        return conversation

    # Messages

    async def send(
        self,
        conversation_id: Any,
        sender_id: str,
        content: Any,
        client_message_id: Optional[str] = None,
    ) -> MessageResponse:
        """Append a message, bump unread counters, then fan out and notify.

        A repeated client_message_id returns the stored message instead of a
        duplicate, which makes retries after a lost acknowledgement safe.
        """
        conversation_id = as_uuid(conversation_id)
        content, _ = validate_content(parse_content(content))
        client_message_id = client_message_id or uuid4().hex
        await self.rate_limiter.acquire(sender_id)

        async def work(
            db: AsyncSession,
        ) -> Tuple[MessageResponse, List[ParticipantResponse], bool]:
            messages = MessageRepository(db)
            registry = ParticipantRepository(db)

            existing = await messages.get_by_client_message_id(
                conversation_id, sender_id, client_message_id
            )
            if existing is not None:
                return existing, await registry.list_for_conversation(conversation_id), False
            await self._check_member(db, conversation_id, sender_id)

            try:
                message = await messages.append(
                    conversation_id, sender_id, content, client_message_id
                )
                bumped = await registry.on_message_appended(conversation_id, sender_id)
                with store_errors("commit message"):
                    await db.commit()
            except IntegrityError:
                # A concurrent retry with the same correlation id won the insert
                await db.rollback()
                existing = await messages.get_by_client_message_id(
                    conversation_id, sender_id, client_message_id
                )
                if existing is None:
                    raise
                return existing, await registry.list_for_conversation(conversation_id), False
            return message, bumped, True

        message, participants, created = await self._bounded(self._run("send", work))

        recipients = [p.user_id for p in participants if p.user_id != sender_id]
        self.hub.publish(
            RealtimeEvent(
                event_type="message.created",
                conversation_id=conversation_id,
                payload=message.model_dump(mode="json"),
                recipients=recipients + [sender_id],
            )
        )
        if created:
            logger.info(
                "message_appended",
                conversation_id=str(conversation_id),
                message_id=str(message.id),
                sender_id=sender_id,
                content_type=message.content.type,
            )
            self._publish_participants(conversation_id, participants)
            self._notify_offline(message, recipients)
        else:
            logger.info(
                "message_replayed",
                conversation_id=str(conversation_id),
                message_id=str(message.id),
                client_message_id=client_message_id,
            )
        return message

    async def mark_read(self, conversation_id: Any, user_id: str) -> ParticipantResponse:
        conversation_id = as_uuid(conversation_id)

        async def work(db: AsyncSession) -> ParticipantResponse:
            try:
                participant = await ParticipantRepository(db).mark_read(
                    conversation_id, user_id
                )
            except NotFound:
                await self._check_member(db, conversation_id, user_id)
                raise
            with store_errors("commit mark read"):
                await db.commit()
            return participant

        participant = await self._run("mark_read", work)
        self._publish_participants(conversation_id, [participant])
        return participant

    async def load_more(
        self,
        conversation_id: Any,
        user_id: str,
        cursor: Optional[str] = None,
        limit: int = settings.MESSAGES_PAGE_SIZE,
    ) -> MessagePage:
        """Messages older than the cursor, returned oldest first for display."""
        if limit <= 0 or limit > 1000:
            raise InvalidRequest("Limit must be between 1 and 1000")
        conversation_id = as_uuid(conversation_id)

        async def work(db: AsyncSession) -> List[MessageResponse]:
            await self._check_member(db, conversation_id, user_id)
            return await MessageRepository(db).list(conversation_id, limit=limit, before=cursor)

        messages = await self._run("load_more", work)
        profiles = await self.profiles.resolve_many(m.sender_id for m in messages)
        return MessagePage(
            messages=self._with_senders(list(reversed(messages)), profiles),
            next_cursor=cursor_for(messages[-1]) if len(messages) == limit else None,
        )

    async def catch_up(
        self,
        conversation_id: Any,
        user_id: str,
        after: Optional[str] = None,
        limit: int = settings.MESSAGES_PAGE_SIZE,
    ) -> List[MessageResponse]:
        """Messages newer than `after`, oldest first, for reconnecting subscribers.

        Pages forward from the cursor until nothing newer is left, so a long
        disconnect never skips older missed messages. Without a cursor only
        the newest page is returned.
        """
        if limit <= 0 or limit > 1000:
            raise InvalidRequest("Limit must be between 1 and 1000")
        conversation_id = as_uuid(conversation_id)

        async def work(db: AsyncSession) -> List[MessageResponse]:
            await self._check_member(db, conversation_id, user_id)
            store = MessageRepository(db)
            if not after:
                return list(reversed(await store.list(conversation_id, limit=limit)))
            collected: List[MessageResponse] = []
            cursor = after
            while True:
                page = await store.list_after(conversation_id, cursor, limit=limit)
                collected.extend(page)
                if len(page) < limit:
                    return collected
                cursor = cursor_for(page[-1])

        return await self._run("catch_up", work)

    async def edit_message(
        self, message_id: Any, editor_id: str, content: Any
    ) -> MessageResponse:
        """Only the original sender may edit."""
        message_id = as_uuid(message_id)

        async def work(db: AsyncSession) -> Tuple[MessageResponse, List[str]]:
            store = MessageRepository(db)
            current = await store.get_by_id(message_id)
            if current is None or current.is_deleted:
                raise NotFound(f"Message {message_id} not found")
            if current.sender_id != editor_id:
                raise Forbidden("Only the sender can edit a message")
            edited = await store.edit(message_id, content)
            with store_errors("commit edit"):
                await db.commit()
            members = await ParticipantRepository(db).list_for_conversation(
                current.conversation_id
            )
            return edited, [p.user_id for p in members]

        edited, members = await self._run("edit_message", work)
        logger.info("message_edited", message_id=str(message_id), editor_id=editor_id)
        self.hub.publish(
            RealtimeEvent(
                event_type="message.updated",
                conversation_id=edited.conversation_id,
                payload=edited.model_dump(mode="json"),
                recipients=members,
            )
        )
        return edited

    async def delete_message(self, message_id: Any, user_id: str) -> MessageResponse:
        """Soft delete; only the original sender may delete."""
        message_id = as_uuid(message_id)

        async def work(db: AsyncSession) -> Tuple[MessageResponse, List[str]]:
            store = MessageRepository(db)
            current = await store.get_by_id(message_id)
            if current is None or current.is_deleted:
                raise NotFound(f"Message {message_id} not found")
            if current.sender_id != user_id:
                raise Forbidden("Only the sender can delete a message")
            deleted = await store.soft_delete(message_id)
            with store_errors("commit delete"):
                await db.commit()
            members = await ParticipantRepository(db).list_for_conversation(
                current.conversation_id
            )
            return deleted, [p.user_id for p in members]

        deleted, members = await self._run("delete_message", work)
        logger.info("message_deleted", message_id=str(message_id), user_id=user_id)
        self.hub.publish(
            RealtimeEvent(
                event_type="message.deleted",
                conversation_id=deleted.conversation_id,
                payload={"id": str(deleted.id)},
                recipients=members,
            )
        )
        return deleted

    async def search(
        self,
        conversation_id: Any,
        user_id: str,
        query: str,
        limit: int = settings.SEARCH_RESULT_LIMIT,
    ) -> List[MessageWithSender]:
        conversation_id = as_uuid(conversation_id)

        async def work(db: AsyncSession) -> List[MessageResponse]:
            await self._check_member(db, conversation_id, user_id)
            return await MessageRepository(db).search(conversation_id, query, limit=limit)

        messages = await self._run("search", work)
        profiles = await self.profiles.resolve_many(m.sender_id for m in messages)
        return self._with_senders(messages, profiles)

    # Unread counters

    async def total_unread(self, user_id: str) -> int:
        async def work(db: AsyncSession) -> int:
            return await ParticipantRepository(db).total_unread(user_id)

        return await self._run("total_unread", work)

    async def unread_summary(self, user_id: str) -> UnreadResponse:
        async def work(db: AsyncSession) -> UnreadResponse:
            registry = ParticipantRepository(db)
            return UnreadResponse(
                total_unread=await registry.total_unread(user_id),
                unread_conversations=await registry.unread_conversations(user_id),
            )

        return await self._run("unread_summary", work)

    # Realtime

    async def subscribe(self, scope: Scope, user_id: str) -> Subscription:
        """Open a live feed the caller is allowed to see."""
        if isinstance(scope, UserScope):
            if scope.user_id != user_id:
                raise Forbidden("Cannot subscribe to another user's conversations")
        elif isinstance(scope, ConversationScope):
            conversation_id = scope.conversation_id

            async def work(db: AsyncSession) -> None:
                await self._check_member(db, conversation_id, user_id)

            await self._run("subscribe", work)
        return self.hub.subscribe(scope)

    async def drain(self) -> None:
        """Wait for scheduled push notifications to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        self.hub.close()

    # Internals

    async def _run(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run `work` in a fresh session, retrying transient store failures."""
        attempt = 0
        while True:
            try:
                async with self.session_factory() as db:
                    return await work(db)
            except TransientStoreError as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error(
                        "store_retries_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "store_retry",
                    operation=operation,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    async def _bounded(self, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.store_timeout)
        except asyncio.TimeoutError as e:
            raise TransientStoreError(
                f"Store did not answer within {self.store_timeout:g} seconds", cause=e
            ) from e

    async def _check_member(
        self, db: AsyncSession, conversation_id: UUID, user_id: str
    ) -> None:
        if await ParticipantRepository(db).get(conversation_id, user_id) is not None:
            return
        if await ConversationRepository(db).get_by_id(conversation_id) is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        raise Forbidden(f"User {user_id} is not a participant of this conversation")

    @staticmethod
    def _require_member(
        conversation_id: UUID, participants: List[ParticipantResponse], user_id: str
    ) -> None:
        if not any(p.user_id == user_id for p in participants):
            raise Forbidden(
                f"User {user_id} is not a participant of conversation {conversation_id}"
            )

    @staticmethod
    def _validate_conversation_request(
        type: str, order_context_id: Optional[str], participants: List[ParticipantSpec]
    ) -> None:
        if type not in CONVERSATION_TYPES:
            raise InvalidRequest(f"Unknown conversation type: {type}")
        members = {p.user_id for p in participants}
        if type == "direct":
            if len(members) != 2:
                raise InvalidRequest("Direct conversations need exactly two participants")
            if order_context_id:
                raise InvalidRequest("Direct conversations have no order context")
        elif type == "order-linked":
            if not order_context_id:
                raise InvalidRequest("Order-linked conversations need an order context id")
            if len(members) < 2:
                raise InvalidRequest("Order-linked conversations need two participants")
        elif not members:
            raise InvalidRequest("Support conversations need a participant")

    @staticmethod
    def _with_senders(
        messages: List[MessageResponse], profiles: Dict[str, Any]
    ) -> List[MessageWithSender]:
        return [
            MessageWithSender(**m.model_dump(), sender=profiles[m.sender_id])
            for m in messages
        ]

    def _publish_participants(
        self,
        conversation_id: UUID,
        participants: List[ParticipantResponse],
        only: Optional[List[str]] = None,
    ) -> None:
        for participant in participants:
            if only is not None and participant.user_id not in only:
                continue
            self.hub.publish(
                RealtimeEvent(
                    event_type="participant.updated",
                    conversation_id=conversation_id,
                    payload=participant.model_dump(mode="json"),
                    recipients=[participant.user_id],
                )
            )

    def _notify_offline(self, message: MessageResponse, recipients: List[str]) -> None:
        if self.push is None:
            return
        offline = [uid for uid in recipients if not self.hub.is_online(uid)]
        if offline:
            self._spawn(self._push(message, offline))

    async def _push(self, message: MessageResponse, user_ids: List[str]) -> None:
        assert self.push is not None
        sender = await self.profiles.resolve(message.sender_id)
        body = (
            message.content.text
            if message.content.type == "text"
            else preview_for(message.content, "")
        )
        summary = PushSummary(
            title=sender.display_name,
            body=body[: settings.PREVIEW_LENGTH],
            data={
                "conversation_id": str(message.conversation_id),
                "message_id": str(message.id),
                "sender_id": message.sender_id,
            },
        )
        for user_id in user_ids:
            try:
                await self.push.notify(user_id, summary)
            except Exception as e:
                logger.warning(
                    "push_notify_failed",
                    user_id=user_id,
                    message_id=str(message.id),
                    error=str(e),
                )

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
