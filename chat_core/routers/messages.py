from uuid import UUID

from fastapi import APIRouter, Depends

from chat_core.dependencies import current_user_id, get_messaging_service
from chat_core.models.api.messages import EditMessageRequest, MessageResponse
from chat_core.services.messaging_service import MessagingService

router = APIRouter()


@router.patch("/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: UUID,
    request: EditMessageRequest,
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> MessageResponse:
    """Replace the content of one of the caller's messages."""
    return await service.edit_message(message_id, user_id, request.content)


@router.delete("/{message_id}", response_model=MessageResponse)
async def delete_message(
    message_id: UUID,
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> MessageResponse:
    """Soft delete one of the caller's messages."""
    return await service.delete_message(message_id, user_id)
