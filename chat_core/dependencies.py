from fastapi import Header
from fastapi.requests import HTTPConnection

from chat_core.services.messaging_service import MessagingService


def get_messaging_service(connection: HTTPConnection) -> MessagingService:
    """Dependency returning the service built during application startup."""
    service: MessagingService = connection.app.state.messaging_service
    return service


def current_user_id(
    x_user_id: str = Header(..., min_length=1, max_length=64)
) -> str:
    """The authenticated user, as set by the gateway in front of this service."""
    return x_user_id
