import asyncio
from contextlib import contextmanager
from typing import Any, Generic, Iterator, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from chat_core.database import Base
from chat_core.errors import TransientStoreError

ModelType = TypeVar("ModelType", bound=Base)
PydanticType = TypeVar("PydanticType", bound=BaseModel)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate connectivity failures into TransientStoreError.

    Constraint violations and programming errors propagate unchanged.
    """
    try:
        yield
    except (OperationalError, InterfaceError, asyncio.TimeoutError) as e:
        raise TransientStoreError(f"{operation} failed: {e}", cause=e) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientStoreError(f"{operation} failed: {e}", cause=e) from e
        raise


def as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class BaseRepository(Generic[ModelType, PydanticType]):
    """Generic base repository with common read operations."""

    def __init__(self, db: AsyncSession, model_class: Any):
        self.db = db
        self.model_class = model_class

    async def get_by_id(self, id: Any) -> Optional[PydanticType]:
        """Get a single record by ID."""
        query = (
            select(self.model_class)
            .where(self.model_class.id == as_uuid(id))
            .execution_options(populate_existing=True)
        )  # type: ignore
        with store_errors(f"get {self.model_class.__tablename__}"):
            result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    def _to_pydantic(self, db_model: ModelType) -> PydanticType:
        """Convert SQLAlchemy model to Pydantic model.

        This should be overridden in subclasses for specific conversion logic.
        """
        raise NotImplementedError
