"""
Base repository with common CRUD operations.
"""

from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from gradetags.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Generic repository over one mapped model."""

    def __init__(self, model: Type[ModelType], session: Session):
        self.model = model
        self.session = session

    def get(self, id: Any) -> Optional[ModelType]:
        """
        Get a record by primary key.

        Args:
            id: Primary key value (a tuple for composite keys)

        Returns:
            Model instance or None if not found
        """
        return self.session.get(self.model, id)

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> List[ModelType]:
        """Get all records, optionally paginated."""
        query = self.session.query(self.model).offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def create(self, **kwargs: Any) -> ModelType:
        """
        Create and flush a new record.

        Args:
            **kwargs: Column values

        Returns:
            The new model instance
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        self.session.flush()
        return instance

    def update(self, id: Any, **kwargs: Any) -> Optional[ModelType]:
        """Update a record by primary key. Returns None if not found."""
        instance = self.get(id)
        if instance is None:
            return None
        for key, value in kwargs.items():
            setattr(instance, key, value)
        self.session.flush()
        return instance

    def delete(self, id: Any) -> bool:
        """Delete a record by primary key. Returns True if it existed."""
        instance = self.get(id)
        if instance is None:
            return False
        self.session.delete(instance)
        self.session.flush()
        return True

    def count(self) -> int:
        """Count all records."""
        return self.session.query(self.model).count()
