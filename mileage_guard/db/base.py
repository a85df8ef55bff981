"""Declarative base for the durable store tables."""

from sqlalchemy.orm import as_declarative, declared_attr


@as_declarative()
class Base:
    """Base class for all database models."""

    __name__: str

    # Models set __tablename__ explicitly; this is only the fallback.
    @declared_attr
    def __tablename__(cls) -> str:
        return cls.__name__.lower()
