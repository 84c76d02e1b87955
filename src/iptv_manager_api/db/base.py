from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

# Matches the constraint and index names used by the alembic migrations.
NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base for the loyalty engine tables."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)
