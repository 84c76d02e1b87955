from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from iptv_manager_api.db.base import Base


class UserRoleEnum(str, Enum):
    CLIENT = "client"
    ADMIN = "admin"


class User(Base):
    """Back-office account owned by the authentication service.

    Only the columns the loyalty engine reads are mapped here.
    """

    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    role = Column(String(length=16), nullable=False, default=UserRoleEnum.CLIENT.value, server_default=UserRoleEnum.CLIENT.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRoleEnum.ADMIN.value
