# backend/solvit/models/user.py
"""
User model for the Solvit platform.

Clients and counselors share one table, differentiated by ``role``. Profile
data lives elsewhere; bookings only need identity, contact email and role.
"""

from enum import Enum

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func
import ulid

from ..database import Base


class UserRole(str, Enum):
    CLIENT = "client"
    COUNSELOR = "counselor"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.CLIENT.value)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<User {self.id} role={self.role}>"
