"""
User model.

Authentication is delegated to the identity provider; this table only keeps
the account id and the normalized email used to match guest purchases.
"""

from sqlalchemy import Column, String
from sqlalchemy.orm import validates

from gateflow.db_base import Base
from gateflow.models.base import TimestampMixin, generate_uuid


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(320), nullable=False, unique=True, index=True)

    @validates("email")
    def _normalize_email(self, key, value):
        return normalize_email(value)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"
