"""User model.

Users sign in through GitHub OAuth (handled outside this service). The
pipeline only needs the stored access token to act on their repositories.
"""

from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.sql import func
from ..database import Base


class User(Base):
    """Owner of watched repositories.

    ``github_access_token`` holds the AES-256-GCM envelope produced by
    ``services.token_cipher.encrypt_token``, never the raw token.
    """

    __tablename__ = "users"

    user_id = Column(String(50), primary_key=True)
    github_login = Column(String(255), nullable=False)
    github_access_token = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
