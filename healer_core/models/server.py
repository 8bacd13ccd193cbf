from typing import Optional

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..database.base import Base, TimestampMixin, UUIDMixin


class ManagedServer(Base, UUIDMixin, TimestampMixin):
    """
    Server reachable over SSH.
    Credentials are stored Fernet-encrypted; the host key fingerprint is pinned
    out of band and required before any connection is attempted.
    """
    __tablename__ = "managed_servers"

    name: Mapped[str] = mapped_column(String(255))
    hostname: Mapped[str] = mapped_column(String(253))
    port: Mapped[int] = mapped_column(Integer, default=22)
    username: Mapped[str] = mapped_column(String(32))
    auth_type: Mapped[str] = mapped_column(String(16), default="key")  # key | password
    encrypted_credentials: Mapped[str] = mapped_column(Text)
    host_key_fingerprint: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
