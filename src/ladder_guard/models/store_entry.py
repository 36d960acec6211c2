# src/ladder_guard/models/store_entry.py
"""SQLAlchemy model backing the SQL key-value store."""


from sqlalchemy import BigInteger, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ladder_guard.db.session import Base


class StoreEntry(Base):
    """One key with its JSON payload and expiry envelope.

    ``version`` increments on every write and is the compare-and-swap token.
    """

    __tablename__ = "guard_store_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    created: Mapped[float] = mapped_column(Float, nullable=False)
    expires: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
