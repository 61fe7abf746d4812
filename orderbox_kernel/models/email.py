"""
Module: orderbox_kernel.models.email
Responsibility: ORM persistence for synced mailbox messages.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ``message_id`` is unique: re-syncing a message is a no-op.
    - ``analysis_status`` moves pending -> completed only after the parse
      job resolved the message; pending rows are the parse job's next input.
"""

from enum import Enum

from sqlalchemy import BigInteger, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from orderbox_kernel.db.base import TimestampedBase


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class Email(TimestampedBase):
    """A message fetched from the mailbox provider."""

    __tablename__ = "emails"

    __table_args__ = (
        Index("idx_emails_analysis_status", "analysis_status"),
        Index("idx_emails_internal_date", "internal_date"),
    )

    message_id: Mapped[str] = mapped_column(
        String(200), nullable=False, unique=True,
    )
    body_plain: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Provider receive time, epoch milliseconds
    internal_date: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    analysis_status: Mapped[str] = mapped_column(
        String(20), default=AnalysisStatus.PENDING.value, nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Email {self.message_id} status={self.analysis_status}>"
