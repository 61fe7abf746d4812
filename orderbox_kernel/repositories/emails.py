"""
Module: orderbox_kernel.repositories.emails
Responsibility: Persistence of synced mails and selection of mails awaiting
    parsing.
Architecture position: Kernel > Repositories.

Invariants enforced:
    - save_messages is an upsert on ``message_id``: an existing row keeps its
      values unless the new message supplies a non-NULL replacement, so a
      re-sync can fill in a body that was missing the first time.
"""

from sqlalchemy import func, select, update

from orderbox_kernel.domain.values import EmailRow, MailMessage
from orderbox_kernel.logging_config import get_logger
from orderbox_kernel.models.email import AnalysisStatus, Email
from orderbox_kernel.repositories.base import BaseRepository

logger = get_logger("repositories.emails")

# Keeps IN (...) lists under SQLite's bound-parameter limit
_IN_CLAUSE_CHUNK = 500

_UPSERT_FIELDS = (
    "body_plain",
    "body_html",
    "from_address",
    "subject",
    "internal_date",
)


class EmailRepository(BaseRepository):
    """Read and write ``emails`` rows."""

    def filter_new_message_ids(self, message_ids: list[str]) -> list[str]:
        """Return the ids not yet stored, in input order."""
        if not message_ids:
            return []
        existing: set[str] = set()
        with self._scope("filter_new_message_ids") as session:
            for start in range(0, len(message_ids), _IN_CLAUSE_CHUNK):
                chunk = message_ids[start:start + _IN_CLAUSE_CHUNK]
                existing.update(
                    session.execute(
                        select(Email.message_id).where(Email.message_id.in_(chunk))
                    ).scalars()
                )
        return [mid for mid in message_ids if mid not in existing]

    def save_messages(self, messages: list[MailMessage]) -> tuple[int, int]:
        """
        Upsert messages in one transaction.

        Returns:
            (saved, skipped): saved counts inserted or updated rows; skipped
            counts messages that changed nothing (existing row, no new data).
        """
        saved = 0
        skipped = 0
        with self._scope("save_messages") as session:
            for message in messages:
                row = session.execute(
                    select(Email).where(Email.message_id == message.message_id)
                ).scalar_one_or_none()
                if row is None:
                    session.add(
                        Email(
                            message_id=message.message_id,
                            body_plain=message.body_plain,
                            body_html=message.body_html,
                            from_address=message.from_address,
                            subject=message.subject,
                            internal_date=message.internal_date,
                        )
                    )
                    saved += 1
                    continue

                changed = False
                for name in _UPSERT_FIELDS:
                    value = getattr(message, name)
                    if value is not None and getattr(row, name) != value:
                        setattr(row, name, value)
                        changed = True
                if changed:
                    saved += 1
                else:
                    skipped += 1

        logger.info(
            "messages_saved",
            extra={"saved": saved, "skipped": skipped},
        )
        return saved, skipped

    def get_unparsed_emails(self, limit: int | None = None) -> list[EmailRow]:
        """
        Pending mails with a plain body and sender, oldest first.

        Mails that failed to parse stay pending and are returned again on
        the next call.
        """
        stmt = (
            select(Email)
            .where(
                Email.analysis_status == AnalysisStatus.PENDING.value,
                Email.body_plain.is_not(None),
                Email.from_address.is_not(None),
            )
            .order_by(Email.internal_date.asc(), Email.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._scope("get_unparsed_emails") as session:
            return [
                EmailRow(
                    id=row.id,
                    message_id=row.message_id,
                    body_plain=row.body_plain,
                    from_address=row.from_address,
                    subject=row.subject,
                    internal_date=row.internal_date,
                )
                for row in session.execute(stmt).scalars()
            ]

    def mark_parsed(self, email_ids: list[int]) -> int:
        """Move the given mails to ``completed``.  Returns rows updated."""
        if not email_ids:
            return 0
        updated = 0
        with self._scope("mark_parsed") as session:
            for start in range(0, len(email_ids), _IN_CLAUSE_CHUNK):
                chunk = email_ids[start:start + _IN_CLAUSE_CHUNK]
                result = session.execute(
                    update(Email)
                    .where(Email.id.in_(chunk))
                    .values(analysis_status=AnalysisStatus.COMPLETED.value)
                )
                updated += result.rowcount
        return updated

    def count(self) -> int:
        with self._scope("count_emails") as session:
            return session.execute(select(func.count(Email.id))).scalar_one()
