from datetime import date, datetime
from typing import Optional

from sqlalchemy import Date, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from libtrack.db.connection import Base


class SchedulerRun(Base):
    __tablename__ = 'scheduler_runs'

    run_id: Mapped[int] = mapped_column('run_id', Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column('job_name', String(64), nullable=False, index=True)
    trigger: Mapped[str] = mapped_column('trigger', String(32), nullable=False)  # startup | daily | catch_up | manual
    status: Mapped[str] = mapped_column('status', String(16), nullable=False, server_default=text("'running'"))
    started_at: Mapped[datetime] = mapped_column('started_at', TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"), index=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column('finished_at', TIMESTAMP(timezone=True), nullable=True)
    due_tomorrow_count: Mapped[int] = mapped_column('due_tomorrow_count', Integer, nullable=False, server_default=text("0"))
    overdue_count: Mapped[int] = mapped_column('overdue_count', Integer, nullable=False, server_default=text("0"))
    error: Mapped[Optional[str]] = mapped_column('error', Text, nullable=True)

    def __repr__(self):
        return f"<SchedulerRun(run_id={self.run_id}, job='{self.job_name}', status='{self.status}', started_at={self.started_at})>"


class ReminderLog(Base):
    __tablename__ = 'reminder_log'

    # One reminder per kind, transaction, borrower and reference date
    __table_args__ = (UniqueConstraint('kind', 'transaction_id', 'user_id', 'reference_date', name='unique_reminder_per_day'),)

    reminder_id: Mapped[int] = mapped_column('reminder_id', Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column('kind', String(32), nullable=False)  # due_tomorrow | overdue_penalty
    transaction_id: Mapped[int] = mapped_column('transaction_id', Integer, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column('user_id', Integer, nullable=False)
    reference_date: Mapped[date] = mapped_column('reference_date', Date, nullable=False)
    sent_at: Mapped[datetime] = mapped_column('sent_at', TIMESTAMP(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP"))

    def __repr__(self):
        return f"<ReminderLog(kind='{self.kind}', transaction_id={self.transaction_id}, user_id={self.user_id}, date={self.reference_date})>"
