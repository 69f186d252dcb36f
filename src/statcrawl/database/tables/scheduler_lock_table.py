from datetime import datetime

from sqlalchemy import DateTime, String, text
from sqlalchemy.orm import Mapped, mapped_column

from statcrawl.database.tables.base_class import Base


class SchedulerLocks(Base):
    """One row per job name; a row is a valid lock while locked_until is in the future."""

    __tablename__ = "scheduler_locks"

    job_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    locked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()"), nullable=False
    )
    locked_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    instance_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
