from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from statcrawl.database.tables.base_class import BasePublic


class FailedParsingJobs(BasePublic):
    __tablename__ = "failed_parsing_jobs"
    __table_args__ = (
        UniqueConstraint(
            "job_type", "source", "external_id", name="uq_failed_parsing_jobs_identity"
        ),
        Index("ix_failed_parsing_jobs_next_retry_at", "next_retry_at"),
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, server_default=text("0"), nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, server_default=text("3"), nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
