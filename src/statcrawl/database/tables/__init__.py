from statcrawl.database.tables.base_class import Base
from statcrawl.database.tables.failed_job_table import FailedParsingJobs
from statcrawl.database.tables.scheduler_lock_table import SchedulerLocks
from statcrawl.database.tables.tournament_table import Tournaments

__all__ = ["Base", "FailedParsingJobs", "SchedulerLocks", "Tournaments"]
