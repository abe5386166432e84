"""
Replication agent jobs

Lists the SQL Server Agent jobs that run replication (snapshot, log reader,
distribution and merge agents), starts and stops them, and reads their
execution history from msdb.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from replication_errors import JobAlreadyRunning, ReplicationError
from replication_models import ServerConnection
from sql_channel import quote_literal

logger = logging.getLogger(__name__)

SNAPSHOT_AGENT = 'Snapshot Agent'
LOG_READER_AGENT = 'Log Reader Agent'
DISTRIBUTION_AGENT = 'Distribution Agent'
MERGE_AGENT = 'Merge Agent'

AGENT_CATEGORIES = {
    'REPL-Snapshot': SNAPSHOT_AGENT,
    'REPL-LogReader': LOG_READER_AGENT,
    'REPL-Distribution': DISTRIBUTION_AGENT,
    'REPL-Merge': MERGE_AGENT,
}

EXECUTING = 1

RUN_OUTCOMES = {0: 'Failed', 1: 'Succeeded', 2: 'Retry', 3: 'Canceled', 4: 'In Progress'}


@dataclass
class AgentJob:
    id: str
    name: str
    type: str
    enabled: bool
    description: str = ''
    is_running: bool = False
    last_run_time: Optional[datetime] = None
    last_run_outcome: Optional[str] = None
    next_run_time: Optional[datetime] = None
    publisher: Optional[str] = None
    publisher_db: Optional[str] = None
    publication: Optional[str] = None


@dataclass
class JobHistoryEntry:
    id: Any
    run_date: Optional[datetime]
    step_name: str
    status: str
    message: str
    run_duration: str


def parse_agent_datetime(date_part: Optional[int], time_part: Optional[int]) -> Optional[datetime]:
    """msdb stores dates as YYYYMMDD and times as HHMMSS integers; 0 means never"""
    if not date_part:
        return None
    time_part = time_part or 0
    try:
        return datetime(
            date_part // 10000, (date_part % 10000) // 100, date_part % 100,
            time_part // 10000, (time_part % 10000) // 100, time_part % 100
        )
    except ValueError:
        logger.debug(f"Unparseable agent timestamp {date_part} {time_part}")
        return None


def format_run_duration(duration: Optional[int]) -> str:
    """HHMMSS integer -> H:MM:SS"""
    duration = duration or 0
    hours = duration // 10000
    minutes = (duration % 10000) // 100
    seconds = duration % 100
    return f"{hours}:{minutes:02d}:{seconds:02d}"


def run_outcome(code: Any) -> str:
    return RUN_OUTCOMES.get(code, 'Unknown')


def agent_type(category: Optional[str]) -> str:
    return AGENT_CATEGORIES.get(category or '', DISTRIBUTION_AGENT)


def parse_job_name(name: str, job_type: str) -> Dict[str, Optional[str]]:
    """Best-effort publisher/database/publication from the generated job name

    Snapshot and distribution jobs are named publisher-db-publication-...,
    log reader jobs publisher-db-N.
    """
    parts = name.split('-')
    parsed = {'publisher': None, 'publisher_db': None, 'publication': None}
    if len(parts) >= 2:
        parsed['publisher'] = parts[0]
        parsed['publisher_db'] = parts[1]
    if len(parts) >= 3 and job_type != LOG_READER_AGENT:
        parsed['publication'] = parts[2]
    return parsed


class AgentJobMonitor:
    """Replication agent jobs on one server"""

    def __init__(self, channel):
        self.channel = channel

    def list_jobs(self, connection: ServerConnection) -> List[AgentJob]:
        categories = ', '.join(quote_literal(name) for name in AGENT_CATEGORIES)
        rows = self.channel.run_query(connection, f"""
            SELECT
                CONVERT(NVARCHAR(50), j.job_id) AS job_id,
                j.name,
                j.enabled,
                j.description,
                c.name AS category_name
            FROM msdb.dbo.sysjobs j
            JOIN msdb.dbo.syscategories c ON j.category_id = c.category_id
            WHERE c.name IN ({categories})
            ORDER BY j.name
        """)
        logger.info(f"Found {len(rows)} replication jobs on {connection.server_address}")

        jobs = []
        for row in rows:
            job_type = agent_type(row.get('category_name'))
            job = AgentJob(
                id=row['job_id'],
                name=row['name'],
                type=job_type,
                enabled=row.get('enabled') == 1,
                description=row.get('description') or f"Replication {job_type}",
                **parse_job_name(row['name'], job_type)
            )
            try:
                status = self._job_status(connection, job.id)
            except ReplicationError as e:
                logger.warning(f"Could not read status of job {job.name}: {e}")
                status = None
            if status:
                job.is_running = status.get('current_execution_status') == EXECUTING
                job.last_run_time = parse_agent_datetime(status.get('last_run_date'), status.get('last_run_time'))
                job.last_run_outcome = run_outcome(status.get('last_run_outcome'))
                job.next_run_time = parse_agent_datetime(
                    status.get('next_run_date'), status.get('next_run_time')
                )
            jobs.append(job)
        return jobs

    def _job_status(self, connection: ServerConnection, job_id: str) -> Optional[Dict[str, Any]]:
        rows = self.channel.run_procedure(connection, 'msdb.dbo.sp_help_job', {
            'job_id': job_id,
            'job_aspect': 'JOB'
        })
        return rows[0] if rows else None

    def start_job(self, connection: ServerConnection, job_id: str):
        status = self._job_status(connection, job_id)
        if status and status.get('current_execution_status') == EXECUTING:
            raise JobAlreadyRunning(f"Job {job_id} is already running")
        self.channel.run_procedure(connection, 'msdb.dbo.sp_start_job', {'job_id': job_id})
        logger.info(f"Started job {job_id}")

    def stop_job(self, connection: ServerConnection, job_id: str):
        self.channel.run_procedure(connection, 'msdb.dbo.sp_stop_job', {'job_id': job_id})
        logger.info(f"Stopped job {job_id}")

    def job_history(self, connection: ServerConnection, job_id: str, max_rows: int = 50) -> List[JobHistoryEntry]:
        """Newest first, at most max_rows entries"""
        rows = self.channel.run_procedure(connection, 'msdb.dbo.sp_help_jobhistory', {
            'job_id': job_id,
            'mode': 'FULL',
            'oldest_first': 0
        })
        return [
            JobHistoryEntry(
                id=row.get('instance_id'),
                run_date=parse_agent_datetime(row.get('run_date'), row.get('run_time')),
                step_name=row.get('step_name') or '',
                status=run_outcome(row.get('run_status')),
                message=row.get('message') or '',
                run_duration=format_run_duration(row.get('run_duration'))
            )
            for row in rows[:max_rows]
        ]
