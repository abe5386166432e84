"""
Replication monitor

Reads replication performance from the distributor: tracer tokens posted
through a publication with their per-subscriber latency, the latency and
command backlog of every subscription, and per-publication counters.
check_health combines those readings with the agent jobs into one snapshot
graded against the configured thresholds.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from agent_jobs import AgentJobMonitor
from distributor_manager import DistributorManager
from replication_errors import PublicationNotFound, ReplicationError
from replication_models import UNKNOWN, ServerConnection, validate_object_name
from sql_channel import quote_literal, quote_name
from subscription_reconciler import ACTIVE_STATUS_CODES

logger = logging.getLogger(__name__)

HEALTHY = 'Healthy'
WARNING = 'Warning'
CRITICAL = 'Critical'

LATENCY = 'Latency'
PERFORMANCE = 'Performance'
AGENT_ERROR = 'Error'

TRANSACTIONAL_PUBLICATION = 0

DEFAULT_THRESHOLDS = {
    'max_latency_warning_seconds': 300,
    'max_latency_critical_seconds': 900,
    'max_pending_commands_warning': 10000,
    'max_pending_commands_critical': 50000,
    'recent_tracer_tokens': 5,
}

# sp_replmonitorhelpsubscription agent status codes
MONITOR_STATUSES = {1: 'Started', 2: 'Succeeded', 3: 'In progress', 4: 'Idle', 5: 'Retrying', 6: 'Failed'}


@dataclass
class TracerTokenResult:
    id: int
    publication: str
    publisher_commit: Optional[datetime]
    subscriber: str
    subscriber_db: str
    distributor_latency: Optional[int] = None
    subscriber_latency: Optional[int] = None
    overall_latency: Optional[int] = None


@dataclass
class SubscriptionLatency:
    publication: str
    publisher_db: str
    subscriber: str
    subscriber_db: str
    status: str
    latency_seconds: int = 0
    pending_commands: int = 0
    estimated_seconds_to_completion: int = 0
    last_sync: Optional[datetime] = None


@dataclass
class PublicationStats:
    name: str
    publisher_db: str
    subscription_count: int = 0
    article_count: int = 0
    worst_latency: int = 0
    retention_hours: Optional[int] = None


@dataclass
class Alert:
    severity: str
    category: str
    message: str
    publication: Optional[str] = None
    subscriber: Optional[str] = None
    subscriber_db: Optional[str] = None
    agent: Optional[str] = None


@dataclass
class ReplicationHealth:
    status: str = HEALTHY
    alerts: List[Alert] = field(default_factory=list)
    running_agents: int = 0
    stopped_agents: int = 0
    failed_agents: int = 0
    latency: List[SubscriptionLatency] = field(default_factory=list)
    tracer_tokens: List[TracerTokenResult] = field(default_factory=list)
    publication_stats: List[PublicationStats] = field(default_factory=list)

    def raise_alert(self, alert: Alert):
        self.alerts.append(alert)
        if alert.severity == CRITICAL or self.status == CRITICAL:
            self.status = CRITICAL
        else:
            self.status = WARNING


def _number(row: Dict[str, Any], *names: str) -> int:
    for name in names:
        if row.get(name) is not None:
            return row[name]
    return 0


def monitor_status(code: Any) -> str:
    return MONITOR_STATUSES.get(code, 'Unknown')


class ReplicationMonitor:
    """Latency, tracer token and health readings for one distributor"""

    def __init__(self, channel, distributor: DistributorManager, jobs: AgentJobMonitor,
                 thresholds: Optional[Dict[str, Any]] = None):
        self.channel = channel
        self.distributor = distributor
        self.jobs = jobs
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        self.thresholds.update(thresholds or {})

    # ---------- Tracer tokens ----------

    def publisher_database(self, connection: ServerConnection, publication: str) -> str:
        """Publication database recorded for a publication in the distribution database"""
        distribution_db = self.distributor.current_distribution_db(connection)
        db = quote_name(distribution_db)
        rows = self.channel.run_query(connection, f"""
            SELECT DISTINCT publisher_db
            FROM {db}.dbo.MSpublications
            WHERE publication = {quote_literal(publication)}
        """)
        if not rows:
            raise PublicationNotFound(publication, distribution_db)
        return rows[0]['publisher_db']

    def post_tracer_token(self, connection: ServerConnection, publication: str,
                          publisher_db: Optional[str] = None) -> Optional[int]:
        """Write a tracer token into the publication's log; returns its id"""
        validate_object_name(publication, 'Publication name')
        publisher_db = publisher_db or self.publisher_database(connection, publication)
        rows = self.channel.run_query(connection, f"""
            USE {quote_name(publisher_db)}
            SET NOCOUNT ON;
            DECLARE @tracer_id int;
            EXEC sp_posttracertoken
                @publication = {quote_literal(publication)},
                @tracer_token_id = @tracer_id OUTPUT;
            SELECT @tracer_id AS tracer_id;
        """)
        tracer_id = rows[0].get('tracer_id') if rows else None
        logger.info(f"Posted tracer token {tracer_id} for {publication} in {publisher_db}")
        return tracer_id

    def tracer_token_results(self, connection: ServerConnection,
                             publication: Optional[str] = None) -> List[TracerTokenResult]:
        """Latency history of the most recent tracer tokens of each publication

        A publication whose tokens cannot be read is logged and skipped.
        """
        results = []
        for row in self._monitored_publications(connection):
            name = row.get('publication')
            if publication and name != publication:
                continue
            publisher_db = row.get('publisher_db')
            try:
                results.extend(self._token_history(connection, name, publisher_db))
            except ReplicationError as e:
                logger.warning(f"Failed to read tracer tokens for {name} in {publisher_db}: {e}")
        return results

    def _token_history(self, connection: ServerConnection, publication: str,
                       publisher_db: str) -> List[TracerTokenResult]:
        # Both procedures run in the publication database without @publisher
        self.channel.run_query(connection, f"USE {quote_name(publisher_db)}")
        tokens = self.channel.run_procedure(connection, 'sp_helptracertokens', {'publication': publication})
        tokens.sort(key=lambda token: token.get('publisher_commit') or datetime.min, reverse=True)

        results = []
        for token in tokens[:self.thresholds['recent_tracer_tokens']]:
            history = self.channel.run_procedure(connection, 'sp_helptracertokenhistory', {
                'publication': publication,
                'tracer_id': token['tracer_id']
            })
            for entry in history:
                results.append(TracerTokenResult(
                    id=token['tracer_id'],
                    publication=publication,
                    publisher_commit=token.get('publisher_commit'),
                    subscriber=entry.get('subscriber') or UNKNOWN,
                    subscriber_db=entry.get('subscriber_db') or UNKNOWN,
                    distributor_latency=entry.get('distributor_latency'),
                    subscriber_latency=entry.get('subscriber_latency'),
                    overall_latency=entry.get('overall_latency')
                ))
        return results

    # ---------- Latency and publication counters ----------

    def _monitored_publications(self, connection: ServerConnection) -> List[Dict[str, Any]]:
        server_name = self.distributor.resolve_server_name(connection)
        db = quote_name(self.distributor.current_distribution_db(connection))
        return self.channel.run_query(
            connection,
            f"EXEC {db}.dbo.sp_replmonitorhelppublication @publisher = {quote_literal(server_name)}"
        )

    def latency_metrics(self, connection: ServerConnection) -> List[SubscriptionLatency]:
        """Latency and undelivered commands of every transactional subscription"""
        server_name = self.distributor.resolve_server_name(connection)
        db = quote_name(self.distributor.current_distribution_db(connection))
        rows = self.channel.run_query(connection, f"""
            EXEC {db}.dbo.sp_replmonitorhelpsubscription
                @publisher = {quote_literal(server_name)},
                @publication_type = {TRANSACTIONAL_PUBLICATION},
                @mode = 0
        """)
        return [
            SubscriptionLatency(
                publication=row.get('publication'),
                publisher_db=row.get('publisher_db') or UNKNOWN,
                subscriber=row.get('subscriber') or UNKNOWN,
                subscriber_db=row.get('subscriber_db') or UNKNOWN,
                status=monitor_status(row.get('status')),
                latency_seconds=_number(row, 'latency'),
                pending_commands=_number(row, 'pendingcmdcount', 'commands_in_distrib'),
                estimated_seconds_to_completion=_number(row, 'estimatedprocesstime', 'estimated_time_to_completion'),
                last_sync=row.get('last_distsync')
            )
            for row in rows
        ]

    def publication_stats(self, connection: ServerConnection) -> List[PublicationStats]:
        """Subscription and article counts per publication

        Counts that cannot be read are reported as zero.
        """
        db = quote_name(self.distributor.current_distribution_db(connection))
        statuses = ', '.join(str(code) for code in ACTIVE_STATUS_CODES)
        stats = []
        for row in self._monitored_publications(connection):
            entry = PublicationStats(
                name=row.get('publication'),
                publisher_db=row.get('publisher_db') or UNKNOWN,
                worst_latency=_number(row, 'worst_latency'),
                retention_hours=row.get('retention')
            )
            publication = quote_literal(entry.name)
            publisher_db = quote_literal(entry.publisher_db)
            try:
                counts = self.channel.run_query(connection, f"""
                    SELECT
                        (SELECT COUNT(*)
                         FROM {db}.dbo.MSsubscriptions s
                         JOIN {db}.dbo.MSpublications p ON s.publication_id = p.publication_id
                         WHERE p.publisher_db = {publisher_db}
                         AND p.publication = {publication}
                         AND s.status IN ({statuses})) AS SubscriptionCount,
                        (SELECT COUNT(*)
                         FROM {db}.dbo.MSarticles a
                         JOIN {db}.dbo.MSpublications p ON a.publication_id = p.publication_id
                         WHERE p.publisher_db = {publisher_db}
                         AND p.publication = {publication}) AS ArticleCount
                """)
                if counts:
                    entry.subscription_count = counts[0].get('SubscriptionCount') or 0
                    entry.article_count = counts[0].get('ArticleCount') or 0
            except ReplicationError as e:
                logger.warning(f"Failed to count subscriptions and articles for {entry.name}: {e}")
            stats.append(entry)
        return stats

    # ---------- Health ----------

    def check_health(self, connection: ServerConnection) -> ReplicationHealth:
        """One graded snapshot; a reading that fails is logged and left empty"""
        health = ReplicationHealth()

        try:
            jobs = self.jobs.list_jobs(connection)
        except ReplicationError as e:
            logger.warning(f"Could not read agent jobs: {e}")
            jobs = []
        for job in jobs:
            if job.is_running:
                health.running_agents += 1
            elif job.last_run_outcome == 'Failed':
                health.failed_agents += 1
                health.raise_alert(Alert(CRITICAL, AGENT_ERROR, f"Agent {job.name} failed on its last run",
                                         agent=job.name))
            else:
                health.stopped_agents += 1

        try:
            health.latency = self.latency_metrics(connection)
        except ReplicationError as e:
            logger.warning(f"Could not read subscription latency: {e}")
        for metric in health.latency:
            self._grade_latency(health, metric)

        try:
            health.tracer_tokens = self.tracer_token_results(connection)
        except ReplicationError as e:
            logger.warning(f"Could not read tracer tokens: {e}")
        for token in health.tracer_tokens:
            if (token.overall_latency or 0) > self.thresholds['max_latency_critical_seconds']:
                health.raise_alert(Alert(
                    CRITICAL, LATENCY,
                    f"Tracer token {token.id} for {token.publication} took {token.overall_latency}s",
                    publication=token.publication, subscriber=token.subscriber, subscriber_db=token.subscriber_db
                ))

        try:
            health.publication_stats = self.publication_stats(connection)
        except ReplicationError as e:
            logger.warning(f"Could not read publication statistics: {e}")

        logger.info(f"Replication health on {connection.server_address}: {health.status} "
                    f"({len(health.alerts)} alert(s))")
        return health

    def _grade_latency(self, health: ReplicationHealth, metric: SubscriptionLatency):
        source = {
            'publication': metric.publication,
            'subscriber': metric.subscriber,
            'subscriber_db': metric.subscriber_db,
        }
        if metric.latency_seconds > self.thresholds['max_latency_critical_seconds']:
            health.raise_alert(Alert(CRITICAL, LATENCY, f"High replication latency ({metric.latency_seconds}s) "
                                     f"for {metric.publication}", **source))
        elif metric.latency_seconds > self.thresholds['max_latency_warning_seconds']:
            health.raise_alert(Alert(WARNING, LATENCY, f"Elevated replication latency ({metric.latency_seconds}s) "
                                     f"for {metric.publication}", **source))

        if metric.pending_commands > self.thresholds['max_pending_commands_critical']:
            health.raise_alert(Alert(CRITICAL, PERFORMANCE, f"{metric.pending_commands} pending commands "
                                     f"for {metric.publication}", **source))
        elif metric.pending_commands > self.thresholds['max_pending_commands_warning']:
            health.raise_alert(Alert(WARNING, PERFORMANCE, f"{metric.pending_commands} pending commands "
                                     f"for {metric.publication}", **source))
