"""
Subscription Topology Reconciler

SQL Server has no single call that lists a server's subscriptions, so
discovery runs a cascade of strategies in decreasing order of confidence:

1. direct query of the distribution database (publisher-rooted edges)
2. direct query of the same metadata for edges where this server subscribes
3. sp_helpsubscription / sp_helppullsubscription in every user database,
   only when 1 and 2 found nothing
4. one inferred candidate per publication, only when nothing was found at all

Candidates are folded into a SubscriptionSet keyed by (publication,
subscriber database) where pull always wins over push, and every survivor
is re-confirmed against live state before it is returned.

The inferred stage guesses the subscriber database and probes agent job
names by substring. It can misattribute topology when names share
fragments; only the verification pass makes its candidates trustworthy.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from distributor_manager import DistributorManager
from publication_catalog import PublicationCatalog
from replication_errors import PublicationNotFound, ReplicationError, ValidationFailure
from replication_models import (
    PULL, PUSH, SQL_AUTH, SYNC_AUTOMATIC, SYNC_IMMEDIATE, SYNC_MANUAL, SUBSCRIPTION_TYPES, UNKNOWN,
    ServerConnection, Subscription, SubscriptionOptions, validate_object_name,
)
from sql_channel import quote_literal, quote_name

logger = logging.getLogger(__name__)

ACTIVE_STATUS_CODES = (1, 2)
REPLICATION_JOB_CATEGORIES = ('REPL-Distribution', 'REPL-Merge')
INFERRED_SUBSCRIBER_PLACEHOLDER = UNKNOWN

EXPECTED_PUSH_ERRORS = ('does not exist', 'not enabled for publication', 'not a publisher')
EXPECTED_PULL_ERRORS = ('no pull subscriptions', 'not enabled for publication', 'not a subscriber')

SYNC_TYPE_PARAMETERS = {
    SYNC_AUTOMATIC: 'automatic',
    SYNC_IMMEDIATE: 'none',
    SYNC_MANUAL: 'replication support only',
}


def map_sync_type_option(sync_type: str) -> str:
    """Translate a sync type option to sp_addsubscription's @sync_type"""
    return SYNC_TYPE_PARAMETERS[sync_type]


def map_subscription_status(status: Any) -> str:
    return {0: 'Inactive', 1: 'Subscribed', 2: 'Active'}.get(status, 'Unknown')


def map_sync_type(sync_type: Any) -> str:
    return {
        0: 'automatic',
        1: 'no sync',
        2: 'initialize only',
        3: 'initialize with backup',
        4: 'replication support only',
    }.get(sync_type, 'unknown')


def decode_subscription_type(value: Any, default: str = PUSH) -> str:
    """0/1 codes from metadata tables, or 'Push'/'Pull' text from procedures"""
    if isinstance(value, int) and not isinstance(value, bool):
        return PULL if value == 1 else PUSH
    if isinstance(value, str) and value.strip():
        return PULL if 'pull' in value.lower() else PUSH
    return default


def like_fragment(value: str) -> str:
    """Escape LIKE wildcards so a name matches as a literal substring"""
    return value.replace('[', '[[]').replace('%', '[%]').replace('_', '[_]')


def _first(row: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = row.get(name)
        if value not in (None, ''):
            return value
    return None


# ---------- Merge ----------

class SubscriptionSet:
    """Ordered candidates, at most one per (publication, subscriber database)

    A later candidate replaces an existing one only when it is pull and the
    existing one is push. Once a key is pull it stays pull.
    """

    def __init__(self, candidates: Iterable[Subscription] = ()):
        self._entries: Dict[Tuple[str, str], Subscription] = {}
        self.extend(candidates)

    def add(self, candidate: Subscription) -> bool:
        key = candidate.key
        existing = self._entries.get(key)
        if existing is None:
            self._entries[key] = candidate
            return True
        if candidate.subscription_type == PULL and existing.subscription_type == PUSH:
            self._entries[key] = candidate
            logger.debug(f"Pull candidate replaced push for {key}")
            return True
        return False

    def extend(self, candidates: Iterable[Subscription]):
        for candidate in candidates:
            self.add(candidate)

    def __len__(self):
        return len(self._entries)

    def __bool__(self):
        return bool(self._entries)

    def to_list(self) -> List[Subscription]:
        return list(self._entries.values())


def merge_candidates(*stages: Iterable[Subscription]) -> List[Subscription]:
    """Fold candidate lists in order under the pull-wins policy"""
    merged = SubscriptionSet()
    for candidates in stages:
        merged.extend(candidates)
    return merged.to_list()


# ---------- Discovery ----------

@dataclass
class DiscoveryContext:
    """Facts gathered once at the start of a discovery run"""
    connection: ServerConnection
    server_name: str
    distribution_db: Optional[str] = None
    databases: List[str] = field(default_factory=list)


def _subscription_rows_query(distribution_db: str, where: str) -> str:
    db = quote_name(distribution_db)
    statuses = ', '.join(str(code) for code in ACTIVE_STATUS_CODES)
    return f"""
        SELECT DISTINCT
            pubsrv.name AS publisher,
            sub.publisher_db,
            p.publication,
            subsrv.name AS subscriber,
            sub.subscriber_db,
            sub.subscription_type, -- 0 = push, 1 = pull
            sub.sync_type,
            sub.status
        FROM {db}.dbo.MSsubscriptions sub
        JOIN {db}.dbo.MSpublications p ON sub.publication_id = p.publication_id
        LEFT JOIN sys.servers pubsrv ON p.publisher_id = pubsrv.server_id
        LEFT JOIN sys.servers subsrv ON sub.subscriber_id = subsrv.server_id
        WHERE {where}
        AND sub.status IN ({statuses})
    """


class SubscriptionReconciler:
    """Discovers, verifies, creates and drops subscriptions"""

    def __init__(self, channel, distributor: DistributorManager, catalog: PublicationCatalog):
        self.channel = channel
        self.distributor = distributor
        self.catalog = catalog

    def discover(self, connection: ServerConnection) -> List[Subscription]:
        """Reconstruct the server's subscriptions from every available source"""
        try:
            context = self._build_context(connection)
        except ReplicationError as e:
            logger.error(f"Failed to start subscription discovery on {connection.server_address}: {e}")
            return []

        found = SubscriptionSet()
        found.extend(self._run_stage('direct metadata query', self.direct_metadata_candidates, context))
        found.extend(self._run_stage('pull-specific query', self.pull_metadata_candidates, context))

        if not found:
            found.extend(self._run_stage('legacy procedures', self.legacy_procedure_candidates, context))

        if not found:
            found.extend(self._run_stage('inferred fallback', self.inferred_candidates, context))

        verified = []
        for candidate in found.to_list():
            confirmed_type = self._confirm(connection, candidate, context.distribution_db)
            if confirmed_type is None:
                logger.info(f"Filtering out subscription {candidate.name}: no live source confirms it")
                continue
            # Verification may upgrade push to pull, never the reverse
            if candidate.subscription_type == PULL:
                confirmed_type = PULL
            verified.append(replace(candidate, subscription_type=confirmed_type))

        logger.info(f"Retrieved {len(verified)} verified subscriptions from {context.server_name}")
        return verified

    def _build_context(self, connection: ServerConnection) -> DiscoveryContext:
        server_name = self.distributor.resolve_server_name(connection)
        context = DiscoveryContext(connection=connection, server_name=server_name)

        if self.distributor.validate(connection):
            try:
                info = self.distributor.get_info(connection)
                context.distribution_db = info.distribution_db or self.distributor.default_distribution_db
            except ReplicationError as e:
                logger.warning(f"Could not read distributor info, assuming default database: {e}")
                context.distribution_db = self.distributor.default_distribution_db
        else:
            logger.info(f"{server_name} is not a working distributor; metadata queries skipped")

        try:
            context.databases = self.catalog.online_user_databases(connection)
        except ReplicationError as e:
            logger.warning(f"Could not enumerate user databases on {server_name}: {e}")
        return context

    def _run_stage(self, label: str, strategy: Callable[[DiscoveryContext], List[Subscription]],
                   context: DiscoveryContext) -> List[Subscription]:
        try:
            candidates = strategy(context)
        except ReplicationError as e:
            logger.warning(f"Discovery stage '{label}' failed: {e}")
            return []
        logger.info(f"Discovery stage '{label}' found {len(candidates)} candidate(s)")
        return candidates

    # Stage 1
    def direct_metadata_candidates(self, context: DiscoveryContext) -> List[Subscription]:
        if not context.distribution_db:
            return []
        rows = self.channel.run_query(context.connection, _subscription_rows_query(
            context.distribution_db, f"pubsrv.name = {quote_literal(context.server_name)}"
        ))
        return [
            Subscription(
                publication=row['publication'],
                publisher=row.get('publisher') or context.server_name,
                publisher_db=row.get('publisher_db') or UNKNOWN,
                subscriber=row.get('subscriber') or UNKNOWN,
                subscriber_db=row['subscriber_db'],
                subscription_type=decode_subscription_type(row.get('subscription_type')),
                sync_type=map_sync_type(row.get('sync_type')),
                status=map_subscription_status(row.get('status'))
            )
            for row in rows
        ]

    # Stage 2
    def pull_metadata_candidates(self, context: DiscoveryContext) -> List[Subscription]:
        if not context.distribution_db:
            return []
        rows = self.channel.run_query(context.connection, _subscription_rows_query(
            context.distribution_db, f"subsrv.name = {quote_literal(context.server_name)}"
        ))
        return [
            Subscription(
                publication=row['publication'],
                publisher=row.get('publisher') or UNKNOWN,
                publisher_db=row.get('publisher_db') or UNKNOWN,
                subscriber=context.server_name,
                subscriber_db=row['subscriber_db'],
                subscription_type=PULL,
                sync_type=map_sync_type(row.get('sync_type')),
                status=map_subscription_status(row.get('status'))
            )
            for row in rows
        ]

    # Stage 3
    def legacy_procedure_candidates(self, context: DiscoveryContext) -> List[Subscription]:
        connection = context.connection
        candidates = []
        for db_name in context.databases:
            try:
                self.channel.run_query(connection, f"USE {quote_name(db_name)}")
            except ReplicationError as e:
                logger.warning(f"Error switching to database {db_name}: {e}")
                continue

            try:
                rows = self.channel.run_procedure(connection, 'sp_helpsubscription', {'publication': '%'})
                for row in rows:
                    subscriber_db = _first(row, 'subscriber_db', 'destination database') or db_name
                    candidates.append(Subscription(
                        publication=row['publication'],
                        publisher=_first(row, 'publisher') or context.server_name,
                        publisher_db=_first(row, 'publisher_db') or db_name,
                        subscriber=_first(row, 'subscriber') or UNKNOWN,
                        subscriber_db=subscriber_db,
                        subscription_type=decode_subscription_type(_first(row, 'subscription_type', 'subscription type')),
                        sync_type=map_sync_type(_first(row, 'sync_type', 'synchronization type')),
                        status=map_subscription_status(_first(row, 'status', 'subscription status'))
                    ))
                if rows:
                    logger.info(f"sp_helpsubscription found {len(rows)} entries in {db_name}")
            except ReplicationError as e:
                self._log_procedure_error('sp_helpsubscription', db_name, e, EXPECTED_PUSH_ERRORS)

            try:
                rows = self.channel.run_procedure(connection, 'sp_helppullsubscription', {'publication': '%'})
                for row in rows:
                    candidates.append(Subscription(
                        publication=row['publication'],
                        publisher=_first(row, 'publisher') or UNKNOWN,
                        publisher_db=_first(row, 'publisher_db', 'publisher database') or UNKNOWN,
                        subscriber=context.server_name,
                        subscriber_db=db_name,
                        subscription_type=PULL
                    ))
                if rows:
                    logger.info(f"sp_helppullsubscription found {len(rows)} entries in {db_name}")
            except ReplicationError as e:
                self._log_procedure_error('sp_helppullsubscription', db_name, e, EXPECTED_PULL_ERRORS)

        return candidates

    def _log_procedure_error(self, procedure: str, db_name: str, error: ReplicationError,
                             expected: Tuple[str, ...]):
        message = str(error).lower()
        if any(fragment in message for fragment in expected):
            logger.debug(f"{procedure} in {db_name}: {error}")
        else:
            logger.warning(f"Error running {procedure} in {db_name}: {error}")

    # Stage 4
    def inferred_candidates(self, context: DiscoveryContext) -> List[Subscription]:
        """Best-effort guesses, one per publication; verification decides what survives"""
        candidates = []
        for publication in self.catalog.list(context.connection):
            others = [db for db in context.databases if db != publication.database]
            subscriber_db = others[0] if others else INFERRED_SUBSCRIBER_PLACEHOLDER

            is_pull = False
            try:
                is_pull = self._replication_job_exists(context.connection, publication.name, subscriber_db)
            except ReplicationError as e:
                logger.info(f"Error checking for pull agent job for {publication.name}: {e}")

            candidates.append(Subscription(
                publication=publication.name,
                publisher=context.server_name,
                publisher_db=publication.database,
                subscriber=context.server_name if is_pull else UNKNOWN,
                subscriber_db=subscriber_db,
                subscription_type=PULL if is_pull else PUSH
            ))
        return candidates

    def _replication_job_exists(self, connection: ServerConnection, publication: str, subscriber_db: str,
                                enabled_only: bool = False) -> bool:
        pattern = f"%{like_fragment(publication)}%{like_fragment(subscriber_db)}%"
        categories = ', '.join(quote_literal(name) for name in REPLICATION_JOB_CATEGORIES)
        sql = f"""
            SELECT COUNT(*) AS JobCount
            FROM msdb.dbo.sysjobs j
            JOIN msdb.dbo.syscategories c ON j.category_id = c.category_id
            WHERE j.name LIKE {quote_literal(pattern)}
            AND c.name IN ({categories})
        """
        if enabled_only:
            sql += "AND j.enabled = 1\n"
        rows = self.channel.run_query(connection, sql)
        return bool(rows and rows[0].get('JobCount'))

    # ---------- Verification ----------

    def verify_subscription_exists(self, connection: ServerConnection, subscription: Subscription) -> bool:
        """True when any live source still confirms the subscription"""
        distribution_db = None
        try:
            distribution_db = self.distributor.get_info(connection).distribution_db
        except ReplicationError as e:
            logger.info(f"Could not read distributor info while verifying {subscription.name}: {e}")
        return self._confirm(connection, subscription, distribution_db) is not None

    def _confirm(self, connection: ServerConnection, subscription: Subscription,
                 distribution_db: Optional[str]) -> Optional[str]:
        """Subscription type confirmed by the first source that knows the edge, or None"""
        # (a) pull subscription registered in the subscriber database
        try:
            self.channel.run_query(connection, f"USE {quote_name(subscription.subscriber_db)}")
            rows = self.channel.run_procedure(connection, 'sp_helppullsubscription', {
                'publisher': subscription.publisher,
                'publisher_db': subscription.publisher_db,
                'publication': subscription.publication
            })
            if rows:
                return PULL
        except ReplicationError as e:
            logger.debug(f"Pull subscription check for {subscription.name} failed: {e}")

        # (b) enabled pull agent job
        try:
            if self._replication_job_exists(connection, subscription.publication, subscription.subscriber_db,
                                            enabled_only=True):
                return PULL
        except ReplicationError as e:
            logger.debug(f"Agent job check for {subscription.name} failed: {e}")

        # (c) active row in the distribution database
        db = quote_name(distribution_db or self.distributor.default_distribution_db)
        statuses = ', '.join(str(code) for code in ACTIVE_STATUS_CODES)
        try:
            rows = self.channel.run_query(connection, f"""
                SELECT TOP 1 sub.subscription_type
                FROM {db}.dbo.MSsubscriptions sub
                JOIN {db}.dbo.MSpublications p ON sub.publication_id = p.publication_id
                WHERE p.publication = {quote_literal(subscription.publication)}
                AND sub.subscriber_db = {quote_literal(subscription.subscriber_db)}
                AND sub.status IN ({statuses})
            """)
            if rows:
                return decode_subscription_type(rows[0].get('subscription_type'))
        except ReplicationError as e:
            logger.debug(f"Distribution metadata check for {subscription.name} failed: {e}")

        return None

    # ---------- Lifecycle ----------

    def create_subscription(self, connection: ServerConnection, options: SubscriptionOptions):
        """Register a subscription and add its push or pull agent job"""
        options.validate()
        publication = options.publication_name
        logger.info(f"Creating {options.type} subscription {publication} -> "
                    f"{options.subscriber_server}/{options.subscriber_database}")

        rows = self.channel.run_query(connection, f"""
            USE {quote_name(options.publisher_database)}
            SELECT CASE WHEN EXISTS (
                SELECT 1 FROM syspublications WHERE name = {quote_literal(publication)}
            ) THEN 1 ELSE 0 END AS PublicationExists
        """)
        if not rows or not rows[0].get('PublicationExists'):
            raise PublicationNotFound(publication, options.publisher_database)

        self.channel.run_query(
            connection,
            f"IF DB_ID({quote_literal(options.subscriber_database)}) IS NULL "
            f"CREATE DATABASE {quote_name(options.subscriber_database)};"
        )

        # Session is still in the publication database
        self.channel.run_procedure(connection, 'sp_addsubscription', {
            'publication': publication,
            'subscriber': options.subscriber_server,
            'destination_db': options.subscriber_database,
            'subscription_type': options.type,
            'sync_type': map_sync_type_option(options.sync_type)
        })

        use_sql_auth = options.authentication == SQL_AUTH
        if options.type == PUSH:
            params = {
                'publication': publication,
                'subscriber': options.subscriber_server,
                'subscriber_db': options.subscriber_database
            }
            if use_sql_auth:
                params.update({
                    'job_login': options.login,
                    'job_password': options.password,
                    'subscriber_security_mode': 0
                })
            self.channel.run_procedure(connection, 'sp_addpushsubscription_agent', params)
        else:
            params = {
                'publication': publication,
                'publisher': options.publisher_server,
                'publisher_db': options.publisher_database
            }
            if use_sql_auth:
                params.update({
                    'job_login': options.login,
                    'job_password': options.password,
                    'publisher_security_mode': 0
                })
            self.channel.run_procedure(connection, 'sp_addpullsubscription_agent', params)
        logger.info(f"Subscription {options.subscription_name or publication} created")

    def drop_subscription(self, connection: ServerConnection, subscription: Subscription):
        """Push subscriptions drop all articles at the publisher; pull ones drop at the subscriber"""
        self._validate_edge(subscription)
        if subscription.subscription_type == PUSH:
            self.channel.run_query(connection, f"USE {quote_name(subscription.publisher_db)}")
            self.channel.run_procedure(connection, 'sp_dropsubscription', {
                'publication': subscription.publication,
                'subscriber': subscription.subscriber,
                'destination_db': subscription.subscriber_db,
                'article': 'all'
            })
        else:
            self.channel.run_query(connection, f"USE {quote_name(subscription.subscriber_db)}")
            self.channel.run_procedure(connection, 'sp_droppullsubscription', {
                'publisher': subscription.publisher,
                'publisher_db': subscription.publisher_db,
                'publication': subscription.publication
            })
        logger.info(f"Dropped {subscription.subscription_type} subscription {subscription.name}")

    def reinitialize_subscription(self, connection: ServerConnection, subscription: Subscription):
        """Mark the subscription for a fresh snapshot on the next agent run"""
        self._validate_edge(subscription)
        self.channel.run_query(connection, f"USE {quote_name(subscription.publisher_db)}")
        self.channel.run_procedure(connection, 'sp_reinitsubscription', {
            'publication': subscription.publication,
            'subscriber': subscription.subscriber,
            'destination_db': subscription.subscriber_db,
            'publisher': subscription.publisher,
            'publisher_db': subscription.publisher_db,
            'noexec': 0
        })
        logger.info(f"Reinitialized subscription {subscription.name}")

    def _validate_edge(self, subscription: Subscription):
        validate_object_name(subscription.publication, 'Publication name')
        validate_object_name(subscription.publisher, 'Publisher server')
        validate_object_name(subscription.publisher_db, 'Publisher database')
        validate_object_name(subscription.subscriber, 'Subscriber server')
        validate_object_name(subscription.subscriber_db, 'Subscriber database')
        if subscription.subscription_type not in SUBSCRIPTION_TYPES:
            raise ValidationFailure(f"Unknown subscription type '{subscription.subscription_type}'")
