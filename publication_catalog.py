"""
Publication Catalog

Creates publications and lists every publication on a server by asking each
online user database in turn. The engine has no server-wide publication
listing, so the catalog switches the session into each database and merges
what sp_helppublication reports there.
"""

import logging
from typing import Any, Dict, List

from distributor_manager import DistributorManager, SYSTEM_DATABASES, user_databases_query
from replication_errors import ReplicationError
from replication_models import (
    SNAPSHOT, TRANSACTIONAL, UNKNOWN, Publication, PublicationOptions, ServerConnection,
    is_true, validate_object_name,
)
from sql_channel import quote_literal, quote_name

logger = logging.getLogger(__name__)

# Shipped tables that live in dbo but are not user data
EXCLUDED_TABLES = (
    'sysdiagrams', 'dtproperties', 'syscategories', 'syscolumns', 'syscomments',
    'sysconstraints', 'sysdepends', 'sysfilegroups', 'sysfiles', 'sysfiles1',
    'sysforeignkeys', 'sysfulltextcatalogs', 'sysindexes', 'sysindexkeys',
    'sysmembers', 'sysobjects', 'syspermissions', 'sysprotects', 'sysreferences',
    'systypes', 'sysusers',
)


def publication_type(replication_frequency: Any) -> str:
    """0 is continuous (transactional); anything else is snapshot"""
    if replication_frequency == 0 and not isinstance(replication_frequency, bool):
        return TRANSACTIONAL
    return SNAPSHOT


def publication_status(value: Any) -> str:
    if value in (0, 1) and not isinstance(value, bool):
        return 'active' if value == 1 else 'inactive'
    return str(value) if value is not None else UNKNOWN


def publication_from_row(row: Dict[str, Any], database: str) -> Publication:
    """Build a Publication from one sp_helppublication row"""
    return Publication(
        name=row.get('name'),
        database=database,
        type=publication_type(row.get('replication frequency')),
        description=row.get('description') or '',
        status=publication_status(row.get('status')),
        immediate_sync=is_true(row.get('immediate_sync')),
        allow_push=is_true(row.get('allow_push')),
        allow_pull=is_true(row.get('allow_pull')),
        allow_anonymous=is_true(row.get('allow_anonymous')),
        immediate_sync_ready=is_true(row.get('immediate_sync_ready')),
        allow_sync_tran=is_true(row.get('allow_sync_tran')),
        enabled_for_internet=is_true(row.get('enabled_for_internet'))
    )


class PublicationCatalog:
    """Publication creation and server-wide listing"""

    def __init__(self, channel, distributor: DistributorManager):
        self.channel = channel
        self.distributor = distributor

    def create(self, connection: ServerConnection, options: PublicationOptions):
        """Create a publication with its snapshot agent and one article per table

        Articles are added one call at a time. A failure partway leaves the
        publication with the articles added so far; nothing is rolled back.
        """
        options.validate()
        database = options.database
        logger.info(f"Creating publication {options.name} in {database}...")

        # Step 1: Enable database for publishing (also makes it the session database)
        self.channel.run_query(connection, f"""
            USE {quote_name(database)}

            EXEC sp_replicationdboption
                @dbname = {quote_literal(database)},
                @optname = N'publish',
                @value = N'true'
        """)
        logger.info(f"Database '{database}' enabled for publishing.")

        # Step 2: Create publication
        is_snapshot = options.type == SNAPSHOT
        self.channel.run_procedure(connection, 'sp_addpublication', {
            'publication': options.name,
            'description': options.description or '',
            'sync_method': 'native' if is_snapshot else 'concurrent',
            'repl_freq': 'snapshot' if is_snapshot else 'continuous',
            'status': 'active'
        })

        # Step 3: Snapshot agent job
        self.channel.run_procedure(connection, 'sp_addpublication_snapshot', {
            'publication': options.name,
            'publisher_security_mode': 1
        })

        # Step 4: Snapshot storage location
        if options.snapshot_folder:
            self.channel.run_procedure(connection, 'sp_changepublication', {
                'publication': options.name,
                'property': 'alt_snapshot_folder',
                'value': options.snapshot_folder
            })

        # Step 5: Articles
        added = []
        for article in options.articles:
            try:
                self.channel.run_procedure(connection, 'sp_addarticle', {
                    'publication': options.name,
                    'article': article,
                    'source_owner': 'dbo',
                    'source_object': article,
                    'destination_table': article,
                    'destination_owner': 'dbo'
                })
            except ReplicationError as e:
                logger.error(f"Failed to add article {article} to {options.name}; "
                             f"publication left with {len(added)} article(s) {added}: {e}")
                raise
            added.append(article)
            logger.info(f"Article {article} added to {options.name}")

        logger.info(f"Publication {options.name} created with {len(added)} article(s).")

    def list(self, connection: ServerConnection) -> List[Publication]:
        """Every publication on the server, tagged with its database"""
        try:
            server_name = self.distributor.resolve_server_name(connection)
            if not self.distributor.validate(connection):
                logger.info(f"{server_name} is not a valid distributor, cannot retrieve publications")
                return []
            databases = self.online_user_databases(connection)
        except ReplicationError as e:
            logger.error(f"Failed to enumerate publications: {e}")
            return []

        logger.info(f"Found {len(databases)} user databases on {server_name}")
        publications = []
        for db_name in databases:
            try:
                rows = self.channel.run_query(connection, f"USE {quote_name(db_name)}\nEXEC sp_helppublication")
            except ReplicationError as e:
                logger.warning(f"Error checking publications in {db_name}: {e}")
                continue
            for row in rows:
                publication = publication_from_row(row, db_name)
                logger.debug(f"Publication {publication.name} in {db_name} is {publication.type}")
                publications.append(publication)

        logger.info(f"Retrieved {len(publications)} total publications from {server_name}")
        return publications

    def online_user_databases(self, connection: ServerConnection) -> List[str]:
        """Online databases other than the system and distribution databases"""
        excluded = SYSTEM_DATABASES + (self.distributor.default_distribution_db,)
        reported = self.distributor.current_distribution_db(connection)
        if reported not in excluded:
            excluded += (reported,)
        rows = self.channel.run_query(connection, user_databases_query(excluded, online_only=True))
        return [row['name'] for row in rows]

    def list_tables(self, connection: ServerConnection, database: str) -> List[str]:
        """User tables in dbo, without the engine's own shipped tables"""
        validate_object_name(database, 'Database')
        excluded = ', '.join(quote_literal(name) for name in EXCLUDED_TABLES)
        rows = self.channel.run_query(connection, f"""
            USE {quote_name(database)}
            SELECT t.name AS TableName
            FROM sys.tables t
            INNER JOIN sys.schemas s ON t.schema_id = s.schema_id
            WHERE t.is_ms_shipped = 0
              AND s.name = 'dbo'
              AND t.name NOT LIKE 'sys%'
              AND t.name NOT LIKE 'MS%'
              AND t.name NOT IN ({excluded})
            ORDER BY t.name
        """)
        return [row['TableName'] for row in rows]
