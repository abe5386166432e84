"""
Distributor Lifecycle Manager

Configures a SQL Server instance as its own distributor and publisher,
reports and validates the distributor configuration, and tears every piece
of replication state back down.

Configuration is fail-fast: each step depends on the previous one, so the
first remote error stops the sequence. Teardown is best-effort: every stage
runs even when an earlier one failed, and the outcome of each is reported.
"""

import logging
from typing import Callable, List, Optional, Tuple

from replication_errors import DistributorNotConfigured, ReplicationError, ValidationFailure
from replication_models import (
    DistributorInfo, RemoteDistributor, ServerConnection, StepOutcome, TeardownReport,
    is_true, validate_object_name,
)
from server_identity import ServerIdentityResolver
from sql_channel import quote_literal, quote_name

logger = logging.getLogger(__name__)

DEFAULT_DISTRIBUTION_DB = 'distribution'
DISTRIBUTION_METADATA_TABLE = 'MSdistribution_agents'
SYSTEM_DATABASES = ('master', 'tempdb', 'model', 'msdb')

# configure() walks these states in order
UNCONFIGURED = 'Unconfigured'
DISTRIBUTOR_INSTALLED = 'DistributorInstalled'
DISTRIBUTION_DB_CREATED = 'DistributionDbCreated'
PUBLISHER_REGISTERED = 'PublisherRegistered'

# remove_replication() stages
STRIP_DATABASES = 'remove_database_replication'
DROP_PUBLISHER = 'drop_publisher'
DROP_DISTRIBUTION_DB = 'drop_distribution_database'
DROP_DISTRIBUTOR = 'drop_distributor'


def user_databases_query(excluded: Tuple[str, ...], online_only: bool = False) -> str:
    """sys.databases minus the system databases and the given extras"""
    names = ', '.join(quote_literal(name) for name in excluded)
    sql = f"SELECT name FROM sys.databases WHERE name NOT IN ({names})"
    if online_only:
        sql += "\nAND state = 0 -- online only"
    return sql + "\nORDER BY name"


def default_working_directory(server_name: str) -> str:
    return f"\\\\{server_name}\\repldata"


class DistributorManager:
    """Distributor/publisher configuration of a single server"""

    def __init__(self, channel, identity: Optional[ServerIdentityResolver] = None,
                 default_distribution_db: str = DEFAULT_DISTRIBUTION_DB):
        self.channel = channel
        self.identity = identity or ServerIdentityResolver(channel)
        self.default_distribution_db = default_distribution_db

    def resolve_server_name(self, connection: ServerConnection) -> str:
        return self.identity.resolve(connection)

    # ---------- Configuration ----------

    def configure(self, connection: ServerConnection, distribution_db: str = DEFAULT_DISTRIBUTION_DB,
                  working_directory: Optional[str] = None, password: Optional[str] = None) -> str:
        """Install the distributor, its database and register the server as publisher"""
        validate_object_name(distribution_db, 'Distribution database')
        if not password:
            raise ValidationFailure("A distributor administrative password is required")

        state = UNCONFIGURED
        try:
            server_name = self.identity.resolve(connection)
            logger.info(f"Configuring {server_name} as distributor...")

            self.channel.run_query(connection, 'USE [master]')

            # Step 1: Add distributor
            self.channel.run_procedure(connection, 'sp_adddistributor', {
                'distributor': server_name,
                'password': password
            })
            state = DISTRIBUTOR_INSTALLED
            logger.info('Distributor configured.')

            # Step 2: Create distribution database
            self.channel.run_procedure(connection, 'sp_adddistributiondb', {
                'database': distribution_db,
                'data_folder': None,
                'data_file': None,
                'log_folder': None,
                'log_file': None,
                'security_mode': 1,
                'login': None,
                'password': None
            })
            state = DISTRIBUTION_DB_CREATED
            logger.info(f"Distribution database {distribution_db} configured.")

            # Step 3: Add publisher
            self.channel.run_procedure(connection, 'sp_adddistpublisher', {
                'publisher': server_name,
                'distribution_db': distribution_db,
                'working_directory': working_directory or default_working_directory(server_name),
                'security_mode': 1
            })
            state = PUBLISHER_REGISTERED
            logger.info('Publisher configured.')
            return state

        except ReplicationError as e:
            logger.error(f"Distributor configuration stopped at state {state}: {e}")
            raise

    # ---------- Status ----------

    def get_info(self, connection: ServerConnection) -> DistributorInfo:
        """Current distributor configuration, read fresh every time"""
        rows = self.channel.run_query(connection, 'EXEC sp_get_distributor')
        if not rows:
            return DistributorInfo()
        result = rows[0]
        return DistributorInfo(
            is_distributor=is_true(result.get('installed')),
            is_publisher=is_true(result.get('is distribution publisher')),
            distribution_db=result.get('distribution db'),
            working_directory=result.get('directory'),
            remote=RemoteDistributor(
                is_remote=is_true(result.get('has remote distribution publisher')),
                server_name=result.get('distribution server')
            )
        )

    def validate(self, connection: ServerConnection) -> bool:
        """True when the server is a distributor whose distribution database is usable"""
        try:
            info = self.get_info(connection)
            if not info.is_distributor:
                logger.info(f"{connection.server_address} is not marked as a distributor")
                return False

            distribution_db = info.distribution_db or self.default_distribution_db
            if not self._database_exists(connection, distribution_db):
                logger.info(f"Distribution database '{distribution_db}' does not exist")
                return False

            # The metadata table check is advisory: an error here does not
            # override the two positive answers above
            try:
                rows = self.channel.run_query(connection, (
                    f"USE {quote_name(distribution_db)}\n"
                    f"SELECT CASE WHEN OBJECT_ID({quote_literal(DISTRIBUTION_METADATA_TABLE)}) IS NOT NULL "
                    f"THEN 1 ELSE 0 END AS TableExists"
                ))
                if not rows or not rows[0].get('TableExists'):
                    logger.info(f"Distribution database '{distribution_db}' does not contain {DISTRIBUTION_METADATA_TABLE}")
                    return False
            except ReplicationError as e:
                logger.warning(f"Could not check tables in '{distribution_db}', accepting distributor: {e}")

            return True

        except ReplicationError as e:
            logger.warning(f"Distributor validation failed, falling back to existence check: {e}")
            try:
                if self._database_exists(connection, DEFAULT_DISTRIBUTION_DB):
                    logger.info(f"Fallback check: '{DEFAULT_DISTRIBUTION_DB}' database exists")
                    return True
            except ReplicationError as fallback_error:
                logger.error(f"Fallback validation also failed: {fallback_error}")
            return False

    def require_valid(self, connection: ServerConnection):
        if not self.validate(connection):
            raise DistributorNotConfigured(f"{connection.server_address} is not configured as a distributor")

    def _database_exists(self, connection: ServerConnection, database: str) -> bool:
        rows = self.channel.run_query(
            connection,
            f"SELECT CASE WHEN DB_ID({quote_literal(database)}) IS NOT NULL THEN 1 ELSE 0 END AS DatabaseExists"
        )
        return bool(rows and rows[0].get('DatabaseExists'))

    # ---------- Teardown ----------

    def remove_replication(self, connection: ServerConnection) -> TeardownReport:
        """Strip all replication state from the server, continuing past failures"""
        server_name = self.identity.resolve(connection)
        distribution_db = self.current_distribution_db(connection)
        report = TeardownReport(server_name=server_name)
        logger.info(f"Removing replication from {server_name} (distribution database {distribution_db})")

        steps: List[Tuple[str, Callable[[], None]]] = [
            (STRIP_DATABASES, lambda: self._strip_databases(connection, distribution_db, report)),
            (DROP_PUBLISHER, lambda: self.channel.run_procedure(connection, 'sp_dropdistpublisher', {
                'publisher': server_name,
                'no_checks': 1
            })),
            (DROP_DISTRIBUTION_DB, lambda: self._drop_distribution_db(connection, distribution_db)),
            (DROP_DISTRIBUTOR, lambda: self.channel.run_procedure(connection, 'sp_dropdistributor', {
                'no_checks': 1,
                'ignore_distributor': 1
            })),
        ]

        for name, step in steps:
            try:
                step()
                report.steps.append(StepOutcome(name, True))
                logger.info(f"Teardown step {name} completed")
            except ReplicationError as e:
                report.steps.append(StepOutcome(name, False, str(e)))
                logger.warning(f"Teardown step {name} failed, continuing: {e}")

        if report.succeeded:
            logger.info(f"Replication removed from {server_name}")
        else:
            logger.warning(f"Replication teardown on {server_name} incomplete: {', '.join(report.failed_steps)}")
        return report

    def current_distribution_db(self, connection: ServerConnection) -> str:
        """Distribution database reported by sp_get_distributor, else the configured default"""
        try:
            info = self.get_info(connection)
            if info.distribution_db:
                return info.distribution_db
        except ReplicationError as e:
            logger.warning(f"Could not read distributor info, assuming '{self.default_distribution_db}': {e}")
        return self.default_distribution_db

    def _strip_databases(self, connection: ServerConnection, distribution_db: str, report: TeardownReport):
        self.channel.run_query(connection, 'USE [master]')
        rows = self.channel.run_query(connection, user_databases_query(SYSTEM_DATABASES + (distribution_db,)))
        for row in rows:
            db_name = row['name']
            try:
                self.channel.run_procedure(connection, 'sp_removedbreplication', {'dbname': db_name})
                report.database_outcomes.append(StepOutcome(db_name, True))
                logger.info(f"Disabled replication for database: {db_name}")
            except ReplicationError as e:
                report.database_outcomes.append(StepOutcome(db_name, False, str(e)))
                logger.warning(f"Failed to disable replication for {db_name}, continuing: {e}")

    def _drop_distribution_db(self, connection: ServerConnection, distribution_db: str):
        # Single-user mode forces out sessions still holding the database
        self.channel.run_query(connection, f"""
            IF EXISTS (SELECT 1 FROM sys.databases WHERE name = {quote_literal(distribution_db)})
            BEGIN
                ALTER DATABASE {quote_name(distribution_db)} SET SINGLE_USER WITH ROLLBACK IMMEDIATE;
                EXEC sp_dropdistributiondb @database = {quote_literal(distribution_db)};
            END
        """)
