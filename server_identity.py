import logging

from replication_errors import IdentityUnresolved
from replication_models import ServerConnection

logger = logging.getLogger(__name__)


class ServerIdentityResolver:
    """Maps a connection profile to the name the engine uses for itself"""

    def __init__(self, channel):
        self.channel = channel

    def resolve(self, connection: ServerConnection) -> str:
        """Return SERVERPROPERTY('ServerName'); local aliases never reach replication procedures"""
        rows = self.channel.run_query(connection, "SELECT SERVERPROPERTY('ServerName') AS ServerName")
        server_name = rows[0].get('ServerName') if rows else None
        if not server_name:
            raise IdentityUnresolved(f"Could not resolve server name for {connection.server_address}")
        logger.debug(f"Resolved {connection.server_address} to {server_name}")
        return server_name
