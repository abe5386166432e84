"""
Replication Topology Errors

Typed failures raised by the topology manager. Configuration operations let
these propagate to the caller; discovery and teardown catch them, log them
and move on to the next stage or database.
"""

from typing import Optional


class ReplicationError(Exception):
    """Base class for every replication topology failure"""


class IdentityUnresolved(ReplicationError):
    """The engine did not report its own server name"""


class DistributorNotConfigured(ReplicationError):
    """The server is not a usable distributor"""


class PublicationNotFound(ReplicationError):
    """The named publication does not exist in the publisher database"""

    def __init__(self, publication: str, database: str):
        super().__init__(f"Publication {publication} does not exist in {database}")
        self.publication = publication
        self.database = database


class ConnectionNotFound(ReplicationError):
    """No connection profile is registered under the requested name"""

    def __init__(self, name: str):
        super().__init__(f"No connection profile named '{name}'")
        self.name = name


class ValidationFailure(ReplicationError):
    """Malformed names or options, detected before any remote call"""


class JobAlreadyRunning(ReplicationError):
    """An agent job was asked to start while it is executing"""


class RemoteCallFailure(ReplicationError):
    """Wraps a driver error together with what the call was trying to do"""

    def __init__(self, intent: str, server: str, cause: Optional[BaseException] = None,
                 error_code: Optional[str] = None):
        message = f"{intent} failed on {server}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.intent = intent
        self.server = server
        self.cause = cause
        self.error_code = error_code
