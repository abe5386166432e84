"""
Replication Topology Data Model

Plain records exchanged between the topology components and their callers,
plus validation of the creation options consumed by the create operations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from replication_errors import ValidationFailure

SNAPSHOT = 'snapshot'
TRANSACTIONAL = 'transactional'
REPLICATION_TYPES = (SNAPSHOT, TRANSACTIONAL)

PUSH = 'push'
PULL = 'pull'
SUBSCRIPTION_TYPES = (PUSH, PULL)

SYNC_AUTOMATIC = 'automatic'
SYNC_IMMEDIATE = 'immediate'
SYNC_MANUAL = 'manual'
SYNC_TYPES = (SYNC_AUTOMATIC, SYNC_IMMEDIATE, SYNC_MANUAL)

WINDOWS_AUTH = 'windows'
SQL_AUTH = 'sql'
AUTHENTICATION_MODES = (WINDOWS_AUTH, SQL_AUTH)

UNKNOWN = 'unknown'
MAX_NAME_LENGTH = 128


def is_true(value: Any) -> bool:
    """Normalize the engine's boolean encodings (bit, 1/0) to a bool"""
    if isinstance(value, bool):
        return value
    return isinstance(value, int) and value == 1


def validate_object_name(value: Optional[str], what: str) -> str:
    """Reject names that cannot be a SQL Server identifier"""
    if value is None or not str(value).strip():
        raise ValidationFailure(f"{what} must not be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValidationFailure(f"{what} '{value[:20]}...' exceeds {MAX_NAME_LENGTH} characters")
    if any(ord(ch) < 32 for ch in value):
        raise ValidationFailure(f"{what} contains control characters")
    return value


@dataclass
class ServerConnection:
    """Connection profile for a managed SQL Server instance"""
    name: str
    host: str
    port: Optional[int] = None
    authentication: str = WINDOWS_AUTH
    username: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None

    @property
    def server_address(self) -> str:
        if self.port:
            return f"{self.host},{self.port}"
        return self.host

    @property
    def pool_key(self) -> str:
        return f"{self.server_address}:{self.database or 'master'}:{self.username or 'windows'}"


@dataclass
class RemoteDistributor:
    is_remote: bool = False
    server_name: Optional[str] = None


@dataclass
class DistributorInfo:
    """Live distributor configuration as reported by sp_get_distributor"""
    is_distributor: bool = False
    is_publisher: bool = False
    distribution_db: Optional[str] = None
    working_directory: Optional[str] = None
    remote: RemoteDistributor = field(default_factory=RemoteDistributor)


@dataclass
class Publication:
    name: str
    database: str
    type: str
    description: str = ''
    status: str = UNKNOWN
    immediate_sync: bool = False
    allow_push: bool = False
    allow_pull: bool = False
    allow_anonymous: bool = False
    immediate_sync_ready: bool = False
    allow_sync_tran: bool = False
    enabled_for_internet: bool = False

    @property
    def key(self):
        return (self.database, self.name)


@dataclass
class Subscription:
    """One publication -> subscriber database edge of the topology"""
    publication: str
    publisher: str
    publisher_db: str
    subscriber_db: str
    subscription_type: str = PUSH
    sync_type: str = SYNC_AUTOMATIC
    status: str = 'Active'
    subscriber: str = UNKNOWN
    name: str = ''
    last_sync: Optional[datetime] = None

    def __post_init__(self):
        if not self.name:
            self.name = f"{self.publication}_{self.subscriber_db}"

    @property
    def key(self):
        """Deduplication identity: (publication, subscriber database)"""
        return (self.publication.strip().lower(), self.subscriber_db.strip().lower())


@dataclass
class PublicationOptions:
    """Parameters for creating a publication"""
    name: str
    database: str
    articles: List[str]
    type: str = TRANSACTIONAL
    description: str = ''
    snapshot_folder: Optional[str] = None

    def validate(self):
        validate_object_name(self.name, 'Publication name')
        validate_object_name(self.database, 'Publication database')
        if self.type not in REPLICATION_TYPES:
            raise ValidationFailure(f"Unknown publication type '{self.type}'")
        if not self.articles:
            raise ValidationFailure(f"Publication {self.name} needs at least one article")
        for article in self.articles:
            validate_object_name(article, 'Article name')
        if self.snapshot_folder is not None and not self.snapshot_folder.strip():
            raise ValidationFailure("Snapshot folder must not be blank")


@dataclass
class SubscriptionOptions:
    """Parameters for creating a subscription"""
    publication_name: str
    publisher_server: str
    publisher_database: str
    subscriber_server: str
    subscriber_database: str
    type: str = PUSH
    sync_type: str = SYNC_AUTOMATIC
    subscription_name: Optional[str] = None
    authentication: str = WINDOWS_AUTH
    login: Optional[str] = None
    password: Optional[str] = None

    def validate(self):
        validate_object_name(self.publication_name, 'Publication name')
        validate_object_name(self.publisher_server, 'Publisher server')
        validate_object_name(self.publisher_database, 'Publisher database')
        validate_object_name(self.subscriber_server, 'Subscriber server')
        validate_object_name(self.subscriber_database, 'Subscriber database')
        if self.type not in SUBSCRIPTION_TYPES:
            raise ValidationFailure(f"Unknown subscription type '{self.type}'")
        if self.sync_type not in SYNC_TYPES:
            raise ValidationFailure(f"Unknown sync type '{self.sync_type}'")
        if self.authentication not in AUTHENTICATION_MODES:
            raise ValidationFailure(f"Unknown authentication mode '{self.authentication}'")
        if self.authentication == SQL_AUTH and not (self.login and self.password):
            raise ValidationFailure("SQL authentication requires a login and a password")


@dataclass
class StepOutcome:
    name: str
    succeeded: bool
    error: Optional[str] = None


@dataclass
class TeardownReport:
    """Outcome of every independent stage of a replication teardown"""
    server_name: str
    steps: List[StepOutcome] = field(default_factory=list)
    database_outcomes: List[StepOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(step.succeeded for step in self.steps)

    @property
    def failed_steps(self) -> List[str]:
        return [step.name for step in self.steps if not step.succeeded]

    def outcome(self, name: str) -> Optional[StepOutcome]:
        for step in self.steps:
            if step.name == name:
                return step
        return None
