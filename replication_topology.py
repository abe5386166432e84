#!/usr/bin/env python3
"""
Replication topology command line

Runs one topology operation against a server named in the configuration file
and prints the result as JSON.

Examples:
  replication-topology --server primary identity
  replication-topology --server primary configure
  replication-topology --server primary subscriptions
  replication-topology --server primary create-publication --name SalesPub --database Sales \\
      --article Orders --article Customers
  replication-topology --server primary drop-subscription --publication SalesPub \\
      --publisher-db Sales --subscriber REPLICA --subscriber-db SalesCopy --type push
  replication-topology --server primary jobs history --job-id <job id>
  replication-topology --server primary monitor post-token --publication SalesPub
  replication-topology --server primary monitor health
"""

import argparse
import dataclasses
import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from agent_jobs import AgentJobMonitor
from distributor_manager import DistributorManager
from publication_catalog import PublicationCatalog
from replication_config import ConnectionRegistry, load_config, setup_logging
from replication_errors import ReplicationError
from replication_models import (
    AUTHENTICATION_MODES, PUSH, REPLICATION_TYPES, SUBSCRIPTION_TYPES, SYNC_AUTOMATIC, SYNC_TYPES,
    TRANSACTIONAL, UNKNOWN, WINDOWS_AUTH, PublicationOptions, Subscription, SubscriptionOptions,
)
from replication_monitor import ReplicationMonitor
from server_identity import ServerIdentityResolver
from sql_channel import SqlCommandChannel
from subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger('replication_topology')


class TopologyManager:
    """Wires the topology components around one shared channel"""

    def __init__(self, channel, config: Dict[str, Any]):
        rep_cfg = config.get('replication', {})
        self.config = config
        self.channel = channel
        self.identity = ServerIdentityResolver(channel)
        self.distributor = DistributorManager(
            channel, self.identity, rep_cfg.get('distribution_database', 'distribution')
        )
        self.catalog = PublicationCatalog(channel, self.distributor)
        self.subscriptions = SubscriptionReconciler(channel, self.distributor, self.catalog)
        self.jobs = AgentJobMonitor(channel)
        self.monitor = ReplicationMonitor(channel, self.distributor, self.jobs, config.get('monitoring'))


def to_json(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='replication-topology',
        description="Manage SQL Server distributor, publication and subscription topology",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split('Examples:', 1)[1] if __doc__ else None,
    )
    parser.add_argument('--config', help="Configuration file (default: $CONFIG_FILE or replication_topology.json)")
    parser.add_argument('--server', required=True, help="Connection profile name from the servers section")

    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('identity', help="Server name as reported by the engine")
    commands.add_parser('distributor-status', help="Current distributor configuration")
    commands.add_parser('validate', help="Check that the server is a usable distributor")

    configure = commands.add_parser('configure', help="Install distributor, distribution database and publisher")
    configure.add_argument('--distribution-db', help="Distribution database name")
    configure.add_argument('--working-directory', help="Snapshot working directory share")
    configure.add_argument('--password', help="Distributor administrative password")

    commands.add_parser('teardown', help="Remove all replication configuration")
    commands.add_parser('publications', help="List publications in every user database")

    create_pub = commands.add_parser('create-publication', help="Create a publication with articles")
    create_pub.add_argument('--name', required=True)
    create_pub.add_argument('--database', required=True)
    create_pub.add_argument('--article', action='append', default=[], dest='articles', help="Table to publish (repeatable)")
    create_pub.add_argument('--type', choices=REPLICATION_TYPES, default=TRANSACTIONAL)
    create_pub.add_argument('--description', default='')
    create_pub.add_argument('--snapshot-folder')

    tables = commands.add_parser('tables', help="User tables that can be published")
    tables.add_argument('--database', required=True)

    commands.add_parser('subscriptions', help="Discover and verify subscriptions")

    create_sub = commands.add_parser('create-subscription', help="Create a push or pull subscription")
    create_sub.add_argument('--publication', required=True)
    create_sub.add_argument('--publisher', required=True)
    create_sub.add_argument('--publisher-db', required=True)
    create_sub.add_argument('--subscriber', required=True)
    create_sub.add_argument('--subscriber-db', required=True)
    create_sub.add_argument('--type', choices=SUBSCRIPTION_TYPES, default=PUSH)
    create_sub.add_argument('--sync-type', choices=SYNC_TYPES, default=SYNC_AUTOMATIC)
    create_sub.add_argument('--authentication', choices=AUTHENTICATION_MODES, default=WINDOWS_AUTH)
    create_sub.add_argument('--login')
    create_sub.add_argument('--password')

    for command in ('drop-subscription', 'reinitialize'):
        edge = commands.add_parser(command, help=f"{command.replace('-', ' ').capitalize()} of one subscription")
        edge.add_argument('--publication', required=True)
        edge.add_argument('--publisher', help="Publisher server (default: resolved server name)")
        edge.add_argument('--publisher-db', required=True)
        edge.add_argument('--subscriber', default=UNKNOWN)
        edge.add_argument('--subscriber-db', required=True)
        edge.add_argument('--type', choices=SUBSCRIPTION_TYPES, default=PUSH)

    jobs = commands.add_parser('jobs', help="Replication agent jobs")
    jobs.add_argument('action', choices=['list', 'start', 'stop', 'history'], nargs='?', default='list')
    jobs.add_argument('--job-id')
    jobs.add_argument('--max-rows', type=int, default=50)

    monitor = commands.add_parser('monitor', help="Replication latency, tracer tokens and health")
    monitor.add_argument('action', choices=['health', 'latency', 'stats', 'tokens', 'post-token'], nargs='?', default='health')
    monitor.add_argument('--publication')
    monitor.add_argument('--publisher-db', help="Publication database (default: looked up in the distribution database)")

    return parser


def _edge(manager: TopologyManager, connection, args) -> Subscription:
    return Subscription(
        publication=args.publication,
        publisher=args.publisher or manager.identity.resolve(connection),
        publisher_db=args.publisher_db,
        subscriber=args.subscriber,
        subscriber_db=args.subscriber_db,
        subscription_type=args.type
    )


def run_command(manager: TopologyManager, connection, args) -> Any:
    """Dispatch one parsed command; ReplicationError propagates"""
    rep_cfg = manager.config.get('replication', {})
    command = args.command

    if command == 'identity':
        return {'server_name': manager.identity.resolve(connection)}
    if command == 'distributor-status':
        return manager.distributor.get_info(connection)
    if command == 'validate':
        return {'valid': manager.distributor.validate(connection)}
    if command == 'configure':
        state = manager.distributor.configure(
            connection,
            distribution_db=args.distribution_db or rep_cfg.get('distribution_database', 'distribution'),
            working_directory=args.working_directory or rep_cfg.get('working_directory'),
            password=args.password or rep_cfg.get('distributor_password')
        )
        return {'state': state}
    if command == 'teardown':
        return manager.distributor.remove_replication(connection)
    if command == 'publications':
        return manager.catalog.list(connection)
    if command == 'create-publication':
        manager.distributor.require_valid(connection)
        manager.catalog.create(connection, PublicationOptions(
            name=args.name,
            database=args.database,
            articles=args.articles,
            type=args.type,
            description=args.description,
            snapshot_folder=args.snapshot_folder or rep_cfg.get('snapshot_folder')
        ))
        return {'created': args.name}
    if command == 'tables':
        return manager.catalog.list_tables(connection, args.database)
    if command == 'subscriptions':
        return manager.subscriptions.discover(connection)
    if command == 'create-subscription':
        manager.subscriptions.create_subscription(connection, SubscriptionOptions(
            publication_name=args.publication,
            publisher_server=args.publisher,
            publisher_database=args.publisher_db,
            subscriber_server=args.subscriber,
            subscriber_database=args.subscriber_db,
            type=args.type,
            sync_type=args.sync_type,
            authentication=args.authentication,
            login=args.login,
            password=args.password
        ))
        return {'created': f"{args.publication}_{args.subscriber_db}"}
    if command == 'drop-subscription':
        subscription = _edge(manager, connection, args)
        manager.subscriptions.drop_subscription(connection, subscription)
        return {'dropped': subscription.name}
    if command == 'reinitialize':
        subscription = _edge(manager, connection, args)
        manager.subscriptions.reinitialize_subscription(connection, subscription)
        return {'reinitialized': subscription.name}
    if command == 'jobs':
        if args.action == 'list':
            return manager.jobs.list_jobs(connection)
        if not args.job_id:
            raise ReplicationError(f"jobs {args.action} needs --job-id")
        if args.action == 'start':
            manager.jobs.start_job(connection, args.job_id)
            return {'started': args.job_id}
        if args.action == 'stop':
            manager.jobs.stop_job(connection, args.job_id)
            return {'stopped': args.job_id}
        return manager.jobs.job_history(connection, args.job_id, args.max_rows)
    if command == 'monitor':
        if args.action == 'latency':
            return manager.monitor.latency_metrics(connection)
        if args.action == 'stats':
            return manager.monitor.publication_stats(connection)
        if args.action == 'tokens':
            return manager.monitor.tracer_token_results(connection, args.publication)
        if args.action == 'post-token':
            if not args.publication:
                raise ReplicationError("monitor post-token needs --publication")
            tracer_id = manager.monitor.post_tracer_token(connection, args.publication, args.publisher_db)
            return {'publication': args.publication, 'tracer_id': tracer_id}
        return manager.monitor.check_health(connection)
    raise ReplicationError(f"Unknown command {command}")


def main(argv: Optional[List[str]] = None, channel=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"Error: configuration file not found: {args.config or 'replication_topology.json'}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as e:
        print(f"Error: invalid JSON in configuration file: {e}", file=sys.stderr)
        return 1

    setup_logging(config)
    channel = channel or SqlCommandChannel.from_config(config)
    try:
        connection = ConnectionRegistry.from_config(config).get(args.server)
        result = run_command(TopologyManager(channel, config), connection, args)
        print(json.dumps(result, default=to_json, indent=2))
        return 0
    except ReplicationError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        channel.close_all_connections()


if __name__ == '__main__':
    sys.exit(main())
