"""
Tests for tracer tokens, latency, publication counters and health grading
"""

from datetime import datetime

import pytest

from agent_jobs import AgentJobMonitor
from conftest import remote_error, script_healthy_distributor
from distributor_manager import DistributorManager
from replication_errors import PublicationNotFound, RemoteCallFailure
from replication_monitor import (
    AGENT_ERROR, CRITICAL, HEALTHY, LATENCY, PERFORMANCE, WARNING, Alert, ReplicationHealth,
    ReplicationMonitor, monitor_status,
)


def make_monitor(channel, thresholds=None):
    return ReplicationMonitor(channel, DistributorManager(channel), AgentJobMonitor(channel), thresholds)


def latency_row(**kwargs):
    row = {
        'publication': 'Orders_Pub',
        'publisher_db': 'Sales',
        'subscriber': 'REPLICA',
        'subscriber_db': 'SalesCopy',
        'status': 3,
        'latency': 0,
        'pendingcmdcount': 0,
        'estimatedprocesstime': 0,
    }
    row.update(kwargs)
    return row


def token_history(params, database):
    return [{
        'subscriber': 'REPLICA',
        'subscriber_db': 'SalesCopy',
        'distributor_latency': 1,
        'subscriber_latency': 2,
        'overall_latency': params['tracer_id'] * 10,
    }]


@pytest.fixture
def distributor_channel(channel):
    return script_healthy_distributor(channel)


class TestPostTracerToken:

    def test_runs_in_publication_database(self, distributor_channel, connection):
        distributor_channel.on_query('SELECT DISTINCT publisher_db', rows=[{'publisher_db': 'Sales'}])
        distributor_channel.on_query('sp_posttracertoken', rows=[{'tracer_id': 42}])

        assert make_monitor(distributor_channel).post_tracer_token(connection, 'Orders_Pub') == 42

        [lookup] = distributor_channel.queries('SELECT DISTINCT publisher_db')
        assert '[distribution].dbo.MSpublications' in lookup.text
        assert "publication = N'Orders_Pub'" in lookup.text
        [post] = distributor_channel.queries('sp_posttracertoken')
        assert post.database == 'Sales'
        assert "@publication = N'Orders_Pub'" in post.text
        assert '@tracer_token_id = @tracer_id OUTPUT' in post.text

    def test_explicit_database_skips_lookup(self, channel, connection):
        channel.on_query('sp_posttracertoken', rows=[{'tracer_id': 7}])

        assert make_monitor(channel).post_tracer_token(connection, 'Orders_Pub', 'Sales') == 7
        assert channel.queries('SELECT DISTINCT publisher_db') == []

    def test_unknown_publication(self, distributor_channel, connection):
        with pytest.raises(PublicationNotFound):
            make_monitor(distributor_channel).post_tracer_token(connection, 'Missing_Pub')
        assert distributor_channel.queries('sp_posttracertoken') == []


class TestTracerTokenResults:

    def test_newest_tokens_first_and_limited(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelppublication',
                                     rows=[{'publisher_db': 'Sales', 'publication': 'Orders_Pub'}])
        distributor_channel.on_procedure('sp_helptracertokens', rows=[
            {'tracer_id': 1, 'publisher_commit': datetime(2024, 1, 1)},
            {'tracer_id': 2, 'publisher_commit': datetime(2024, 1, 3)},
            {'tracer_id': 3, 'publisher_commit': datetime(2024, 1, 2)},
        ])
        distributor_channel.on_procedure('sp_helptracertokenhistory', rows=token_history)

        results = make_monitor(distributor_channel, {'recent_tracer_tokens': 2}).tracer_token_results(connection)

        assert [r.id for r in results] == [2, 3]
        assert results[0].overall_latency == 20
        assert results[0].publisher_commit == datetime(2024, 1, 3)
        assert results[0].subscriber_db == 'SalesCopy'
        assert {c.database for c in distributor_channel.procedures('sp_helptracertokenhistory')} == {'Sales'}
        [listing] = distributor_channel.queries('sp_replmonitorhelppublication')
        assert "[distribution].dbo.sp_replmonitorhelppublication @publisher = N'SQL1'" in listing.text

    def test_failing_publication_is_skipped(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelppublication', rows=[
            {'publisher_db': 'Broken', 'publication': 'Bad_Pub'},
            {'publisher_db': 'Sales', 'publication': 'Orders_Pub'},
        ])
        distributor_channel.on_query('USE [Broken]', error=remote_error('Database is offline'))
        distributor_channel.on_procedure('sp_helptracertokens',
                                         rows=[{'tracer_id': 1, 'publisher_commit': datetime(2024, 1, 1)}])
        distributor_channel.on_procedure('sp_helptracertokenhistory', rows=token_history)

        results = make_monitor(distributor_channel).tracer_token_results(connection)

        assert [r.publication for r in results] == ['Orders_Pub']

    def test_filter_by_publication(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelppublication', rows=[
            {'publisher_db': 'Sales', 'publication': 'Orders_Pub'},
            {'publisher_db': 'Sales', 'publication': 'Nightly'},
        ])
        make_monitor(distributor_channel).tracer_token_results(connection, 'Nightly')

        assert [c.params['publication'] for c in distributor_channel.procedures('sp_helptracertokens')] == ['Nightly']


class TestLatencyMetrics:

    def test_rows_decoded(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelpsubscription', rows=[
            latency_row(latency=42, pendingcmdcount=120, estimatedprocesstime=7)
        ])

        [metric] = make_monitor(distributor_channel).latency_metrics(connection)

        assert metric.publication == 'Orders_Pub'
        assert metric.subscriber_db == 'SalesCopy'
        assert metric.status == 'In progress'
        assert metric.latency_seconds == 42
        assert metric.pending_commands == 120
        assert metric.estimated_seconds_to_completion == 7

        [query] = distributor_channel.queries('sp_replmonitorhelpsubscription')
        assert '[distribution].dbo.sp_replmonitorhelpsubscription' in query.text
        assert "@publisher = N'SQL1'" in query.text
        assert '@publication_type = 0' in query.text

    def test_missing_counters_are_zero(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelpsubscription', rows=[
            {'publication': 'Orders_Pub', 'subscriber_db': 'SalesCopy', 'latency': None}
        ])
        [metric] = make_monitor(distributor_channel).latency_metrics(connection)
        assert (metric.latency_seconds, metric.pending_commands) == (0, 0)
        assert metric.status == 'Unknown'

    def test_failure_propagates(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelpsubscription', error=remote_error('no permission'))
        with pytest.raises(RemoteCallFailure):
            make_monitor(distributor_channel).latency_metrics(connection)

    def test_status_codes(self):
        assert [monitor_status(code) for code in range(1, 7)] == [
            'Started', 'Succeeded', 'In progress', 'Idle', 'Retrying', 'Failed'
        ]
        assert monitor_status(None) == 'Unknown'


class TestPublicationStats:

    @pytest.fixture
    def stats_channel(self, distributor_channel):
        distributor_channel.on_query('sp_replmonitorhelppublication', rows=[
            {'publisher_db': 'Sales', 'publication': 'Orders_Pub', 'worst_latency': 12, 'retention': 72},
        ])
        return distributor_channel

    def test_counts(self, stats_channel, connection):
        stats_channel.on_query('AS ArticleCount', rows=[{'SubscriptionCount': 2, 'ArticleCount': 5}])

        [stats] = make_monitor(stats_channel).publication_stats(connection)

        assert (stats.name, stats.publisher_db) == ('Orders_Pub', 'Sales')
        assert (stats.subscription_count, stats.article_count) == (2, 5)
        assert stats.worst_latency == 12
        assert stats.retention_hours == 72
        [counts] = stats_channel.queries('AS ArticleCount')
        assert 's.status IN (1, 2)' in counts.text
        assert '[distribution].dbo.MSarticles' in counts.text

    def test_count_failure_reports_zero(self, stats_channel, connection):
        stats_channel.on_query('AS ArticleCount', error=remote_error('MSarticles missing'))

        [stats] = make_monitor(stats_channel).publication_stats(connection)

        assert (stats.subscription_count, stats.article_count) == (0, 0)


class TestHealth:

    def test_quiet_server_is_healthy(self, distributor_channel, connection):
        health = make_monitor(distributor_channel).check_health(connection)

        assert health.status == HEALTHY
        assert health.alerts == []
        assert (health.running_agents, health.stopped_agents, health.failed_agents) == (0, 0, 0)

    def test_elevated_latency_warns(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelpsubscription', rows=[latency_row(latency=400)])

        health = make_monitor(distributor_channel).check_health(connection)

        assert health.status == WARNING
        [alert] = health.alerts
        assert (alert.severity, alert.category) == (WARNING, LATENCY)
        assert alert.subscriber_db == 'SalesCopy'

    def test_command_backlog_is_critical(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelpsubscription', rows=[latency_row(pendingcmdcount=60000)])

        health = make_monitor(distributor_channel).check_health(connection)

        assert health.status == CRITICAL
        assert [(a.severity, a.category) for a in health.alerts] == [(CRITICAL, PERFORMANCE)]

    def test_configured_thresholds(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelpsubscription', rows=[latency_row(latency=40)])

        health = make_monitor(distributor_channel, {'max_latency_warning_seconds': 30}).check_health(connection)

        assert health.status == WARNING

    def test_slow_tracer_token_is_critical(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelppublication',
                                     rows=[{'publisher_db': 'Sales', 'publication': 'Orders_Pub'}])
        distributor_channel.on_procedure('sp_helptracertokens',
                                         rows=[{'tracer_id': 100, 'publisher_commit': datetime(2024, 1, 1)}])
        distributor_channel.on_procedure('sp_helptracertokenhistory', rows=token_history)

        health = make_monitor(distributor_channel).check_health(connection)

        assert health.status == CRITICAL
        assert [a.category for a in health.alerts] == [LATENCY]
        assert health.tracer_tokens[0].overall_latency == 1000

    def test_agent_counts_and_failed_agent(self, distributor_channel, connection):
        distributor_channel.on_query('msdb.dbo.sysjobs', rows=[
            {'job_id': 'a', 'name': 'SQL1-Sales-1', 'enabled': 1, 'category_name': 'REPL-LogReader'},
            {'job_id': 'b', 'name': 'SQL1-Sales-Orders_Pub-1', 'enabled': 1, 'category_name': 'REPL-Snapshot'},
            {'job_id': 'c', 'name': 'SQL1-Sales-Orders_Pub-REPLICA-2', 'enabled': 1,
             'category_name': 'REPL-Distribution'},
        ])
        statuses = {
            'a': {'current_execution_status': 1, 'last_run_outcome': 1},
            'b': {'current_execution_status': 4, 'last_run_outcome': 1},
            'c': {'current_execution_status': 4, 'last_run_outcome': 0},
        }
        distributor_channel.on_procedure('msdb.dbo.sp_help_job', rows=lambda params, db: [statuses[params['job_id']]])

        health = make_monitor(distributor_channel).check_health(connection)

        assert (health.running_agents, health.stopped_agents, health.failed_agents) == (1, 1, 1)
        assert health.status == CRITICAL
        [alert] = health.alerts
        assert alert.category == AGENT_ERROR
        assert alert.agent == 'SQL1-Sales-Orders_Pub-REPLICA-2'

    def test_failed_reading_is_left_empty(self, distributor_channel, connection):
        distributor_channel.on_query('sp_replmonitorhelpsubscription', error=remote_error('no permission'))
        distributor_channel.on_query('sp_replmonitorhelppublication', error=remote_error('no permission'))

        health = make_monitor(distributor_channel).check_health(connection)

        assert health.status == HEALTHY
        assert health.latency == []
        assert health.tracer_tokens == []
        assert health.publication_stats == []

    def test_warning_never_downgrades_critical(self):
        health = ReplicationHealth()
        health.raise_alert(Alert(CRITICAL, LATENCY, 'slow'))
        health.raise_alert(Alert(WARNING, PERFORMANCE, 'backlog'))
        assert health.status == CRITICAL
        assert len(health.alerts) == 2
