"""
Tests for replication agent job listing, control and history
"""

from datetime import datetime

import pytest

from agent_jobs import (
    DISTRIBUTION_AGENT, LOG_READER_AGENT, MERGE_AGENT, SNAPSHOT_AGENT, AgentJobMonitor, agent_type,
    format_run_duration, parse_agent_datetime, parse_job_name, run_outcome,
)
from conftest import remote_error
from replication_errors import JobAlreadyRunning, RemoteCallFailure

JOB_ID = '6f0c2a3e-0000-0000-0000-000000000001'


class TestDecoding:

    def test_parse_agent_datetime(self):
        assert parse_agent_datetime(20240315, 93005) == datetime(2024, 3, 15, 9, 30, 5)
        assert parse_agent_datetime(20240315, None) == datetime(2024, 3, 15)
        assert parse_agent_datetime(0, 0) is None
        assert parse_agent_datetime(20241399, 0) is None

    def test_format_run_duration(self):
        assert format_run_duration(13005) == '1:30:05'
        assert format_run_duration(45) == '0:00:45'
        assert format_run_duration(None) == '0:00:00'

    def test_run_outcome(self):
        assert [run_outcome(code) for code in range(5)] == ['Failed', 'Succeeded', 'Retry', 'Canceled', 'In Progress']
        assert run_outcome(7) == 'Unknown'

    def test_agent_type_from_category(self):
        assert agent_type('REPL-Snapshot') == SNAPSHOT_AGENT
        assert agent_type('REPL-LogReader') == LOG_READER_AGENT
        assert agent_type('REPL-Merge') == MERGE_AGENT
        assert agent_type('REPL-Distribution') == DISTRIBUTION_AGENT
        assert agent_type(None) == DISTRIBUTION_AGENT

    def test_parse_job_name(self):
        assert parse_job_name('SQL1-Sales-Orders_Pub-REPLICA-3', DISTRIBUTION_AGENT) == {
            'publisher': 'SQL1', 'publisher_db': 'Sales', 'publication': 'Orders_Pub'
        }
        assert parse_job_name('SQL1-Sales-1', LOG_READER_AGENT)['publication'] is None
        assert parse_job_name('standalone', SNAPSHOT_AGENT)['publisher'] is None


class TestListJobs:

    def test_jobs_with_runtime_status(self, channel, connection):
        channel.on_query('msdb.dbo.sysjobs', rows=[
            {'job_id': JOB_ID, 'name': 'SQL1-Sales-Orders_Pub-1', 'enabled': 1,
             'description': None, 'category_name': 'REPL-Snapshot'},
            {'job_id': 'other', 'name': 'SQL1-Sales-1', 'enabled': 0,
             'description': 'reader', 'category_name': 'REPL-LogReader'},
        ])

        def job_status(params, database):
            if params['job_id'] == 'other':
                raise remote_error('job not found')
            return [{'current_execution_status': 1, 'last_run_date': 20240101, 'last_run_time': 120000,
                     'last_run_outcome': 1, 'next_run_date': 0, 'next_run_time': 0}]

        channel.on_procedure('msdb.dbo.sp_help_job', rows=job_status)

        snapshot, reader = AgentJobMonitor(channel).list_jobs(connection)

        assert snapshot.type == SNAPSHOT_AGENT
        assert snapshot.enabled is True
        assert snapshot.is_running is True
        assert snapshot.last_run_time == datetime(2024, 1, 1, 12, 0, 0)
        assert snapshot.last_run_outcome == 'Succeeded'
        assert snapshot.next_run_time is None
        assert snapshot.description == 'Replication Snapshot Agent'
        assert snapshot.publication == 'Orders_Pub'

        assert reader.type == LOG_READER_AGENT
        assert reader.enabled is False
        assert reader.is_running is False
        assert reader.last_run_outcome is None

        [listing] = channel.queries('msdb.dbo.sysjobs')
        for category in ('REPL-Distribution', 'REPL-LogReader', 'REPL-Snapshot', 'REPL-Merge'):
            assert f"N'{category}'" in listing.text


class TestJobControl:

    def test_start_idle_job(self, channel, connection):
        channel.on_procedure('msdb.dbo.sp_help_job', rows=[{'current_execution_status': 4}])
        AgentJobMonitor(channel).start_job(connection, JOB_ID)

        assert channel.procedure_names() == ['msdb.dbo.sp_help_job', 'msdb.dbo.sp_start_job']
        assert channel.procedures('msdb.dbo.sp_start_job')[0].params == {'job_id': JOB_ID}

    def test_start_running_job(self, channel, connection):
        channel.on_procedure('msdb.dbo.sp_help_job', rows=[{'current_execution_status': 1}])

        with pytest.raises(JobAlreadyRunning):
            AgentJobMonitor(channel).start_job(connection, JOB_ID)
        assert channel.procedures('msdb.dbo.sp_start_job') == []

    def test_stop_propagates_failure(self, channel, connection):
        channel.on_procedure('msdb.dbo.sp_stop_job', error=remote_error('job is not running'))
        with pytest.raises(RemoteCallFailure):
            AgentJobMonitor(channel).stop_job(connection, JOB_ID)


class TestJobHistory:

    def test_history_is_limited_and_decoded(self, channel, connection):
        channel.on_procedure('msdb.dbo.sp_help_jobhistory', rows=[
            {'instance_id': n, 'step_name': 'Run agent.', 'run_date': 20240102, 'run_time': 10203,
             'run_duration': 205, 'run_status': n % 5, 'message': f'run {n}'}
            for n in range(5)
        ])

        history = AgentJobMonitor(channel).job_history(connection, JOB_ID, max_rows=3)

        assert [entry.id for entry in history] == [0, 1, 2]
        assert history[0].run_date == datetime(2024, 1, 2, 1, 2, 3)
        assert history[0].run_duration == '0:02:05'
        assert [entry.status for entry in history] == ['Failed', 'Succeeded', 'Retry']
        [call] = channel.procedures()
        assert call.params == {'job_id': JOB_ID, 'mode': 'FULL', 'oldest_first': 0}
