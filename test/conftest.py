"""
Shared fakes for the topology tests.

FakeChannel stands in for SqlCommandChannel: it records every query and
procedure call together with the session database at the time of the call,
follows USE statements the way a real pooled session would, and answers
from scripted rules instead of a server.
"""

import re

import pytest

from replication_errors import RemoteCallFailure
from replication_models import ServerConnection

USE_LINE = re.compile(r'^\s*USE\s+\[(?P<db>(?:[^\]]|\]\])+)\]\s*;?\s*$', re.IGNORECASE)


def remote_error(message='boom', intent='EXEC', server='sql1'):
    return RemoteCallFailure(intent, server, Exception(message))


class Call:
    def __init__(self, kind, text, params, database):
        self.kind = kind
        self.text = text
        self.params = params
        self.database = database

    def __repr__(self):
        return f"Call({self.kind}, {self.text[:40]!r}, {self.params}, db={self.database})"


class FakeChannel:
    """Scripted replacement for SqlCommandChannel

    Rules are matched newest first, so a test can override a default set up
    by a helper. A query rule matches when its fragment occurs in the batch
    text; a procedure rule matches on the exact procedure name. `rows` may be
    a callable taking (text_or_params, database) for data that depends on the
    session database.
    """

    def __init__(self, database='master'):
        self.database = database
        self.calls = []
        self.rules = []
        self.closed = False

    # ---------- scripting ----------

    def on_query(self, fragment, rows=None, error=None, database=None):
        self.rules.append(('query', fragment, rows, error, database))
        return self

    def on_procedure(self, name, rows=None, error=None, database=None):
        self.rules.append(('procedure', name, rows, error, database))
        return self

    def _answer(self, kind, key, payload):
        for rule_kind, match, rows, error, database in reversed(self.rules):
            if rule_kind != kind:
                continue
            if kind == 'query' and match not in key:
                continue
            if kind == 'procedure' and match != key:
                continue
            if database is not None and database != self.database:
                continue
            if error is not None:
                raise error
            if callable(rows):
                return rows(payload, self.database)
            return list(rows or [])
        return []

    # ---------- channel contract ----------

    def run_query(self, connection, text):
        previous = self.database
        for line in text.strip().splitlines():
            match = USE_LINE.match(line)
            if match:
                self.database = match.group('db').replace(']]', ']')
        self.calls.append(Call('query', text, None, self.database))
        try:
            return self._answer('query', text, text)
        except RemoteCallFailure:
            # A failed batch leaves the session where it was
            self.database = previous
            raise

    def run_procedure(self, connection, name, params=None):
        params = dict(params or {})
        self.calls.append(Call('procedure', name, params, self.database))
        return self._answer('procedure', name, params)

    def close_all_connections(self):
        self.closed = True

    # ---------- inspection ----------

    def queries(self, fragment=''):
        return [call for call in self.calls if call.kind == 'query' and fragment in call.text]

    def procedures(self, name=None):
        return [call for call in self.calls if call.kind == 'procedure' and (name is None or call.text == name)]

    def procedure_names(self):
        return [call.text for call in self.procedures()]


def script_healthy_distributor(channel, server='SQL1', distribution_db='distribution',
                               databases=('Sales', 'Reporting')):
    """Identity, sp_get_distributor, validation and database listing of a configured server"""
    channel.on_query("SERVERPROPERTY('ServerName')", rows=[{'ServerName': server}])
    channel.on_query('EXEC sp_get_distributor', rows=[{
        'installed': 1,
        'distribution server': server,
        'distribution db installed': 1,
        'is distribution publisher': 1,
        'has remote distribution publisher': 0,
        'distribution db': distribution_db,
        'directory': f'\\\\{server}\\repldata',
    }])
    channel.on_query(f"DB_ID(N'{distribution_db}')", rows=[{'DatabaseExists': 1}])
    channel.on_query("OBJECT_ID(N'MSdistribution_agents')", rows=[{'TableExists': 1}])
    channel.on_query('state = 0', rows=[{'name': name} for name in databases])
    return channel


@pytest.fixture
def connection():
    return ServerConnection(name='primary', host='sql1.example.com', port=1433)


@pytest.fixture
def channel():
    return FakeChannel()
