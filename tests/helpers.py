"""Test helpers: an in-memory stand-in for the source and target stores.

InMemoryStore.connect has the same call shape as pyodbc.connect and is passed
to ConnectionManager as its connect_factory, so tests exercise the real
pooling, transaction and error-translation code. The fake cursor understands
exactly the parameterized statements the engine issues (keyset pages, IN
lists, inserts, correction updates, chunked deletes and the reconciliation
queries); anything else raises pyodbc.ProgrammingError so a new statement
shape shows up as a test failure rather than silently passing.

Target tables enforce a unique legacy id column and optional per-column
CHECK constraints, and writes are transactional (rollback restores the
snapshot taken at the first write).
"""

import copy
import re

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pyodbc

from legacy_migrator.config.config_manager import DatabaseConfig
from legacy_migrator.database.connection_manager import ConnectionManager
from legacy_migrator.models import (
    EntityDescriptor,
    FieldMapping,
    ForeignKeyMapping,
    MigrationContract,
)


_TABLE = r"(?:\[\w+\]\.)?\[(\w+)\]"

_SELECT_ONE = re.compile(r"^SELECT 1 AS ok$")
_COLUMNS = re.compile(r"^SELECT COLUMN_NAME FROM INFORMATION_SCHEMA\.COLUMNS "
                      r"WHERE TABLE_SCHEMA = \? AND TABLE_NAME = \?$")
_PAGE = re.compile(r"^SELECT TOP \(\?\) (?P<cols>.+?) FROM " + _TABLE +
                   r"(?: WHERE (?P<where>.+?))? ORDER BY \[(?P<order>\w+)\]$")
_COUNT = re.compile(r"^SELECT COUNT\(\*\) AS row_count FROM " + _TABLE +
                    r"(?: WHERE \[(?P<notnull>\w+)\] IS NOT NULL)?$")
_DUPLICATES = re.compile(r"^SELECT \[(?P<col>\w+)\], COUNT\(\*\) AS duplicate_count FROM " + _TABLE +
                         r" WHERE \[\w+\] IS NOT NULL GROUP BY \[\w+\] HAVING COUNT\(\*\) > 1$")
_ORPHANS = re.compile(r"^SELECT c\.\[(?P<legacy>\w+)\], c\.\[(?P<fk>\w+)\] FROM " + _TABLE +
                      r" AS c LEFT JOIN " + _TABLE.replace("(\\w+)", "(?P<parent>\\w+)", 1) +
                      r" AS p ON c\.\[\w+\] = p\.\[(?P<key>\w+)\] WHERE .+ IS NULL$")
_SELECT_IN = re.compile(r"^SELECT (?P<cols>\*|\[\w+\]) FROM " + _TABLE +
                        r" WHERE \[(?P<col>\w+)\] IN \((?P<ph>[?, ]+)\)$")
_SELECT_EQ = re.compile(r"^SELECT \[(?P<select>\w+)\] FROM " + _TABLE + r" WHERE \[(?P<col>\w+)\] = \?$")
_INSERT = re.compile(r"^INSERT INTO " + _TABLE + r" \((?P<cols>[^)]*)\) VALUES \((?P<ph>[?, ]+)\)$")
_UPDATE = re.compile(r"^UPDATE " + _TABLE + r" SET (?P<sets>.+) WHERE \[(?P<col>\w+)\] = \?$")
_DELETE = re.compile(r"^DELETE TOP \(\?\) FROM " + _TABLE + r" WHERE \[(?P<col>\w+)\] IS NOT NULL$")
_BRACKETED = re.compile(r"\[(\w+)\]")

ODBC_PREFIX = "[Microsoft][ODBC Driver 17 for SQL Server][SQL Server]"


def odbc_error(error_class, sqlstate: str, text: str) -> Exception:
    """A pyodbc error shaped like the driver raises it: (sqlstate, "[sqlstate] [Microsoft]...text")."""
    return error_class(sqlstate, f"[{sqlstate}] {ODBC_PREFIX}{text}")


class FakeTable:
    """One table: ordered columns, rows as dicts, optional identity key and constraints."""

    def __init__(self, name: str, columns: Iterable[str], identity_column: Optional[str] = None,
                 unique_columns: Iterable[str] = (), checks: Optional[Dict[str, Callable[[Any], bool]]] = None,
                 identity_start: int = 1000, max_lengths: Optional[Dict[str, int]] = None):
        self.name = name
        self.columns = list(columns)
        self.identity_column = identity_column
        self.unique_columns = list(unique_columns)
        self.checks = checks or {}
        self.max_lengths = max_lengths or {}
        self.rows: List[Dict[str, Any]] = []
        self.next_identity = identity_start

    def insert(self, values: Dict[str, Any]) -> None:
        for column in values:
            if column not in self.columns:
                raise odbc_error(pyodbc.ProgrammingError, '42S22', f"Invalid column name '{column}'.")
        row = {column: values.get(column) for column in self.columns}
        if self.identity_column:
            if values.get(self.identity_column) is not None:
                raise odbc_error(pyodbc.IntegrityError, '23000',
                                 f"Cannot insert explicit value for identity column in table '{self.name}'")
            row[self.identity_column] = self.next_identity

        for column, max_length in self.max_lengths.items():
            value = row.get(column)
            if isinstance(value, str) and len(value) > max_length:
                raise odbc_error(pyodbc.DataError, '22001', "String or binary data would be truncated. (8152)")
        for column in self.unique_columns:
            value = row.get(column)
            if value is not None and any(existing.get(column) == value for existing in self.rows):
                raise odbc_error(
                    pyodbc.IntegrityError, '23000',
                    f"Cannot insert duplicate key row in object 'dbo.{self.name}' with unique index "
                    f"'UX_{self.name}_{column}'. The duplicate key value is ({value})."
                )
        for column, check in self.checks.items():
            if not check(row.get(column)):
                raise odbc_error(
                    pyodbc.IntegrityError, '23000',
                    f"The INSERT statement conflicted with the CHECK constraint "
                    f"\"CK_{self.name}_{column}\". The conflict occurred in table \"dbo.{self.name}\"."
                )

        if self.identity_column:
            self.next_identity += 1
        self.rows.append(row)

    def ids(self, column: str) -> List[Any]:
        return [row[column] for row in self.rows]


class FakeDatabase:
    """A named set of tables plus knobs for injecting connection failures."""

    def __init__(self, name: str):
        self.name = name
        self.tables: Dict[str, FakeTable] = {}
        self.statements: List[str] = []
        self.fail_next_writes = 0
        self.fail_next_statements = 0
        # 1-based ordinals of write statements that lose the connection
        self.fail_on_writes: Set[int] = set()
        self.write_count = 0

    def add_table(self, table: FakeTable) -> FakeTable:
        self.tables[table.name] = table
        return table

    def table(self, name: str) -> FakeTable:
        try:
            return self.tables[name]
        except KeyError:
            raise odbc_error(pyodbc.ProgrammingError, '42S02', f"Invalid object name '{name}'.")

    def snapshot(self):
        return copy.deepcopy({name: (t.rows, t.next_identity) for name, t in self.tables.items()})

    def restore(self, snapshot) -> None:
        for name, (rows, next_identity) in snapshot.items():
            self.tables[name].rows = rows
            self.tables[name].next_identity = next_identity


class FakeCursor:
    """Cursor interpreting the engine's statement shapes."""

    def __init__(self, connection: 'FakeConnection'):
        self.connection = connection
        self.database = connection.database
        self.description = None
        self.rowcount = -1
        self.fast_executemany = False
        self._rows: List[tuple] = []

    def execute(self, sql: str, params: Optional[Iterable[Any]] = None) -> 'FakeCursor':
        params = list(params or [])
        self.database.statements.append(sql)
        if self.database.fail_next_statements > 0:
            self.database.fail_next_statements -= 1
            raise odbc_error(pyodbc.OperationalError, '08S01', 'Communication link failure')
        self._dispatch(sql.strip(), params)
        return self

    def executemany(self, sql: str, seq_of_params: Iterable[Iterable[Any]]) -> None:
        for params in seq_of_params:
            self.execute(sql, params)

    def fetchall(self) -> List[tuple]:
        rows, self._rows = self._rows, []
        return rows

    def close(self) -> None:
        pass

    def _result(self, columns: List[str], rows: List[Dict[str, Any]]) -> None:
        self.description = [(column, None, None, None, None, None, True) for column in columns]
        self._rows = [tuple(row.get(column) for column in columns) for row in rows]
        self.rowcount = -1

    def _no_result(self, rowcount: int) -> None:
        self.description = None
        self._rows = []
        self.rowcount = rowcount

    def _begin_write(self) -> None:
        self.database.write_count += 1
        lost = self.database.write_count in self.database.fail_on_writes
        if self.database.fail_next_writes > 0:
            self.database.fail_next_writes -= 1
            lost = True
        if lost:
            raise odbc_error(pyodbc.OperationalError, '08S01', 'Communication link failure')
        self.connection.begin()

    def _dispatch(self, sql: str, params: List[Any]) -> None:
        match = _SELECT_ONE.match(sql)
        if match:
            self._result(['ok'], [{'ok': 1}])
            return

        match = _COLUMNS.match(sql)
        if match:
            table = self.database.tables.get(params[1])
            columns = table.columns if table else []
            self._result(['COLUMN_NAME'], [{'COLUMN_NAME': c} for c in columns])
            return

        match = _PAGE.match(sql)
        if match:
            self._select_page(match, params)
            return

        match = _COUNT.match(sql)
        if match:
            rows = self.database.table(match.group(1)).rows
            if match.group('notnull'):
                rows = [r for r in rows if r.get(match.group('notnull')) is not None]
            self._result(['row_count'], [{'row_count': len(rows)}])
            return

        match = _DUPLICATES.match(sql)
        if match:
            column = match.group('col')
            counts: Dict[Any, int] = {}
            for row in self.database.table(match.group(2)).rows:
                if row.get(column) is not None:
                    counts[row[column]] = counts.get(row[column], 0) + 1
            self._result([column, 'duplicate_count'],
                         [{column: value, 'duplicate_count': n} for value, n in counts.items() if n > 1])
            return

        match = _ORPHANS.match(sql)
        if match:
            legacy, fk, key = match.group('legacy'), match.group('fk'), match.group('key')
            parent_keys = set(self.database.table(match.group('parent')).ids(key))
            orphans = [row for row in self.database.table(match.group(3)).rows
                       if row.get(legacy) is not None and row.get(fk) is not None
                       and row[fk] not in parent_keys]
            self._result([legacy, fk], orphans)
            return

        match = _SELECT_IN.match(sql)
        if match:
            table = self.database.table(match.group(2))
            wanted = set(params)
            rows = [row for row in table.rows if row.get(match.group('col')) in wanted]
            columns = table.columns if match.group('cols') == '*' else [match.group('cols')[1:-1]]
            self._result(columns, rows)
            return

        match = _SELECT_EQ.match(sql)
        if match:
            table = self.database.table(match.group(2))
            rows = [row for row in table.rows if row.get(match.group('col')) == params[0]]
            self._result([match.group('select')], rows)
            return

        match = _INSERT.match(sql)
        if match:
            self._begin_write()
            columns = _BRACKETED.findall(match.group('cols'))
            self.database.table(match.group(1)).insert(dict(zip(columns, params)))
            self._no_result(1)
            return

        match = _UPDATE.match(sql)
        if match:
            self._begin_write()
            table = self.database.table(match.group(1))
            set_columns = _BRACKETED.findall(match.group('sets'))
            values, key = params[:-1], params[-1]
            updated = 0
            for row in table.rows:
                if row.get(match.group('col')) == key:
                    row.update(dict(zip(set_columns, values)))
                    updated += 1
            self._no_result(updated)
            return

        match = _DELETE.match(sql)
        if match:
            self._begin_write()
            table = self.database.table(match.group(1))
            column = match.group('col')
            limit = params[0]
            doomed = [row for row in table.rows if row.get(column) is not None][:limit]
            table.rows = [row for row in table.rows if not any(row is d for d in doomed)]
            self._no_result(len(doomed))
            return

        raise odbc_error(pyodbc.ProgrammingError, '42000',
                         f"Statement not understood by the in-memory store: {sql}")

    def _select_page(self, match, params: List[Any]) -> None:
        table = self.database.table(match.group(2))
        order = match.group('order')
        where = match.group('where') or ''
        limit = params[0]
        rows = list(table.rows)

        if 'IS NOT NULL' in where:
            rows = [r for r in rows if r.get(order) is not None]
        if '> ?' in where:
            last = params[1]
            rows = [r for r in rows if r.get(order) is not None and r[order] > last]
        rows.sort(key=lambda r: r.get(order))

        cols = match.group('cols')
        columns = table.columns if cols == '*' else _BRACKETED.findall(cols)
        self._result(columns, rows[:limit])


class FakeConnection:
    """Connection with explicit transactions over a FakeDatabase."""

    def __init__(self, database: FakeDatabase):
        self.database = database
        self.closed = False
        self._snapshot = None
        self.commits = 0
        self.rollbacks = 0

    def setdecoding(self, *args, **kwargs) -> None:
        pass

    def setencoding(self, *args, **kwargs) -> None:
        pass

    def cursor(self) -> FakeCursor:
        if self.closed:
            raise odbc_error(pyodbc.OperationalError, '08003', 'Connection is closed')
        return FakeCursor(self)

    def begin(self) -> None:
        if self._snapshot is None:
            self._snapshot = self.database.snapshot()

    def commit(self) -> None:
        self._snapshot = None
        self.commits += 1

    def rollback(self) -> None:
        if self._snapshot is not None:
            self.database.restore(self._snapshot)
            self._snapshot = None
        self.rollbacks += 1

    def close(self) -> None:
        if self._snapshot is not None:
            self.rollback()
        self.closed = True


class InMemoryStore:
    """Source and target databases reachable through a pyodbc.connect-shaped factory."""

    def __init__(self):
        self.source = FakeDatabase('source')
        self.target = FakeDatabase('target')
        self.unreachable = False
        self.connect_calls = 0

    def connect(self, connection_string: str, autocommit: bool = False, timeout: int = None) -> FakeConnection:
        self.connect_calls += 1
        if self.unreachable:
            raise odbc_error(pyodbc.OperationalError, '08001', 'TCP Provider: login timeout expired')
        database = {'source': self.source, 'target': self.target}[connection_string]
        return FakeConnection(database)

    def connection_manager(self, **kwargs) -> ConnectionManager:
        kwargs.setdefault('sleep', lambda seconds: None)
        kwargs.setdefault('retry_delay_seconds', 0)
        return ConnectionManager(
            DatabaseConfig(connection_string='source', role='source'),
            DatabaseConfig(connection_string='target', role='target'),
            connect_factory=self.connect,
            **kwargs
        )


VALID_PATIENT_STATUSES = {'active', 'on_hold', 'archived'}


def make_clinic_contract() -> MigrationContract:
    """Two-entity contract: doctors, and patients that reference doctors."""
    doctors = EntityDescriptor(
        name='doctors',
        source_table='legacy_doctor',
        target_table='doctors',
        legacy_id_column='legacy_doctor_id',
        field_mappings=[
            FieldMapping('name', 'name', 'collapse_whitespace'),
            FieldMapping('email', 'email', 'trim,lower'),
        ],
        correction_columns=['email'],
    )
    patients = EntityDescriptor(
        name='patients',
        source_table='legacy_patient',
        target_table='patients',
        legacy_id_column='legacy_patient_id',
        field_mappings=[
            FieldMapping('first_name', 'first_name', 'collapse_whitespace'),
            FieldMapping('last_name', 'last_name', 'collapse_whitespace'),
            FieldMapping('status', 'status', 'enum', enum_name='patient_status'),
        ],
        foreign_keys=[ForeignKeyMapping('doctor_id', 'doctor_id', 'doctors', required=True)],
        dependencies=['doctors'],
        correction_columns=['status'],
    )
    return MigrationContract(
        source_schema='dbo',
        target_schema='dbo',
        enum_mappings={'patient_status': {'1': 'active', '2': 'on_hold', '4': 'active',
                                          '10': 'archived', '': 'active'}},
        entities={'doctors': doctors, 'patients': patients},
    )


def build_clinic_store(doctor_ids: Iterable[int] = (), patient_rows: Iterable[Dict[str, Any]] = ()) -> InMemoryStore:
    """Store with legacy_doctor/legacy_patient source tables and doctors/patients target tables."""
    store = InMemoryStore()

    source_doctors = store.source.add_table(FakeTable('legacy_doctor', ['id', 'name', 'email', 'office_code']))
    for doctor_id in doctor_ids:
        source_doctors.rows.append({'id': doctor_id, 'name': f' Dr  {doctor_id} ',
                                    'email': f' DR{doctor_id}@Example.com ', 'office_code': f'OFF{doctor_id}'})

    source_patients = store.source.add_table(
        FakeTable('legacy_patient', ['id', 'doctor_id', 'first_name', 'last_name', 'status', 'notes'])
    )
    for row in patient_rows:
        source_patients.rows.append({column: row.get(column) for column in source_patients.columns})

    store.target.add_table(FakeTable(
        'doctors', ['id', 'legacy_doctor_id', 'name', 'email', 'metadata'],
        identity_column='id', unique_columns=['legacy_doctor_id']
    ))
    store.target.add_table(FakeTable(
        'patients', ['id', 'legacy_patient_id', 'first_name', 'last_name', 'status', 'doctor_id', 'metadata'],
        identity_column='id', unique_columns=['legacy_patient_id'], identity_start=5000,
        checks={'status': lambda value: value is None or value in VALID_PATIENT_STATUSES}
    ))
    store.target.add_table(FakeTable(
        'migration_run_log',
        ['id', 'entity_type', 'run_type', 'status', 'started_at', 'completed_at', 'source_total',
         'already_migrated', 'newly_migrated', 'skipped', 'errors', 'deleted_count', 'error_summary'],
        identity_column='id'
    ))
    return store


def patient_row(legacy_id: int, doctor_id: Optional[int], status: Any = 1, **extra) -> Dict[str, Any]:
    row = {'id': legacy_id, 'doctor_id': doctor_id, 'first_name': f'First{legacy_id}',
           'last_name': f'Last{legacy_id}', 'status': status, 'notes': f'note {legacy_id}'}
    row.update(extra)
    return row


def seed_migrated(store: InMemoryStore, table_name: str, legacy_column: str,
                  legacy_ids: Iterable[int], **values) -> None:
    """Insert target rows as if a previous run had migrated them."""
    table = store.target.tables[table_name]
    for legacy_id in legacy_ids:
        row = {legacy_column: legacy_id, 'metadata': None}
        row.update(values)
        table.insert(row)


FIXED_CLOCK = datetime(2024, 1, 15, 9, 30, 0)


def clinic_contract_data() -> Dict[str, Any]:
    """The clinic contract in its on-disk (JSON) form."""
    return {
        'source_schema': 'dbo',
        'target_schema': 'dbo',
        'enum_mappings': {'patient_status': {'1': 'active', '2': 'on_hold', '4': 'active',
                                             '10': 'archived', '': 'active'}},
        'entities': [
            {'name': 'doctors', 'source_table': 'legacy_doctor', 'target_table': 'doctors',
             'legacy_id_column': 'legacy_doctor_id', 'correction_columns': ['email'],
             'mappings': [
                 {'source_column': 'name', 'target_column': 'name', 'mapping_type': 'collapse_whitespace'},
                 {'source_column': 'email', 'target_column': 'email', 'mapping_type': 'trim,lower'},
             ]},
            {'name': 'patients', 'source_table': 'legacy_patient', 'target_table': 'patients',
             'legacy_id_column': 'legacy_patient_id', 'dependencies': ['doctors'],
             'correction_columns': ['status'],
             'foreign_keys': [{'source_column': 'doctor_id', 'target_column': 'doctor_id',
                               'references': 'doctors', 'required': True}],
             'mappings': [
                 {'source_column': 'first_name', 'target_column': 'first_name',
                  'mapping_type': 'collapse_whitespace'},
                 {'source_column': 'last_name', 'target_column': 'last_name',
                  'mapping_type': 'collapse_whitespace'},
                 {'source_column': 'status', 'target_column': 'status', 'mapping_type': 'enum',
                  'enum_name': 'patient_status'},
             ]},
        ]
    }
