"""
Domain schemas for tenant databases.

Each entity is a "document table": a string id, the handful of scalar
columns that are queried or indexed, and a JSON ``data`` column carrying the
rest of the document. Schemas are declared once and bound to any number of
tenant connections; see ModelFactory.
"""

from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

from school_tenancy.database.indexes import index_name, indexes_for
from school_tenancy.exceptions import UnknownEntityError

SchemaBuilder = Callable[[MetaData], Table]

_DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


class EntityName(StrEnum):
    USERS = "users"
    ADMINS = "admins"
    STUDENTS = "students"
    TEACHERS = "teachers"
    PARENTS = "parents"
    CLASSES = "classes"
    SUBJECTS = "subjects"
    TEST_DETAILS = "testdetails"
    ATTENDANCES = "attendances"
    ASSIGNMENTS = "assignments"
    RESULTS = "results"
    TIMETABLES = "timetables"
    ADMISSIONS = "admissions"
    MESSAGES = "messages"
    AUDIT_LOGS = "audit_logs"


def new_document_id() -> str:
    return uuid.uuid4().hex


def _document_table(metadata: MetaData, name: str, *columns: Column) -> Table:
    return Table(
        str(name),
        metadata,
        Column("id", String(32), primary_key=True, default=new_document_id),
        *columns,
        Column("data", _DocumentJSON, nullable=False, default=lambda: {}),
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()),
    )


def _user_columns() -> List[Column]:
    return [
        Column("user_id", String(64), nullable=False),
        Column("email", String(320)),
        Column("school_code", String(64)),
    ]


def users_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.USERS,
        *_user_columns(),
        Column("role", String(32), nullable=False),
        Column("is_active", Boolean, nullable=False, default=True),
        Column("last_login", DateTime(timezone=True)),
    )


def admins_table(metadata: MetaData) -> Table:
    return _document_table(metadata, EntityName.ADMINS, *_user_columns())


def students_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.STUDENTS,
        *_user_columns(),
        Column("class_name", String(32)),
        Column("section", String(16)),
        Column("roll_number", String(32)),
        Column("admission_number", String(64)),
    )


def teachers_table(metadata: MetaData) -> Table:
    return _document_table(metadata, EntityName.TEACHERS, *_user_columns())


def parents_table(metadata: MetaData) -> Table:
    return _document_table(metadata, EntityName.PARENTS, *_user_columns())


def classes_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.CLASSES,
        Column("class_name", String(32), nullable=False),
        Column("section", String(16), nullable=False),
        Column("academic_year", String(16), nullable=False),
    )


def subjects_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.SUBJECTS,
        Column("subject_code", String(32), nullable=False),
        Column("name", String(128), nullable=False),
        Column("class_name", String(32)),
    )


def testdetails_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.TEST_DETAILS,
        Column("test_id", String(64), nullable=False),
        Column("test_type", String(64)),
        Column("status", String(32)),
    )


def attendances_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.ATTENDANCES,
        Column("attendance_id", String(64), nullable=False),
        Column("student_id", String(64), nullable=False),
        Column("date", Date, nullable=False),
        Column("class_name", String(32)),
        Column("section", String(16)),
        Column("month_year", String(7)),
    )


def assignments_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.ASSIGNMENTS,
        Column("class_name", String(32)),
        Column("section", String(16)),
        Column("subject_code", String(32)),
        Column("due_date", Date),
        Column("status", String(32)),
    )


def results_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.RESULTS,
        Column("student_id", String(64), nullable=False),
        Column("test_id", String(64)),
        Column("academic_year", String(16)),
    )


def timetables_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.TIMETABLES,
        Column("timetable_id", String(64), nullable=False),
        Column("class_name", String(32)),
        Column("section", String(16)),
        Column("status", String(32)),
        Column("effective_from", Date),
        Column("effective_to", Date),
    )


def admissions_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.ADMISSIONS,
        Column("admission_number", String(64), nullable=False),
        Column("academic_year", String(16)),
        Column("status", String(32)),
    )


def messages_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.MESSAGES,
        Column("sender_id", String(64)),
        Column("class_name", String(32)),
    )


def audit_logs_table(metadata: MetaData) -> Table:
    return _document_table(
        metadata, EntityName.AUDIT_LOGS,
        Column("actor_id", String(64)),
        Column("action", String(64), nullable=False),
    )


DEFAULT_SCHEMAS: Dict[EntityName, SchemaBuilder] = {
    EntityName.USERS: users_table,
    EntityName.ADMINS: admins_table,
    EntityName.STUDENTS: students_table,
    EntityName.TEACHERS: teachers_table,
    EntityName.PARENTS: parents_table,
    EntityName.CLASSES: classes_table,
    EntityName.SUBJECTS: subjects_table,
    EntityName.TEST_DETAILS: testdetails_table,
    EntityName.ATTENDANCES: attendances_table,
    EntityName.ASSIGNMENTS: assignments_table,
    EntityName.RESULTS: results_table,
    EntityName.TIMETABLES: timetables_table,
    EntityName.ADMISSIONS: admissions_table,
    EntityName.MESSAGES: messages_table,
    EntityName.AUDIT_LOGS: audit_logs_table,
}


def attach_indexes(table: Table) -> None:
    """Attach the descriptor indexes whose columns exist on ``table``."""
    existing = {ix.name for ix in table.indexes}
    for spec in indexes_for(table.name):
        name = index_name(table.name, spec)
        if name in existing or not all(f in table.c for f in spec.fields):
            continue
        Index(name, *(table.c[f] for f in spec.fields), unique=spec.unique)


class SchemaRegistry:
    """
    Entity name -> schema builder. Tables are built lazily, once, into this
    registry's MetaData; the same Table is then shared by every tenant.
    """

    def __init__(self, builders: Optional[Mapping[str, SchemaBuilder]] = None) -> None:
        self.metadata = MetaData()
        self._builders: Dict[str, SchemaBuilder] = {
            str(k): v for k, v in (DEFAULT_SCHEMAS if builders is None else builders).items()
        }
        self._tables: Dict[str, Table] = {}

    def register(self, name: Union[str, EntityName], builder: SchemaBuilder) -> None:
        name = str(name)
        if name in self._tables:
            raise ValueError(f"Schema {name!r} is already bound and cannot be replaced")
        self._builders[name] = builder

    def __contains__(self, name: object) -> bool:
        return str(name) in self._builders

    def names(self) -> List[str]:
        return list(self._builders)

    def table_for(self, name: Union[str, EntityName]) -> Table:
        name = str(name)
        table = self._tables.get(name)
        if table is not None:
            return table
        builder = self._builders.get(name)
        if builder is None:
            raise UnknownEntityError(name)
        table = builder(self.metadata)
        if table.name != name:
            raise ValueError(f"Schema builder for {name!r} produced table {table.name!r}")
        attach_indexes(table)
        self._tables[name] = table
        return table

    def tables(self, names: Optional[Iterable[str]] = None) -> List[Table]:
        return [self.table_for(n) for n in (self.names() if names is None else names)]
