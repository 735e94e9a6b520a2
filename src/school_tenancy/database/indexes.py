"""
Static index descriptors for tenant databases.

Collection name -> index specifications that must exist in every school
database. Only provisioning reads this table.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple


@dataclass(frozen=True)
class IndexSpec:
    fields: Tuple[str, ...]
    unique: bool = False

    def __post_init__(self) -> None:
        if not self.fields:
            raise ValueError("IndexSpec needs at least one field")


def _ix(*fields: str) -> IndexSpec:
    return IndexSpec(fields=fields)


def _uq(*fields: str) -> IndexSpec:
    return IndexSpec(fields=fields, unique=True)


DEFAULT_INDEXES: Tuple[IndexSpec, ...] = (_ix("created_at"),)

COLLECTION_INDEXES: Dict[str, Tuple[IndexSpec, ...]] = {
    "users": (
        _uq("user_id"),
        _uq("email"),
        _ix("role", "is_active"),
        _ix("last_login"),
    ),
    "admins": (_uq("user_id"), _ix("email")),
    "students": (
        _uq("user_id"),
        _uq("admission_number"),
        _ix("class_name", "section"),
    ),
    "teachers": (_uq("user_id"), _ix("email")),
    "parents": (_uq("user_id"), _ix("email")),
    "classes": (_uq("class_name", "section", "academic_year"),),
    "subjects": (_uq("subject_code"), _ix("class_name")),
    "testdetails": (
        _uq("test_id"),
        _ix("test_type"),
        _ix("status"),
        _ix("created_at"),
        _ix("updated_at"),
    ),
    "attendances": (
        _uq("attendance_id"),
        _ix("date", "class_name", "section"),
        _ix("student_id", "date"),
        _ix("month_year"),
    ),
    "assignments": (
        _ix("class_name", "section"),
        _ix("due_date"),
        _ix("status"),
    ),
    "results": (_ix("student_id", "test_id"), _ix("academic_year")),
    "timetables": (
        _uq("timetable_id"),
        _ix("class_name", "section", "status"),
        _ix("effective_from", "effective_to"),
    ),
    "admissions": (_uq("admission_number"), _ix("academic_year")),
    "messages": (_ix("sender_id"), _ix("created_at")),
}


def indexes_for(collection: str) -> Tuple[IndexSpec, ...]:
    return COLLECTION_INDEXES.get(collection, DEFAULT_INDEXES)


def index_name(collection: str, spec: IndexSpec) -> str:
    prefix = "uq" if spec.unique else "ix"
    return f"{prefix}_{collection}_{'_'.join(spec.fields)}"
