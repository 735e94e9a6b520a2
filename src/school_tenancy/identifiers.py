"""
External-facing identifiers for school entities.

Other systems parse these, so the formats are fixed:

    student      NPS0007       (code + 4-digit sequence, no separator)
    admin        NPS_ADM042
    teacher      NPS_TEA007
    parent       NPS_PAR005
    test         NPS_TEST003
    anything     NPS_USR001
"""

from __future__ import annotations

from enum import StrEnum
from typing import Union


class Role(StrEnum):
    STUDENT = "student"
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    TEST = "testdetails"


_STAFF_PREFIXES = {
    Role.ADMIN: "ADM",
    Role.TEACHER: "TEA",
    Role.PARENT: "PAR",
    Role.TEST: "TEST",
}
_DEFAULT_PREFIX = "USR"

# "test" is accepted as a shorthand for test/assessment entities
_ALIASES = {"test": Role.TEST}


def parse_role(role: Union[str, Role]) -> Union[Role, str]:
    """Known roles come back as Role; anything else is returned lowercased."""
    key = str(role).strip().lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return Role(key)
    except ValueError:
        return key


def sequence_key(role: Union[str, Role]) -> str:
    """Entity type under which a role's counter lives in the sequence document."""
    return str(parse_role(role))


def format_id(tenant_code: str, role: Union[str, Role], sequence: int) -> str:
    if not isinstance(tenant_code, str) or not tenant_code:
        raise ValueError("tenant code must be a non-empty string")
    if isinstance(sequence, bool) or not isinstance(sequence, int) or sequence < 1:
        raise ValueError(f"sequence must be a positive integer, got {sequence!r}")

    parsed = parse_role(role)
    if parsed is Role.STUDENT:
        return f"{tenant_code}{sequence:04d}"
    prefix = _STAFF_PREFIXES.get(parsed, _DEFAULT_PREFIX)
    return f"{tenant_code}_{prefix}{sequence:03d}"
