"""Requester identities and the user-directory collaborator.

Callers authenticate elsewhere and hand each operation a requester.  The
variant carries exactly the attributes the access rules need: students
carry their cohort, teachers carry their teaching assignments, staff carry
nothing beyond an id.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class Cohort:
    """A class cohort: batch + semester + section."""

    batch: str
    semester: str
    section: str


@dataclass(frozen=True, slots=True)
class Assignment:
    """A subject a teacher teaches to one cohort."""

    subject_id: str
    batch: str
    semester: str
    section: str

    @property
    def cohort(self) -> Cohort:
        return Cohort(self.batch, self.semester, self.section)


@dataclass(frozen=True, slots=True)
class Student:
    user_id: str
    batch: str
    semester: str
    section: str

    @property
    def cohort(self) -> Cohort:
        return Cohort(self.batch, self.semester, self.section)


@dataclass(frozen=True, slots=True)
class Teacher:
    user_id: str
    assignments: tuple[Assignment, ...] = ()

    def teaches(self, subject_id: str, cohort: Cohort) -> bool:
        return any(
            a.subject_id == subject_id and a.cohort == cohort for a in self.assignments
        )


@dataclass(frozen=True, slots=True)
class Staff:
    user_id: str


Requester = Student | Teacher | Staff


# ---------------------------------------------------------------------------
# User directory
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UserProfile:
    """What the core needs to know about a potential grantee."""

    user_id: str
    accepts_shares: bool = True
    display_name: str = ""


@runtime_checkable
class UserDirectory(Protocol):
    """Resolves user ids to profiles; implemented by the host application."""

    async def get_user(self, user_id: str) -> UserProfile | None:
        """Return the profile for *user_id*, or None if no such user exists."""
        ...


@dataclass
class InMemoryUserDirectory:
    """Dict-backed ``UserDirectory`` for tests and single-process use."""

    users: dict[str, UserProfile] = field(default_factory=dict)

    def add(self, user_id: str, *, accepts_shares: bool = True, display_name: str = "") -> UserProfile:
        profile = UserProfile(user_id, accepts_shares, display_name)
        self.users[user_id] = profile
        return profile

    async def get_user(self, user_id: str) -> UserProfile | None:
        return self.users.get(user_id)
