from __future__ import annotations

from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.jobs.types import JobTargets
from app.models.user_pack_assignment import UserPackAssignment


class MembershipLookup(Protocol):
    def members_of(self, pack_ids: list[str]) -> list[str]: ...

    def all_users(self) -> list[str]: ...


class SqlMembershipDirectory:
    """Pack membership read from the user_pack_assignments table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def members_of(self, pack_ids: list[str]) -> list[str]:
        if not pack_ids:
            return []
        with self._session_factory() as s:
            rows = s.execute(
                select(UserPackAssignment.telegram_user_id)
                .where(UserPackAssignment.pack_id.in_(list(pack_ids)))
                .order_by(UserPackAssignment.id.asc())
            ).scalars().all()
            return [str(r) for r in rows]

    def all_users(self) -> list[str]:
        """Every user with at least one pack assignment, first-assigned first."""
        with self._session_factory() as s:
            rows = s.execute(
                select(UserPackAssignment.telegram_user_id).order_by(UserPackAssignment.id.asc())
            ).scalars().all()
            return _dedupe(str(r) for r in rows)


class StaticMembership:
    """In-memory pack -> members mapping."""

    def __init__(self, packs: dict[str, Iterable[str]] | None = None, users: Iterable[str] | None = None) -> None:
        self._packs = {str(k): [str(u) for u in v] for k, v in (packs or {}).items()}
        self._users = [str(u) for u in users or []]

    def members_of(self, pack_ids: list[str]) -> list[str]:
        out: list[str] = []
        for pack_id in pack_ids:
            out.extend(self._packs.get(str(pack_id), []))
        return out

    def all_users(self) -> list[str]:
        return _dedupe([*self._users, *(u for members in self._packs.values() for u in members)])


def _dedupe(ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for x in ids:
        if x not in seen:
            seen.add(x)
            out.append(x)
    return out


def resolve_targets(
    include_user_ids: list[str],
    exclude_user_ids: list[str],
    pack_ids: list[str],
    membership: MembershipLookup,
) -> JobTargets:
    """
    final_user_ids = (members of pack_ids ∪ include_user_ids) − exclude_user_ids

    Exclusion is applied last so it always wins over pack or explicit inclusion.
    Order is first-seen: pack members, then explicit includes. When neither
    includes nor packs yield anyone, the base audience is every known user
    (``everyone=True``), so an exclude-only job still reaches the rest.
    """
    include = _dedupe(str(x) for x in include_user_ids)
    exclude = _dedupe(str(x) for x in exclude_user_ids)
    packs = _dedupe(str(x) for x in pack_ids)

    pack_members = membership.members_of(packs) if packs else []
    excluded = set(exclude)
    base = _dedupe([*pack_members, *include])
    everyone = not base
    if everyone:
        base = membership.all_users()
    final = [uid for uid in base if uid not in excluded]

    return JobTargets(
        include_user_ids=include,
        exclude_user_ids=exclude,
        pack_ids=packs,
        final_user_ids=final,
        everyone=everyone,
    )
