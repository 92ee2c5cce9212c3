"""
Identity resolution: silver contacts -> master identities.

Contacts sharing a normalized email or phone are clustered transitively with
an in-memory union-find; every connected component becomes one master id.
The whole map is recomputed on each run and rewritten in batches, while
master ids are carried over from the previous map wherever a component still
holds the members that owned them.
"""

from __future__ import annotations

import time
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence

from flask import current_app, has_app_context
from sqlalchemy import delete, insert, select

from donorhub.models import Contact, IdentityMap, db, utcnow

from .db import statement_timeout
from .metrics import record_batch_duration
from .normalize import email_keys, phone_keys
from .retry import retry_with_backoff
from .settings import PipelineSettings

MASTER_NAMESPACE = uuid.UUID("5b0f6c1e-2f4d-4c8e-9d59-7f1c2a6e8b31")

MATCH_CONFIDENCE = {"email": 0.99, "phone": 0.95, "singleton": 0.80}

COMPLETENESS_WEIGHTS = {
    "first_name": 3,
    "last_name": 3,
    "email": 2,
    "phone": 2,
    "address_line1": 2,
    "city": 1,
    "state": 1,
    "postal_code": 1,
    "organization_name": 1,
}

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class ContactKeys:
    """Everything the resolver needs to know about one silver contact."""

    contact_id: int
    source_system: str
    source_id: str
    emails: tuple[str, ...] = ()
    phones: tuple[str, ...] = ()
    completeness: int = 0
    updated_at: datetime | None = None

    @property
    def anchor(self) -> str:
        return f"{self.source_system}:{self.source_id}"

    @property
    def has_keys(self) -> bool:
        return bool(self.emails or self.phones)


def completeness_score(contact: Contact | object, *, has_email: bool, has_phone: bool) -> int:
    score = 0
    for name, weight in COMPLETENESS_WEIGHTS.items():
        if name == "email":
            present = has_email
        elif name == "phone":
            present = has_phone
        else:
            value = getattr(contact, name, None)
            present = value is not None and str(value).strip() != ""
        if present:
            score += weight
    return score


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _source_id_order(source_id: str) -> tuple[int, int, str]:
    if source_id.isdigit():
        return (0, int(source_id), source_id)
    return (1, 0, source_id)


def primary_sort_key(member: ContactKeys) -> tuple:
    """
    Sort key placing the preferred primary first.

    Most complete profile, then most recently updated, then the lowest
    source-local id (numeric when numeric), then source system name.
    """

    updated = _naive_utc(member.updated_at)
    recency = -(updated - _EPOCH).total_seconds() if updated else float("inf")
    return (-member.completeness, recency, _source_id_order(member.source_id), member.source_system)


class UnionFind:
    """Disjoint sets over integer indexes with path halving and union by size."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.size = [1] * size

    def find(self, item: int) -> int:
        parent = self.parent
        while parent[item] != item:
            parent[item] = parent[parent[item]]
            item = parent[item]
        return item

    def union(self, left: int, right: int) -> bool:
        root_left, root_right = self.find(left), self.find(right)
        if root_left == root_right:
            return False
        if self.size[root_left] < self.size[root_right]:
            root_left, root_right = root_right, root_left
        self.parent[root_right] = root_left
        self.size[root_left] += self.size[root_right]
        return True


@dataclass
class IdentityComponent:
    master_id: str
    members: list[ContactKeys]
    methods: dict[int, str]
    carried_forward: bool = False

    @property
    def primary(self) -> ContactKeys:
        return self.members[0]

    @property
    def source_systems(self) -> list[str]:
        return sorted({member.source_system for member in self.members})


@dataclass
class ResolutionResult:
    components: list[IdentityComponent] = field(default_factory=list)
    ignored_keys: list[str] = field(default_factory=list)

    @property
    def contacts(self) -> int:
        return sum(len(component.members) for component in self.components)

    @property
    def masters(self) -> int:
        return len(self.components)

    @property
    def unlinked_contacts(self) -> int:
        """Contacts with neither a usable email nor phone."""

        return sum(1 for component in self.components for member in component.members if not member.has_keys)

    @property
    def merged_components(self) -> int:
        return sum(1 for component in self.components if len(component.members) > 1)

    @property
    def cross_source_components(self) -> int:
        return sum(1 for component in self.components if len(component.source_systems) > 1)

    def master_for(self, source_system: str, source_id: str) -> str | None:
        for component in self.components:
            for member in component.members:
                if member.source_system == source_system and member.source_id == source_id:
                    return component.master_id
        return None

    def counts(self) -> dict[str, int]:
        methods = Counter(
            method for component in self.components for method in component.methods.values()
        )
        return {
            "contacts": self.contacts,
            "masters": self.masters,
            "merged_components": self.merged_components,
            "cross_source_components": self.cross_source_components,
            "unlinked_contacts": self.unlinked_contacts,
            "carried_forward": sum(1 for component in self.components if component.carried_forward),
            "ignored_keys": len(self.ignored_keys),
            "matched_by_email": methods.get("email", 0),
            "matched_by_phone": methods.get("phone", 0),
            "singletons": methods.get("singleton", 0),
        }

    def as_dict(self) -> dict[str, object]:
        return {"counts": self.counts(), "ignored_keys": list(self.ignored_keys[:50])}


def cluster_contacts(
    contacts: Sequence[ContactKeys],
    *,
    max_key_fanout: int = 0,
) -> tuple[list[tuple[list[ContactKeys], dict[int, str]]], list[str]]:
    """
    Group contacts into connected components over shared email/phone keys.

    Returns ``(components, ignored_keys)``. Each component is a list of members
    ordered primary-first and a mapping ``contact_id -> match method``. Keys
    held by more than ``max_key_fanout`` contacts (when the cap is positive)
    are treated as non-identifying and ignored.
    """

    holders: dict[str, list[int]] = defaultdict(list)
    for index, contact in enumerate(contacts):
        for email in contact.emails:
            holders[f"email:{email}"].append(index)
        for phone in contact.phones:
            holders[f"phone:{phone}"].append(index)

    ignored: list[str] = []
    shared: dict[str, list[int]] = {}
    for key, indexes in holders.items():
        if len(indexes) < 2:
            continue
        if max_key_fanout and len(indexes) > max_key_fanout:
            ignored.append(key)
            continue
        shared[key] = indexes

    forest = UnionFind(len(contacts))
    for indexes in shared.values():
        first = indexes[0]
        for other in indexes[1:]:
            forest.union(first, other)

    matched_by: dict[int, set[str]] = defaultdict(set)
    for key, indexes in shared.items():
        kind = key.split(":", 1)[0]
        for index in indexes:
            matched_by[index].add(kind)

    grouped: dict[int, list[int]] = defaultdict(list)
    for index in range(len(contacts)):
        grouped[forest.find(index)].append(index)

    components = []
    for indexes in grouped.values():
        members = sorted((contacts[index] for index in indexes), key=primary_sort_key)
        methods = {}
        for index in indexes:
            kinds = matched_by.get(index, set())
            if "email" in kinds:
                methods[contacts[index].contact_id] = "email"
            elif "phone" in kinds:
                methods[contacts[index].contact_id] = "phone"
            else:
                methods[contacts[index].contact_id] = "singleton"
        components.append((members, methods))

    components.sort(key=lambda item: min(member.anchor for member in item[0]))
    return components, sorted(ignored)


def mint_master_id(anchor: str, claimed: set[str]) -> str:
    candidate = str(uuid.uuid5(MASTER_NAMESPACE, anchor))
    suffix = 1
    while candidate in claimed:
        candidate = str(uuid.uuid5(MASTER_NAMESPACE, f"{anchor}#{suffix}"))
        suffix += 1
    return candidate


def assign_master_ids(
    components: Sequence[tuple[list[ContactKeys], dict[int, str]]],
    previous: dict[int, str],
) -> list[IdentityComponent]:
    """
    Give every component a master id, reusing previous ids where possible.

    A component takes the previous id held by most of its members (ties go to
    the smallest id) unless an earlier component already claimed it. The rest
    get a ``uuid5`` of their smallest member anchor.
    """

    claimed: set[str] = set()
    assigned: list[str | None] = []
    for members, _ in components:
        votes = Counter(previous[member.contact_id] for member in members if member.contact_id in previous)
        choice = None
        for master_id, _count in sorted(votes.items(), key=lambda item: (-item[1], item[0])):
            if master_id not in claimed:
                choice = master_id
                break
        if choice:
            claimed.add(choice)
        assigned.append(choice)

    resolved = []
    for (members, methods), master_id in zip(components, assigned):
        carried = master_id is not None
        if master_id is None:
            master_id = mint_master_id(min(member.anchor for member in members), claimed)
            claimed.add(master_id)
        resolved.append(IdentityComponent(master_id, members, methods, carried_forward=carried))
    return resolved


def _log(level: str, message: str, *args, **extra) -> None:
    if has_app_context():
        getattr(current_app.logger, level)(message, *args, extra={"pipeline_stage": "resolve", **extra})


class IdentityResolver:
    """Full recomputation of ``silver_identity_map``."""

    def __init__(self, settings: PipelineSettings, *, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.sleep = sleep

    def load_contacts(self) -> list[ContactKeys]:
        with statement_timeout(self.settings.bulk_timeout_seconds):
            rows = db.session.execute(
                select(
                    Contact.id,
                    Contact.source_system,
                    Contact.source_id,
                    Contact.first_name,
                    Contact.last_name,
                    Contact.email_primary,
                    Contact.email_2,
                    Contact.email_3,
                    Contact.phone_primary,
                    Contact.phone_2,
                    Contact.phone_3,
                    Contact.address_line1,
                    Contact.city,
                    Contact.state,
                    Contact.postal_code,
                    Contact.organization_name,
                    Contact.source_updated_at,
                    Contact.updated_at,
                ).order_by(Contact.id)
            ).all()

        contacts = []
        for row in rows:
            emails = tuple(email_keys(row.email_primary, row.email_2, row.email_3))
            phones = tuple(phone_keys(row.phone_primary, row.phone_2, row.phone_3))
            contacts.append(
                ContactKeys(
                    contact_id=row.id,
                    source_system=row.source_system,
                    source_id=row.source_id,
                    emails=emails,
                    phones=phones,
                    completeness=completeness_score(row, has_email=bool(emails), has_phone=bool(phones)),
                    updated_at=row.source_updated_at or row.updated_at,
                )
            )
        return contacts

    def previous_assignments(self) -> dict[int, str]:
        with statement_timeout(self.settings.bulk_timeout_seconds):
            return dict(db.session.execute(select(IdentityMap.contact_id, IdentityMap.master_id)).all())

    def resolve(self, contacts: Sequence[ContactKeys], previous: dict[int, str] | None = None) -> ResolutionResult:
        """Pure in-memory resolution; nothing is written."""

        clustered, ignored = cluster_contacts(contacts, max_key_fanout=self.settings.resolver_max_key_fanout)
        components = assign_master_ids(clustered, previous or {})
        return ResolutionResult(components=components, ignored_keys=ignored)

    def resolve_identities(self) -> ResolutionResult:
        """Recompute and persist the identity map."""

        contacts = self.load_contacts()
        previous = self.previous_assignments()
        result = self.resolve(contacts, previous)
        for key in result.ignored_keys[:20]:
            _log("warning", "Ignoring over-shared key %s", key, pipeline_key=key)
        self.persist(result)
        _log(
            "info",
            "Resolved %s contacts into %s master identities (%s unlinked)",
            result.contacts,
            result.masters,
            result.unlinked_contacts,
        )
        return result

    def _rows(self, result: ResolutionResult) -> Iterable[dict[str, object]]:
        now = utcnow()
        for component in result.components:
            primary_id = component.primary.contact_id
            for member in component.members:
                method = component.methods[member.contact_id]
                yield {
                    "source_system": member.source_system,
                    "source_id": member.source_id,
                    "contact_id": member.contact_id,
                    "master_id": component.master_id,
                    "is_primary": member.contact_id == primary_id,
                    "match_method": method,
                    "confidence": MATCH_CONFIDENCE[method],
                    "created_at": now,
                    "updated_at": now,
                }

    def persist(self, result: ResolutionResult) -> None:
        """
        Replace the identity map in one transaction, inserting in batches.

        Readers never observe a half-written map: the delete and every insert
        batch commit together.
        """

        rows = list(self._rows(result))
        batch_size = self.settings.batch_size

        def _write() -> None:
            with statement_timeout(self.settings.bulk_timeout_seconds):
                db.session.execute(delete(IdentityMap))
                for start in range(0, len(rows), batch_size):
                    started = time.perf_counter()
                    chunk = rows[start : start + batch_size]
                    if chunk:
                        db.session.execute(insert(IdentityMap), chunk)
                    record_batch_duration("resolve", time.perf_counter() - started)
            db.session.commit()

        retry_with_backoff(_write, settings=self.settings, label="resolve:persist", sleep=self.sleep)
