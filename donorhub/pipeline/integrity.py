"""
Integrity report printed at the end of a full run (and by ``pipeline validate``).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import and_, case, distinct, func, select, true

from donorhub.models import TRANSACTION_MODELS, Contact, IdentityMap, db

from .db import statement_timeout
from .resolver import IdentityResolver
from .serving import SERVING_VIEWS, count_rows, get_view, object_kind
from .settings import PipelineSettings

PASS = "PASS"
FAIL = "FAIL"


@dataclass
class LinkCount:
    entity: str
    total: int
    linked: int

    @property
    def unlinked(self) -> int:
        return self.total - self.linked

    @property
    def percent(self) -> float:
        return round(100.0 * self.linked / self.total, 1) if self.total else 100.0

    def as_dict(self) -> dict[str, object]:
        return {
            "entity": self.entity,
            "total": self.total,
            "linked": self.linked,
            "unlinked": self.unlinked,
            "percent": self.percent,
        }


@dataclass
class IntegrityReport:
    serving_rows: dict[str, int | None] = field(default_factory=dict)
    links: list[LinkCount] = field(default_factory=list)
    contacts: int = 0
    masters: int = 0
    unlinked_contacts: int = 0
    contacts_without_identity: int = 0
    masters_without_one_primary: int = 0
    duplicate_emails: int = 0
    person_360_rows: int | None = None
    checks: dict[str, str] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return all(status == PASS for status in self.checks.values())

    @property
    def transactions_total(self) -> int:
        return sum(link.total for link in self.links)

    @property
    def transactions_linked(self) -> int:
        return sum(link.linked for link in self.links)

    @property
    def linked_percent(self) -> float:
        total = self.transactions_total
        return round(100.0 * self.transactions_linked / total, 1) if total else 100.0

    def as_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "checks": dict(self.checks),
            "serving_rows": dict(self.serving_rows),
            "transactions": {
                "total": self.transactions_total,
                "linked": self.transactions_linked,
                "percent": self.linked_percent,
                "by_entity": [link.as_dict() for link in self.links],
            },
            "contacts": self.contacts,
            "masters": self.masters,
            "unlinked_contacts": self.unlinked_contacts,
            "contacts_without_identity": self.contacts_without_identity,
            "masters_without_one_primary": self.masters_without_one_primary,
            "duplicate_emails": self.duplicate_emails,
            "person_360_rows": self.person_360_rows,
        }

    def lines(self) -> list[str]:
        out = ["Serving tables:"]
        for name, rows in self.serving_rows.items():
            out.append(f"  {name:<32} {'missing' if rows is None else rows}")
        out.append(
            f"Transactions linked: {self.transactions_linked} / {self.transactions_total} ({self.linked_percent}%)"
        )
        for link in self.links:
            if link.unlinked:
                out.append(f"  unlinked {link.entity:<24} {link.unlinked}")
        out.append(f"Contacts: {self.contacts}  masters: {self.masters}  unlinked contacts: {self.unlinked_contacts}")
        out.append(f"Cross-identity duplicate emails: {self.duplicate_emails}")
        out.append("Checks:")
        for name, status in self.checks.items():
            out.append(f"  [{status}] {name}")
        return out


def _link_counts() -> list[LinkCount]:
    counts = []
    for model in TRANSACTION_MODELS:
        total = db.session.scalar(select(func.count()).select_from(model)) or 0
        linked = (
            db.session.scalar(
                select(func.count())
                .select_from(model)
                .join(
                    Contact,
                    and_(
                        Contact.source_system == model.source_system,
                        Contact.source_id == model.contact_source_id,
                    ),
                )
                .join(IdentityMap, IdentityMap.contact_id == Contact.id)
            )
            or 0
        )
        counts.append(LinkCount(model.__tablename__, total, linked))
    return counts


def _duplicate_emails() -> int:
    """Normalized primary emails held by contacts of more than one master id."""

    email = func.lower(func.trim(Contact.email_primary))
    shared = (
        select(email.label("email"))
        .select_from(Contact)
        .join(IdentityMap, IdentityMap.contact_id == Contact.id)
        .where(Contact.email_primary.is_not(None), func.trim(Contact.email_primary) != "")
        .group_by(email)
        .having(func.count(distinct(IdentityMap.master_id)) > 1)
        .subquery()
    )
    return db.session.scalar(select(func.count()).select_from(shared)) or 0


def _masters_without_one_primary() -> int:
    primaries = func.sum(case((IdentityMap.is_primary == true(), 1), else_=0))
    bad = select(IdentityMap.master_id).group_by(IdentityMap.master_id).having(primaries != 1).subquery()
    return db.session.scalar(select(func.count()).select_from(bad)) or 0


def build_integrity_report(settings: PipelineSettings) -> IntegrityReport:
    report = IntegrityReport()
    connection = db.session.connection()
    with statement_timeout(settings.bulk_timeout_seconds):
        for view in SERVING_VIEWS:
            exists = object_kind(view.table_name, connection) is not None
            report.serving_rows[view.table_name] = count_rows(connection, view.table_name) if exists else None

        report.links = _link_counts()
        report.contacts = db.session.scalar(select(func.count()).select_from(Contact)) or 0
        report.masters = db.session.scalar(select(func.count(distinct(IdentityMap.master_id)))) or 0
        report.contacts_without_identity = (
            db.session.scalar(
                select(func.count())
                .select_from(Contact)
                .outerjoin(IdentityMap, IdentityMap.contact_id == Contact.id)
                .where(IdentityMap.id.is_(None))
            )
            or 0
        )
        report.masters_without_one_primary = _masters_without_one_primary()
        report.duplicate_emails = _duplicate_emails()

    report.unlinked_contacts = sum(
        1 for contact in IdentityResolver(settings).load_contacts() if not contact.has_keys
    )
    report.person_360_rows = report.serving_rows.get(get_view("person_360").table_name)

    report.checks = {
        "serving_views_present": PASS if all(rows is not None for rows in report.serving_rows.values()) else FAIL,
        "identity_map_complete": PASS if report.contacts_without_identity == 0 else FAIL,
        "one_primary_per_master": PASS if report.masters_without_one_primary == 0 else FAIL,
        "person_360_matches_masters": PASS if report.person_360_rows == report.masters else FAIL,
        "no_cross_identity_duplicate_emails": PASS if report.duplicate_emails == 0 else FAIL,
    }
    db.session.rollback()
    return report
