"""
Serving layer: view definitions and the builder that (re)creates them.

Every serving view joins silver entities through the identity map. A
transaction reaches a person via its *source* contact, that contact's identity
row, and the primary identity row of the same master id, whose contact
supplies the display attributes. Transactions whose source contact does not
exist are excluded here and reported by the integrity checks instead.

Views are written once as SQLAlchemy Core selects and compiled per dialect
(see ``sql_functions``). Aggregate views select from the detail views, so the
registry order is also the creation and materialization order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable

from flask import current_app, has_app_context
from sqlalchemy import (
    String,
    and_,
    case,
    cast,
    column,
    func,
    inspect as sa_inspect,
    literal,
    or_,
    select,
    table,
    true,
)
from sqlalchemy.engine import Connection, Dialect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Select

from donorhub.models import (
    Communication,
    Contact,
    ContactTag,
    Donation,
    IdentityMap,
    Invoice,
    Note,
    Order,
    Payment,
    Product,
    Subscription,
    db,
)

from . import sql_functions  # noqa: F401  (registers the portable functions)
from .db import statement_timeout
from .errors import truncate_error
from .settings import PipelineSettings

SERVING_PREFIX = "serving_"
TEMP_SUFFIX = "_tmp"
EARLIEST_DONATION_YEAR = 2000

SOURCE_PRIORITY = ("donor_direct", "kindful", "keap")

LIFECYCLE_STAGES = (
    (180, "active"),
    (365, "cooling"),
    (730, "lapsed"),
)


@dataclass(frozen=True)
class ServingView:
    """
    Attributes:
        name: Logical name (``person_360``); the database object is prefixed.
        build: Returns the defining select.
        depends_on: Serving views this view selects from.
        indexes: Columns indexed once the view is materialized.
    """

    name: str
    build: Callable[[], Select]
    depends_on: tuple[str, ...] = ()
    indexes: tuple[str, ...] = ()
    description: str = ""

    @property
    def table_name(self) -> str:
        return f"{SERVING_PREFIX}{self.name}"

    @property
    def temp_name(self) -> str:
        return f"{self.table_name}{TEMP_SUFFIX}"

    def index_name(self, column_name: str) -> str:
        return f"idx_{self.name}_{column_name}"


# -- shared fragments ---------------------------------------------------------


def _view_ref(name: str, *columns: str):
    return table(f"{SERVING_PREFIX}{name}", *(column(col) for col in columns)).alias(name)


def _display_name(contact):
    return func.coalesce(
        contact.c.display_name,
        contact.c.first_name + literal(" ") + contact.c.last_name,
        contact.c.first_name,
        contact.c.last_name,
        contact.c.organization_name,
        literal("Unknown"),
    )


def _linked(entity):
    """
    Join a transaction table to its person.

    Returns ``(joined, link, primary)`` where ``link`` is the identity row of
    the owning source contact and ``primary`` the primary contact of that
    master id. Inner joins only: orphaned transactions drop out.
    """

    contact = Contact.__table__.alias("c")
    link = IdentityMap.__table__.alias("im")
    primary_link = IdentityMap.__table__.alias("pim")
    primary = Contact.__table__.alias("pc")
    joined = (
        entity.join(
            contact,
            and_(
                contact.c.source_system == entity.c.source_system,
                contact.c.source_id == entity.c.contact_source_id,
            ),
        )
        .join(link, link.c.contact_id == contact.c.id)
        .join(primary_link, and_(primary_link.c.master_id == link.c.master_id, primary_link.c.is_primary == true()))
        .join(primary, primary.c.id == primary_link.c.contact_id)
    )
    return joined, link, primary


def _person_columns(link, primary, *, email: bool = True) -> list:
    columns = [
        link.c.master_id.label("person_id"),
        _display_name(primary).label("display_name"),
        primary.c.first_name.label("first_name"),
        primary.c.last_name.label("last_name"),
    ]
    if email:
        columns.append(primary.c.email_primary.label("email"))
    return columns


def _lifecycle(last_gift, donation_count=None):
    days = func.days_since(last_gift)
    whens = []
    if donation_count is not None:
        whens.append((func.coalesce(donation_count, 0) == 0, "prospect"))
    whens.extend((days <= limit, stage) for limit, stage in LIFECYCLE_STAGES)
    return case(*whens, else_="lost")


def _source_rank(source_system):
    return case(
        *((source_system == name, rank) for rank, name in enumerate(SOURCE_PRIORITY, start=1)),
        else_=len(SOURCE_PRIORITY) + 1,
    )


def _giving(name: str = "g"):
    dd = _view_ref("donation_detail", "person_id", "amount", "donated_at")
    return (
        select(
            dd.c.person_id,
            func.count().label("donation_count"),
            func.sum(dd.c.amount).label("total_given"),
            func.avg(dd.c.amount).label("avg_gift"),
            func.max(dd.c.amount).label("largest_gift"),
            func.min(dd.c.donated_at).label("first_gift_date"),
            func.max(dd.c.donated_at).label("last_gift_date"),
        )
        .where(dd.c.amount > 0)
        .group_by(dd.c.person_id)
        .subquery(name)
    )


# -- detail views -------------------------------------------------------------


def donation_detail() -> Select:
    """
    One row per donation linked to a person, with cross-source duplicates
    (same person, amount and day) collapsed onto the preferred source.
    Undated gifts are never collapsed; gifts dated before 2000 are dropped.
    """

    d = Donation.__table__.alias("d")
    joined, link, primary = _linked(d)
    day_key = func.coalesce(
        cast(func.day_of(d.c.donated_at), String),
        literal("id:") + cast(d.c.id, String),
    )
    ranked = (
        select(
            d.c.id.label("donation_id"),
            *_person_columns(link, primary),
            d.c.amount,
            d.c.currency,
            d.c.donated_at,
            func.month_bucket(d.c.donated_at).label("donation_month"),
            func.year_of(d.c.donated_at).label("donation_year"),
            d.c.payment_method,
            d.c.fund,
            d.c.appeal,
            d.c.designation,
            d.c.source_system,
            d.c.source_id.label("source_ref"),
            func.row_number()
            .over(
                partition_by=(link.c.master_id, d.c.amount, day_key),
                order_by=(_source_rank(d.c.source_system), d.c.id),
            )
            .label("rn"),
        )
        .select_from(joined)
        .where(or_(d.c.donated_at.is_(None), func.year_of(d.c.donated_at) >= EARLIEST_DONATION_YEAR))
        .subquery("ranked")
    )
    return select(*(col.label(col.key) for col in ranked.c if col.key != "rn")).where(ranked.c.rn == 1)


def order_detail() -> Select:
    o = Order.__table__.alias("o")
    joined, link, primary = _linked(o)
    return select(
        o.c.id.label("order_id"),
        *_person_columns(link, primary),
        o.c.order_number,
        func.coalesce(o.c.total_amount, 0).label("total_amount"),
        o.c.ordered_at.label("order_date"),
        func.month_bucket(o.c.ordered_at).label("order_month"),
        func.year_of(o.c.ordered_at).label("order_year"),
        o.c.order_status,
        o.c.source_system,
        o.c.source_id.label("source_ref"),
    ).select_from(joined)


def payment_detail() -> Select:
    p = Payment.__table__.alias("p")
    joined, link, primary = _linked(p)
    return select(
        p.c.id.label("payment_id"),
        *_person_columns(link, primary),
        p.c.amount,
        p.c.paid_at.label("payment_date"),
        func.month_bucket(p.c.paid_at).label("payment_month"),
        p.c.payment_method,
        p.c.invoice_source_id.label("invoice_ref"),
        p.c.source_system,
        p.c.source_id.label("source_ref"),
    ).select_from(joined)


def invoice_detail() -> Select:
    i = Invoice.__table__.alias("i")
    joined, link, primary = _linked(i)
    return select(
        i.c.id.label("invoice_id"),
        *_person_columns(link, primary),
        i.c.invoice_number,
        i.c.total.label("invoice_total"),
        i.c.pay_status.label("invoice_status"),
        i.c.issued_at,
        func.month_bucket(i.c.issued_at).label("invoice_month"),
        i.c.source_system,
        i.c.source_id.label("source_ref"),
    ).select_from(joined)


def subscription_detail() -> Select:
    s = Subscription.__table__.alias("s")
    product = Product.__table__.alias("pr")
    joined, link, primary = _linked(s)
    joined = joined.outerjoin(
        product,
        and_(product.c.source_system == s.c.source_system, product.c.source_id == s.c.product_source_id),
    )
    return select(
        s.c.id.label("subscription_id"),
        *_person_columns(link, primary),
        func.coalesce(product.c.name, literal("Unknown Product")).label("product_name"),
        s.c.amount,
        s.c.billing_cycle.label("cadence"),
        s.c.status.label("subscription_status"),
        s.c.start_date,
        s.c.next_bill_date.label("next_renewal"),
        s.c.reason_stopped,
        s.c.source_system,
        s.c.source_id.label("source_ref"),
    ).select_from(joined)


def tag_detail() -> Select:
    t = ContactTag.__table__.alias("t")
    joined, link, primary = _linked(t)
    return select(
        t.c.id.label("tag_id"),
        *_person_columns(link, primary, email=False),
        t.c.tag_value,
        t.c.tag_group,
        t.c.applied_at,
        t.c.source_system,
    ).select_from(joined)


def communication_detail() -> Select:
    cm = Communication.__table__.alias("cm")
    joined, link, primary = _linked(cm)
    return select(
        cm.c.id.label("communication_id"),
        *_person_columns(link, primary, email=False),
        cm.c.channel,
        cm.c.direction,
        cm.c.subject,
        cm.c.sent_at,
        cm.c.source_system,
    ).select_from(joined)


# -- aggregate views ----------------------------------------------------------


def donor_summary() -> Select:
    dd = _view_ref(
        "donation_detail",
        "person_id",
        "display_name",
        "first_name",
        "last_name",
        "email",
        "source_system",
        "amount",
        "donated_at",
        "fund",
        "donation_month",
    )
    last_gift = func.max(dd.c.donated_at)
    return (
        select(
            dd.c.person_id,
            func.max(dd.c.display_name).label("display_name"),
            func.max(dd.c.first_name).label("first_name"),
            func.max(dd.c.last_name).label("last_name"),
            func.max(dd.c.email).label("email"),
            func.max(dd.c.source_system).label("primary_source"),
            func.count().label("donation_count"),
            func.sum(dd.c.amount).label("total_given"),
            func.avg(dd.c.amount).label("avg_gift"),
            func.max(dd.c.amount).label("largest_gift"),
            func.min(dd.c.donated_at).label("first_gift_date"),
            last_gift.label("last_gift_date"),
            func.days_since(last_gift).label("days_since_last"),
            func.count(dd.c.fund.distinct()).label("fund_count"),
            func.count(dd.c.donation_month.distinct()).label("active_months"),
            _lifecycle(last_gift).label("lifecycle_stage"),
        )
        .where(dd.c.amount > 0)
        .group_by(dd.c.person_id)
    )


def donor_monthly() -> Select:
    dd = _view_ref(
        "donation_detail",
        "person_id",
        "display_name",
        "donation_month",
        "donation_year",
        "amount",
        "fund",
        "payment_method",
    )
    return (
        select(
            dd.c.person_id,
            func.max(dd.c.display_name).label("display_name"),
            dd.c.donation_month,
            dd.c.donation_year,
            func.count().label("gifts"),
            func.sum(dd.c.amount).label("amount"),
            func.max(dd.c.fund).label("primary_fund"),
            func.max(dd.c.payment_method).label("primary_method"),
        )
        .where(dd.c.amount > 0, dd.c.donation_month.is_not(None))
        .group_by(dd.c.person_id, dd.c.donation_month, dd.c.donation_year)
    )


def person_360() -> Select:
    """One row per master id, attributes taken from its primary contact."""

    link = IdentityMap.__table__.alias("im")
    primary = Contact.__table__.alias("pc")
    identities = IdentityMap.__table__.alias("ids")
    sources = (
        select(
            identities.c.master_id,
            func.count(identities.c.source_system.distinct()).label("source_count"),
            func.distinct_list(identities.c.source_system).label("source_systems"),
            func.count().label("identity_count"),
        )
        .group_by(identities.c.master_id)
        .subquery("src")
    )
    giving = _giving()

    od = _view_ref("order_detail", "person_id", "total_amount")
    orders = (
        select(od.c.person_id, func.count().label("order_count"), func.sum(od.c.total_amount).label("total_spent"))
        .group_by(od.c.person_id)
        .subquery("o")
    )
    sd = _view_ref("subscription_detail", "person_id")
    subscriptions = (
        select(sd.c.person_id, func.count().label("subscription_count")).group_by(sd.c.person_id).subquery("s")
    )
    td = _view_ref("tag_detail", "person_id")
    tags = select(td.c.person_id, func.count().label("tag_count")).group_by(td.c.person_id).subquery("t")
    cd = _view_ref("communication_detail", "person_id")
    comms = select(cd.c.person_id, func.count().label("comm_count")).group_by(cd.c.person_id).subquery("cm")

    note = Note.__table__.alias("n")
    note_contact = Contact.__table__.alias("nc")
    note_link = IdentityMap.__table__.alias("nim")
    notes = (
        select(note_link.c.master_id, func.count().label("note_count"))
        .select_from(
            note.join(
                note_contact,
                and_(
                    note_contact.c.source_system == note.c.source_system,
                    note_contact.c.source_id == note.c.contact_source_id,
                ),
            ).join(note_link, note_link.c.contact_id == note_contact.c.id)
        )
        .group_by(note_link.c.master_id)
        .subquery("nt")
    )

    joined = (
        link.join(primary, primary.c.id == link.c.contact_id)
        .outerjoin(sources, sources.c.master_id == link.c.master_id)
        .outerjoin(giving, giving.c.person_id == link.c.master_id)
        .outerjoin(orders, orders.c.person_id == link.c.master_id)
        .outerjoin(subscriptions, subscriptions.c.person_id == link.c.master_id)
        .outerjoin(tags, tags.c.person_id == link.c.master_id)
        .outerjoin(comms, comms.c.person_id == link.c.master_id)
        .outerjoin(notes, notes.c.master_id == link.c.master_id)
    )
    return (
        select(
            link.c.master_id.label("person_id"),
            _display_name(primary).label("display_name"),
            primary.c.first_name,
            primary.c.last_name,
            primary.c.email_primary.label("email"),
            primary.c.phone_primary.label("phone"),
            primary.c.address_line1,
            primary.c.city,
            primary.c.state,
            primary.c.postal_code,
            primary.c.country,
            primary.c.date_of_birth,
            primary.c.gender,
            primary.c.spouse_name,
            primary.c.household_name,
            primary.c.organization_name,
            primary.c.source_system.label("primary_source"),
            func.coalesce(sources.c.source_count, 1).label("source_count"),
            sources.c.source_systems,
            func.coalesce(sources.c.identity_count, 1).label("identity_count"),
            func.coalesce(giving.c.donation_count, 0).label("donation_count"),
            func.coalesce(giving.c.total_given, 0).label("lifetime_giving"),
            giving.c.avg_gift,
            giving.c.largest_gift,
            giving.c.first_gift_date,
            giving.c.last_gift_date,
            func.days_since(giving.c.last_gift_date).label("recency_days"),
            func.coalesce(orders.c.order_count, 0).label("order_count"),
            func.coalesce(orders.c.total_spent, 0).label("total_spent"),
            func.coalesce(subscriptions.c.subscription_count, 0).label("subscription_count"),
            func.coalesce(tags.c.tag_count, 0).label("tag_count"),
            func.coalesce(notes.c.note_count, 0).label("note_count"),
            func.coalesce(comms.c.comm_count, 0).label("comm_count"),
            _lifecycle(giving.c.last_gift_date, giving.c.donation_count).label("lifecycle_stage"),
        )
        .select_from(joined)
        .where(link.c.is_primary == true())
    )


def household_360() -> Select:
    """Primary contacts grouped by household (or last name), state and city."""

    link = IdentityMap.__table__.alias("im")
    primary = Contact.__table__.alias("pc")
    giving = _giving()
    name = func.coalesce(primary.c.household_name, primary.c.last_name)
    total = func.sum(func.coalesce(giving.c.total_given, 0))
    return (
        select(
            func.row_number().over(order_by=(name, primary.c.state, primary.c.city)).label("household_id"),
            name.label("name"),
            func.count(link.c.master_id.distinct()).label("member_count"),
            total.label("household_giving_total"),
            case(
                (total == 0, "none"),
                (func.days_since(func.max(giving.c.last_gift_date)) > 365, "declining"),
                (func.days_since(func.min(giving.c.first_gift_date)) < 365, "growing"),
                else_="stable",
            ).label("giving_trend"),
            primary.c.state,
            primary.c.city,
        )
        .select_from(
            link.join(primary, primary.c.id == link.c.contact_id).outerjoin(
                giving, giving.c.person_id == link.c.master_id
            )
        )
        .where(
            link.c.is_primary == true(),
            or_(primary.c.household_name.is_not(None), primary.c.last_name.is_not(None)),
        )
        .group_by(name, primary.c.state, primary.c.city)
    )


SERVING_VIEWS: tuple[ServingView, ...] = (
    ServingView(
        "donation_detail",
        donation_detail,
        indexes=("person_id", "donation_month", "donation_year"),
        description="Deduplicated donations per person",
    ),
    ServingView("order_detail", order_detail, indexes=("person_id", "order_month")),
    ServingView("payment_detail", payment_detail, indexes=("person_id", "payment_month")),
    ServingView("invoice_detail", invoice_detail, indexes=("person_id", "invoice_month")),
    ServingView("subscription_detail", subscription_detail, indexes=("person_id", "subscription_status")),
    ServingView("tag_detail", tag_detail, indexes=("person_id", "tag_group")),
    ServingView("communication_detail", communication_detail, indexes=("person_id", "channel")),
    ServingView(
        "donor_summary",
        donor_summary,
        depends_on=("donation_detail",),
        indexes=("person_id", "total_given", "lifecycle_stage"),
        description="Giving totals per donor",
    ),
    ServingView(
        "donor_monthly",
        donor_monthly,
        depends_on=("donation_detail",),
        indexes=("person_id", "donation_month"),
    ),
    ServingView(
        "person_360",
        person_360,
        depends_on=("donation_detail", "order_detail", "subscription_detail", "tag_detail", "communication_detail"),
        indexes=("person_id", "display_name", "lifecycle_stage"),
        description="One row per master identity",
    ),
    ServingView("household_360", household_360, depends_on=("donation_detail",), indexes=("household_id",)),
)

VIEW_ORDER: tuple[str, ...] = tuple(view.name for view in SERVING_VIEWS)
_BY_NAME = {view.name: view for view in SERVING_VIEWS}


def get_view(name: str) -> ServingView:
    key = name[len(SERVING_PREFIX) :] if name.startswith(SERVING_PREFIX) else name
    try:
        return _BY_NAME[key]
    except KeyError:
        raise ValueError(f"Unknown serving view '{name}'. Expected one of: {', '.join(VIEW_ORDER)}") from None


def dependents_of(name: str) -> list[ServingView]:
    """Views that select from ``name``, directly or transitively, in registry order."""

    found: set[str] = set()
    changed = True
    while changed:
        changed = False
        for view in SERVING_VIEWS:
            if view.name in found:
                continue
            if name in view.depends_on or found.intersection(view.depends_on):
                found.add(view.name)
                changed = True
    return [view for view in SERVING_VIEWS if view.name in found]


def compile_view(view: ServingView, dialect: Dialect) -> str:
    return str(view.build().compile(dialect=dialect, compile_kwargs={"literal_binds": True}))


# -- catalog helpers ----------------------------------------------------------


def object_kind(name: str, connection: Connection | None = None) -> str | None:
    """``"view"``, ``"table"`` or ``None`` for a database object name."""

    connection = connection or db.session.connection()
    inspector = sa_inspect(connection)
    if name in inspector.get_view_names():
        return "view"
    if name in inspector.get_table_names():
        return "table"
    return None


def quote(connection: Connection, name: str) -> str:
    return connection.dialect.identifier_preparer.quote(name)


def drop_object(connection: Connection, name: str) -> str | None:
    kind = object_kind(name, connection)
    if kind == "view":
        connection.exec_driver_sql(f"DROP VIEW {quote(connection, name)}")
    elif kind == "table":
        connection.exec_driver_sql(f"DROP TABLE {quote(connection, name)}")
    return kind


def create_view(connection: Connection, view: ServingView) -> None:
    ddl = compile_view(view, connection.dialect)
    connection.exec_driver_sql(f"CREATE VIEW {quote(connection, view.table_name)} AS {ddl}")


def count_rows(connection: Connection, name: str) -> int:
    return int(connection.exec_driver_sql(f"SELECT COUNT(*) FROM {quote(connection, name)}").scalar() or 0)


def drop_serving_objects() -> list[str]:
    """Drop every serving view/table (and leftover temp tables)."""

    dropped = []
    connection = db.session.connection()
    for view in reversed(SERVING_VIEWS):
        for name in (view.temp_name, view.table_name):
            if drop_object(connection, name):
                dropped.append(name)
    db.session.commit()
    return dropped


# -- builder ------------------------------------------------------------------


@dataclass
class ViewBuildResult:
    view: str
    status: str
    rows: int | None = None
    replaced: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "view": self.view,
            "status": self.status,
            "rows": self.rows,
            "replaced": self.replaced,
            "error": self.error,
        }


@dataclass
class ViewBuildSummary:
    results: list[ViewBuildResult] = field(default_factory=list)

    @property
    def failed(self) -> list[ViewBuildResult]:
        return [result for result in self.results if result.status == "failed"]

    def counts(self) -> dict[str, int]:
        return {
            "views": len(self.results),
            "created": sum(1 for result in self.results if result.status == "created"),
            "failed": len(self.failed),
        }

    def as_dict(self) -> dict[str, object]:
        return {"counts": self.counts(), "views": [result.as_dict() for result in self.results]}


def _log(level: str, message: str, *args, **extra) -> None:
    if has_app_context():
        getattr(current_app.logger, level)(message, *args, extra={"pipeline_stage": "build-views", **extra})


class ServingViewBuilder:
    """
    Create-or-replace for serving views.

    Rebuilding a view also rebuilds everything that selects from it; a
    materialized table of the same name is replaced by the view again, so a
    rebuild always leaves the affected objects in the view-only state.
    """

    def __init__(self, settings: PipelineSettings, *, count_rows: bool = True):
        self.settings = settings
        self.count_rows = count_rows

    def plan(self, only: Iterable[str] | str | None = None) -> list[ServingView]:
        if only is None:
            return list(SERVING_VIEWS)
        names = [only] if isinstance(only, str) else list(only)
        selected = {get_view(name).name for name in names}
        for name in list(selected):
            selected.update(view.name for view in dependents_of(name))
        connection = db.session.connection()
        pending = list(selected)
        while pending:
            for dependency in get_view(pending.pop()).depends_on:
                if dependency not in selected and object_kind(get_view(dependency).table_name, connection) is None:
                    selected.add(dependency)
                    pending.append(dependency)
        return [view for view in SERVING_VIEWS if view.name in selected]

    def define_views(self, only: Iterable[str] | str | None = None) -> ViewBuildSummary:
        views = self.plan(only)
        summary = ViewBuildSummary()
        replaced: dict[str, str | None] = {}

        connection = db.session.connection()
        with statement_timeout(self.settings.bulk_timeout_seconds):
            for view in reversed(views):
                drop_object(connection, view.temp_name)
                replaced[view.name] = drop_object(connection, view.table_name)
        db.session.commit()

        for view in views:
            result = ViewBuildResult(view.name, "created", replaced=replaced.get(view.name))
            try:
                connection = db.session.connection()
                with statement_timeout(self.settings.bulk_timeout_seconds):
                    create_view(connection, view)
                    if self.count_rows:
                        result.rows = count_rows(connection, view.table_name)
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                result.status = "failed"
                result.error = truncate_error(exc)
                _log("error", "Failed to create %s: %s", view.table_name, result.error, pipeline_view=view.name)
            else:
                _log("info", "Created %s (%s rows)", view.table_name, result.rows, pipeline_view=view.name)
            summary.results.append(result)
        return summary
