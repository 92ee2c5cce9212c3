"""
Declarative raw -> silver mappings, one entry per (source, file family, entity).

A mapping selects raw files by their path relative to the source folder and
turns each raw payload into zero or more silver rows. Rows carry the natural
key (``source_id``) and, for transaction entities, the *source* contact id the
row belongs to; cross-system identity is not decided here.

Source contact keys must agree between a contact mapping and the transaction
mappings of the same source, otherwise the transactions surface as unlinked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Mapping

from donorhub.models import (
    Activity,
    Communication,
    Contact,
    ContactTag,
    Donation,
    Invoice,
    Note,
    Order,
    Payment,
    Product,
    Subscription,
)

from .coercion import Coercer

ENTITY_ORDER: tuple[str, ...] = (
    "contact",
    "donation",
    "invoice",
    "payment",
    "order",
    "subscription",
    "product",
    "note",
    "communication",
    "activity",
    "tag",
)

ENTITY_MODELS = {
    "contact": Contact,
    "donation": Donation,
    "invoice": Invoice,
    "payment": Payment,
    "order": Order,
    "subscription": Subscription,
    "product": Product,
    "note": Note,
    "communication": Communication,
    "activity": Activity,
    "tag": ContactTag,
}

Row = dict[str, object]


class RowView:
    """Accessors over one raw payload, tolerant of header spelling drift."""

    def __init__(
        self,
        payload: Mapping[str, object],
        *,
        coercer: Coercer,
        entity: str,
        record_hash: str,
        lookups: Mapping[str, object] | None = None,
    ):
        self.payload = payload
        self.coercer = coercer
        self.entity = entity
        self.record_hash = record_hash
        self.lookups = lookups or {}
        self._folded: dict[str, object] | None = None

    def get(self, *names: str) -> str | None:
        """First non-blank value among ``names`` (exact, then case-insensitive)."""

        for name in names:
            value = self.payload.get(name)
            if value is not None and str(value).strip():
                return str(value)
        if self._folded is None:
            self._folded = {str(key).lower(): value for key, value in self.payload.items()}
        for name in names:
            value = self._folded.get(name.lower())
            if value is not None and str(value).strip():
                return str(value)
        return None

    def text(self, width: int, *names: str) -> str | None:
        return self.coercer.text(self.get(*names), width)

    def email(self, *names: str) -> str | None:
        return self.coercer.email(self.get(*names))

    def amount(self, *names: str) -> float | None:
        return self.coercer.amount(self.get(*names), f"{self.entity}.{names[0]}")

    def when(self, *names: str):
        return self.coercer.timestamp(self.get(*names), f"{self.entity}.{names[0]}")

    def day(self, *names: str):
        return self.coercer.day(self.get(*names), f"{self.entity}.{names[0]}")

    def flag(self, *names: str) -> bool | None:
        return self.coercer.flag(self.get(*names), f"{self.entity}.{names[0]}")

    def key(self, *names: str) -> str | None:
        value = self.get(*names)
        return value.strip()[:256] if value else None

    def fallback_key(self, prefix: str = "row") -> str:
        return f"{prefix}:{self.record_hash}"


Builder = Callable[[RowView], "Row | list[Row] | None"]
Preparer = Callable[[Callable[[Callable[[str], bool]], Iterator[Mapping[str, object]]]], Mapping[str, object]]


@dataclass(frozen=True)
class EntityMapping:
    """
    Attributes:
        name: Label used in logs and summaries (``keap.contacts``).
        source: Source system the raw files belong to.
        entity: Silver entity kind, one of ``ENTITY_ORDER``.
        matches: Predicate over the blob path relative to the source folder.
        build: Payload -> silver row(s); ``None`` skips the payload.
        prepare: Optional pre-pass reading side files into ``RowView.lookups``.
    """

    name: str
    source: str
    entity: str
    matches: Callable[[str], bool]
    build: Builder
    prepare: Preparer | None = field(default=None, compare=False)

    @property
    def model(self):
        return ENTITY_MODELS[self.entity]


def _contains(*needles: str, excluding: Iterable[str] = ()) -> Callable[[str], bool]:
    excluded = tuple(excluding)

    def _match(path: str) -> bool:
        return any(needle in path for needle in needles) and not any(item in path for item in excluded)

    return _match


def _display_name(*parts: str | None) -> str | None:
    joined = " ".join(part.strip() for part in parts if part and part.strip())
    return joined[:256] or None


def _split_name(name: str | None) -> tuple[str | None, str | None]:
    if not name or not name.strip():
        return None, None
    pieces = name.split()
    return pieces[0][:128], (" ".join(pieces[1:])[:128] or None)


# -- Keap ---------------------------------------------------------------------


def keap_contact(row: RowView) -> Row | None:
    source_id = row.key("Id")
    if not source_id:
        return None
    first, last = row.text(128, "FirstName"), row.text(128, "LastName")
    return {
        "source_id": source_id,
        "first_name": first,
        "last_name": last,
        "display_name": _display_name(first, last),
        "email_primary": row.email("Email"),
        "email_2": row.email("EmailAddress2"),
        "email_3": row.email("EmailAddress3"),
        "phone_primary": row.text(32, "Phone1"),
        "phone_2": row.text(32, "Phone2"),
        "phone_3": row.text(32, "Phone3"),
        "address_line1": row.text(256, "StreetAddress1"),
        "address_line2": row.text(256, "StreetAddress2"),
        "city": row.text(128, "City"),
        "state": row.text(64, "State"),
        "postal_code": row.text(20, "PostalCode"),
        "country": row.text(64, "Country"),
        "organization_name": row.text(256, "Company"),
        "date_of_birth": row.day("Birthday"),
        "spouse_name": row.text(256, "SpouseName"),
        "source_created_at": row.when("DateCreated"),
        "source_updated_at": row.when("LastUpdated"),
    }


def keap_invoice(row: RowView) -> Row | None:
    invoice_id = row.key("Id")
    if not invoice_id:
        return None
    return {
        "source_id": invoice_id,
        "contact_source_id": row.key("ContactId"),
        "invoice_number": row.text(64, "Id"),
        "total": row.amount("InvoiceTotal"),
        "pay_status": row.text(32, "PayStatus"),
        "issued_at": row.when("DateCreated"),
    }


def keap_payment(row: RowView) -> Row | None:
    return {
        "source_id": row.key("Id") or row.fallback_key(),
        "contact_source_id": row.key("ContactId"),
        "amount": row.amount("PayAmt"),
        "paid_at": row.when("PayDate"),
        "payment_method": row.text(64, "PayType"),
        "invoice_source_id": row.key("InvoiceId"),
    }


def keap_order(row: RowView) -> Row | None:
    order_id = row.key("Id")
    if not order_id:
        return None
    return {
        "source_id": order_id,
        "contact_source_id": row.key("ContactId"),
        "order_number": row.text(64, "Id"),
        "total_amount": row.amount("OrderTotal", "Total"),
        "ordered_at": row.when("DateCreated"),
        "order_status": row.text(32, "OrderStatus"),
    }


def keap_subscription(row: RowView) -> Row | None:
    return {
        "source_id": row.key("Id") or row.fallback_key(),
        "contact_source_id": row.key("ContactId"),
        "product_source_id": row.key("ProductId"),
        "amount": row.amount("BillingAmt"),
        "billing_cycle": row.text(32, "BillingCycle", "Frequency"),
        "status": row.text(32, "Status"),
        "start_date": row.when("StartDate"),
        "next_bill_date": row.when("NextBillDate"),
        "reason_stopped": row.text(256, "ReasonStopped"),
    }


def keap_product(row: RowView) -> Row | None:
    product_id = row.key("Id")
    if not product_id:
        return None
    return {
        "source_id": product_id,
        "name": row.text(256, "ProductName", "Name"),
        "sku": row.text(64, "Sku"),
        "price": row.amount("ProductPrice", "Price"),
    }


def keap_note(row: RowView) -> Row | None:
    parts = [row.get("ActionDescription"), row.get("CreationNotes")]
    body = "\n".join(part.strip() for part in parts if part and part.strip())
    if not body:
        return None
    return {
        "source_id": row.key("Id") or row.fallback_key(),
        "contact_source_id": row.key("ContactId"),
        "subject": row.text(512, "ActionDescription"),
        "body": body[:4000],
        "author": _display_name(row.get("First Name"), row.get("Last Name")),
        "noted_at": row.when("ActionDate") or row.when("CreationDate"),
    }


def keap_tag(row: RowView) -> Row | None:
    tag = row.text(512, "GroupName", "TagName", "Name", "Tag")
    if not tag:
        return None
    contact_id = row.key("ContactId")
    tag_id = row.key("Id", "TagId", "GroupId") or row.record_hash
    return {
        "source_id": f"{tag_id}:{contact_id or ''}",
        "contact_source_id": contact_id,
        "tag_value": tag,
        "tag_group": row.text(256, "GroupCategory", "TagCategory", "CategoryName"),
        "applied_at": row.when("DateCreated", "DateApplied"),
    }


# -- Donor Direct -------------------------------------------------------------


def _is_active(row_view: RowView) -> bool:
    return (row_view.get("Active", "IsActive") or "True").strip().lower() != "false"


def _is_primary(row_view: RowView) -> bool:
    return (row_view.get("UseAsPrimary", "IsPrimary") or "").strip().lower() == "true"


def donor_direct_account_lookups(read: Callable[[Callable[[str], bool]], Iterator[Mapping[str, object]]]) -> dict:
    """
    Index AccountEmails / AccountPhones / AccountAddresses by account number.

    Inactive entries are ignored; an entry flagged ``UseAsPrimary`` replaces
    whatever was picked earlier for the account.
    """

    coercer = Coercer()
    emails: dict[str, str] = {}
    phones: dict[str, str] = {}
    addresses: dict[str, dict[str, str | None]] = {}

    for payload in read(_contains("AccountEmails", "Emails")):
        view = RowView(payload, coercer=coercer, entity="contact", record_hash="")
        account, email = view.key("AccountNumber", "Account Number"), view.email("EmailAddress", "Email Address", "Email")
        if account and email and _is_active(view) and (account not in emails or _is_primary(view)):
            emails[account] = email

    for payload in read(_contains("AccountPhones", "Phones")):
        view = RowView(payload, coercer=coercer, entity="contact", record_hash="")
        account = view.key("AccountNumber", "Account Number")
        phone = view.text(32, "NumericTelephoneNumber", "PhoneNumber", "Phone Number", "Phone")
        if account and phone and _is_active(view) and (account not in phones or _is_primary(view)):
            phones[account] = phone

    for payload in read(_contains("AccountAddresses", "Addresses")):
        view = RowView(payload, coercer=coercer, entity="contact", record_hash="")
        account = view.key("AccountNumber", "Account Number")
        if not account or not _is_active(view):
            continue
        if account in addresses and not _is_primary(view):
            continue
        addresses[account] = {
            "address_line1": view.text(256, "AddressLine1", "Address Line 1", "Street1"),
            "address_line2": view.text(256, "AddressLine2", "Address Line 2", "Street2"),
            "city": view.text(128, "City"),
            "state": view.text(64, "State", "StateProvince"),
            "postal_code": view.text(20, "ZipPostal", "Zip", "Postal Code", "PostalCode"),
            "country": view.text(64, "Country"),
        }

    return {"emails": emails, "phones": phones, "addresses": addresses}


def donor_direct_account(row: RowView) -> Row | None:
    account = row.key("AccountNumber", "Account Number")
    if not account:
        return None
    first = row.text(128, "FirstName", "First Name")
    last = row.text(128, "LastName", "Last Name")
    address = row.lookups.get("addresses", {}).get(account, {})
    return {
        "source_id": account,
        "first_name": first,
        "last_name": last,
        "display_name": _display_name(row.get("Title"), first, last, row.get("Suffix")),
        "email_primary": row.lookups.get("emails", {}).get(account),
        "phone_primary": row.lookups.get("phones", {}).get(account),
        "address_line1": address.get("address_line1"),
        "address_line2": address.get("address_line2"),
        "city": address.get("city"),
        "state": address.get("state"),
        "postal_code": address.get("postal_code"),
        "country": address.get("country"),
        "organization_name": row.text(256, "OrganizationName", "Organization Name"),
        "spouse_name": row.text(256, "SpouseName", "Spouse Name"),
        "gender": row.text(16, "Gender"),
        "source_created_at": row.when("DateCreated", "CreatedDate"),
        "source_updated_at": row.when("DateModified", "LastModifiedDate"),
    }


def donor_direct_transaction(row: RowView) -> Row | None:
    account = row.key("AccountNumber")
    record_id = row.key("RecordId")
    return {
        "source_id": f"{record_id or row.record_hash}:{account or ''}",
        "contact_source_id": account,
        "amount": row.amount("Amount"),
        "currency": row.text(8, "CurrencyCode") or "USD",
        "donated_at": row.when("Date"),
        "payment_method": row.text(64, "PaymentType"),
        "fund": row.text(256, "ProjectCode"),
        "appeal": row.text(256, "SourceCode"),
        "designation": row.text(256, "Subaccount"),
    }


def donor_direct_donation_order(row: RowView) -> Row | None:
    return {
        "source_id": "order:" + (row.key("OrderNumber", "Order Number", "Id") or row.record_hash),
        "contact_source_id": row.key("AccountNumber", "Account Number"),
        "amount": row.amount("Amount", "Total", "Total Amount"),
        "currency": "USD",
        "donated_at": row.when("Date", "Order Date"),
    }


def donor_direct_recurring(row: RowView) -> Row | None:
    return {
        "source_id": row.key("RecordId", "RecurringId") or row.fallback_key(),
        "contact_source_id": row.key("AccountNumber"),
        "amount": row.amount("Amount", "RecurringAmount"),
        "billing_cycle": row.text(32, "Frequency", "RecurringFrequency"),
        "status": row.text(32, "Status", "RecurringStatus"),
        "start_date": row.when("StartDate", "DateCreated"),
        "next_bill_date": row.when("NextDate", "NextTransactionDate"),
    }


def donor_direct_note(row: RowView) -> Row | None:
    parts = [row.get("ShortComment"), row.get("LongComment"), row.get("Description")]
    body = "\n".join(part.strip() for part in parts if part and part.strip())
    return {
        "source_id": row.key("RecordId") or row.fallback_key(),
        "contact_source_id": row.key("AccountNumber"),
        "subject": row.text(512, "ShortComment"),
        "body": body[:4000] or None,
        "noted_at": row.when("Date", "CreatedDate"),
    }


def donor_direct_communication(row: RowView) -> Row | None:
    return {
        "source_id": row.key("RecordId") or row.fallback_key(),
        "contact_source_id": row.key("AccountNumber"),
        "channel": row.text(32, "CommunicationType"),
        "direction": row.text(16, "InboundOrOutbound"),
        "subject": row.text(512, "ShortComment"),
        "sent_at": row.when("Date"),
    }


def _kindful_donor_key(row: RowView) -> str | None:
    donor_id = row.key("Id", "Donor ID", "Contact ID")
    return f"kindful:{donor_id}" if donor_id else None


def donor_direct_kindful_donor(row: RowView) -> Row | None:
    key = _kindful_donor_key(row)
    if not key:
        return None
    first = row.text(128, "First Name", "FirstName")
    last = row.text(128, "Last Name", "LastName")
    return {
        "source_id": key,
        "first_name": first,
        "last_name": last,
        "display_name": row.text(256, "Name", "Display Name") or _display_name(first, last),
        "email_primary": row.email("Email"),
        "email_2": row.email("Email Address 2"),
        "email_3": row.email("Email Address 3"),
        "phone_primary": row.text(32, "Phone 1", "Phone"),
        "phone_2": row.text(32, "Phone 2"),
        "phone_3": row.text(32, "Phone 3"),
        "address_line1": row.text(256, "Street Address 1", "Address1"),
        "address_line2": row.text(256, "Street Address 2", "Address2"),
        "city": row.text(128, "City"),
        "state": row.text(64, "State"),
        "postal_code": row.text(20, "Postal Code", "Zip"),
        "country": row.text(64, "Country"),
        "organization_name": row.text(256, "Company Name", "Company"),
        "household_name": row.text(256, "Household Name", "Household"),
    }


def donor_direct_kindful_tags(row: RowView) -> list[Row] | None:
    key = _kindful_donor_key(row)
    tags = row.get("Tags")
    if not key or not tags:
        return None
    seen: list[str] = []
    for item in tags.split(","):
        value = item.strip()[:512]
        if value and value not in seen:
            seen.append(value)
    return [
        {"source_id": f"{key}:{value}", "contact_source_id": key, "tag_value": value, "tag_group": "kindful"}
        for value in seen
    ]


def donor_direct_kindful_activity(row: RowView) -> Row | None:
    if not row.get("Activity Type") and not row.get("Note Content"):
        return None
    donor_id = row.key("Donor ID", "Contact ID")
    return {
        "source_id": row.key("Activity ID", "Id") or row.fallback_key(),
        "contact_source_id": f"kindful:{donor_id}" if donor_id else None,
        "activity_type": row.text(64, "Activity Type"),
        "subject": row.text(512, "Note Subject"),
        "body": row.text(4000, "Note Content", "Comments"),
        "occurred_at": row.when("Created At"),
    }


# -- Kindful reports and transaction imports ----------------------------------


def _report_contact_key(row: RowView, prefix: str = "") -> str | None:
    email = row.email("Email")
    if email:
        return f"{prefix}{email}"
    if row.get("First Name/Org Name", "First Name"):
        return f"{prefix}{row.fallback_key()}"
    return None


def report_contact(row: RowView) -> Row | None:
    key = _report_contact_key(row)
    if not key:
        return None
    return {
        "source_id": key,
        "first_name": row.text(128, "First Name/Org Name", "First Name"),
        "last_name": row.text(128, "Last Name"),
        "email_primary": row.email("Email"),
        "phone_primary": row.text(32, "Phone"),
        "address_line1": row.text(256, "Address", "Street Address 1"),
        "city": row.text(128, "City"),
        "state": row.text(64, "State"),
        "postal_code": row.text(20, "Zip", "Postal Code"),
    }


def report_donation(row: RowView) -> Row | None:
    if not row.get("Amount"):
        return None
    return {
        "source_id": "txn:" + (row.key("Transaction ID", "Id") or row.record_hash),
        "contact_source_id": _report_contact_key(row),
        "amount": row.amount("Amount"),
        "currency": "USD",
        "donated_at": row.when("Created At", "Date"),
        "fund": row.text(256, "Fund Name", "Campaigns"),
        "payment_method": row.text(64, "Payment Method", "Payment Type"),
    }


def kindful_leaving_contact(row: RowView) -> Row | None:
    email = row.email("Email")
    if not email:
        return None
    return {
        "source_id": f"leaving:{email}",
        "first_name": row.text(128, "First Name"),
        "last_name": row.text(128, "Last Name"),
        "email_primary": email,
    }


# -- Stripe, Bloomerang, Givebutter -------------------------------------------


def stripe_customer(row: RowView) -> Row | None:
    customer_id = row.key("id")
    name = row.get("name", "Name")
    email = row.email("email", "Email")
    if not customer_id and not email and not name:
        return None
    first, last = _split_name(name)
    return {
        "source_id": customer_id or row.fallback_key(),
        "first_name": first,
        "last_name": last,
        "display_name": row.coercer.text(name, 256),
        "email_primary": email,
        "phone_primary": row.text(32, "phone", "phone (metadata)"),
        "source_created_at": row.when("Created (UTC)", "created"),
    }


def stripe_payment(row: RowView) -> Row | None:
    return {
        "source_id": row.key("id") or row.fallback_key(),
        "contact_source_id": row.key("Customer ID", "customer"),
        "amount": row.amount("Amount", "amount"),
        "paid_at": row.when("Created date (UTC)", "Created (UTC)", "created"),
        "payment_method": row.text(64, "Card Brand", "Payment Method Type"),
    }


def bloomerang_token(row: RowView) -> Row | None:
    email = row.email("Email Address", "Email")
    if not email:
        return None
    return {
        "source_id": row.key("Token") or row.fallback_key(),
        "last_name": row.text(128, "Last Name", "LastName"),
        "email_primary": email,
    }


def givebutter_contact(row: RowView) -> Row | None:
    contact_id = row.key("Contact ID", "Givebutter Contact ID", "id")
    if not contact_id:
        return None
    first = row.text(128, "First Name")
    last = row.text(128, "Last Name")
    return {
        "source_id": contact_id,
        "first_name": first,
        "last_name": last,
        "display_name": _display_name(first, last),
        "email_primary": row.email("Primary Email", "Email"),
        "phone_primary": row.text(32, "Primary Phone", "Phone"),
        "address_line1": row.text(256, "Address Line 1", "Address"),
        "address_line2": row.text(256, "Address Line 2"),
        "city": row.text(128, "City"),
        "state": row.text(64, "State"),
        "postal_code": row.text(20, "Zip Code", "Zip"),
        "country": row.text(64, "Country"),
        "organization_name": row.text(256, "Company", "Company Name"),
        "source_created_at": row.when("Date Created", "Created At"),
        "source_updated_at": row.when("Last Modified", "Updated At"),
    }


def givebutter_transaction(row: RowView) -> Row | None:
    return {
        "source_id": row.key("Transaction ID", "ID") or row.fallback_key(),
        "contact_source_id": row.key("Contact ID", "Givebutter Contact ID"),
        "amount": row.amount("Amount", "Donated"),
        "currency": row.text(8, "Currency") or "USD",
        "donated_at": row.when("Transaction Date", "Date"),
        "payment_method": row.text(64, "Method", "Payment Method"),
        "fund": row.text(256, "Fund", "Fund Code"),
        "appeal": row.text(256, "Campaign Title", "Campaign"),
    }


def givebutter_communication(row: RowView) -> Row | None:
    return {
        "source_id": row.key("RecordId", "Id") or row.fallback_key(),
        "contact_source_id": row.key("Contact ID", "AccountNumber"),
        "channel": row.text(32, "CommunicationType", "Type"),
        "direction": row.text(16, "InboundOrOutbound", "Direction"),
        "subject": row.text(512, "ShortComment", "Subject"),
        "sent_at": row.when("Date"),
    }


# -- Generic CSV --------------------------------------------------------------


def _generic_contact_key(row: RowView) -> str:
    return row.key("id", "contact_id", "Id") or row.fallback_key()


def generic_contact(row: RowView) -> Row | None:
    first = row.text(128, "first_name", "First Name")
    last = row.text(128, "last_name", "Last Name")
    return {
        "source_id": _generic_contact_key(row),
        "first_name": first,
        "last_name": last,
        "display_name": row.text(256, "name", "display_name") or _display_name(first, last),
        "email_primary": row.email("email", "Email"),
        "phone_primary": row.text(32, "phone", "Phone"),
        "address_line1": row.text(256, "address", "address_line1"),
        "city": row.text(128, "city"),
        "state": row.text(64, "state"),
        "postal_code": row.text(20, "zip", "postal_code"),
        "country": row.text(64, "country"),
        "organization_name": row.text(256, "organization", "company"),
        "source_updated_at": row.when("updated_at"),
    }


def generic_donation(row: RowView) -> Row | None:
    if not row.get("amount"):
        return None
    return {
        "source_id": row.key("transaction_id", "donation_id") or row.fallback_key(),
        "contact_source_id": _generic_contact_key(row),
        "amount": row.amount("amount"),
        "currency": row.text(8, "currency") or "USD",
        "donated_at": row.when("date", "donated_at"),
        "fund": row.text(256, "fund"),
        "appeal": row.text(256, "appeal", "campaign"),
    }


# -- Registry -----------------------------------------------------------------

_not_leaving = lambda path: "Leaving" not in path  # noqa: E731
_everything = lambda path: True  # noqa: E731

MAPPINGS: tuple[EntityMapping, ...] = (
    # contacts
    EntityMapping("keap.contacts", "keap", "contact", lambda p: p.endswith("Contact.csv"), keap_contact),
    EntityMapping(
        "donor_direct.accounts",
        "donor_direct",
        "contact",
        _contains("PFM_Accounts"),
        donor_direct_account,
        prepare=donor_direct_account_lookups,
    ),
    EntityMapping("donor_direct.kindful_donors", "donor_direct", "contact", _contains("Kindful Donors"), donor_direct_kindful_donor),
    EntityMapping("stripe.customers", "stripe", "contact", _contains("Customers", "customers"), stripe_customer),
    EntityMapping("bloomerang.tokens", "bloomerang", "contact", _contains("Token-Account Match"), bloomerang_token),
    EntityMapping("kindful.reports", "kindful", "contact", _not_leaving, report_contact),
    EntityMapping("kindful.leaving", "kindful", "contact", _contains("Leaving"), kindful_leaving_contact),
    EntityMapping("transactions_imports.contacts", "transactions_imports", "contact", _everything, report_contact),
    EntityMapping("givebutter.contacts", "givebutter", "contact", _contains("Contacts", "contacts"), givebutter_contact),
    EntityMapping("csv.contacts", "csv", "contact", _everything, generic_contact),
    # donations
    EntityMapping("donor_direct.transactions", "donor_direct", "donation", _contains("PFM_Transactions"), donor_direct_transaction),
    EntityMapping("donor_direct.donation_orders", "donor_direct", "donation", _contains("Donation Orders"), donor_direct_donation_order),
    EntityMapping("kindful.donations", "kindful", "donation", _not_leaving, report_donation),
    EntityMapping("transactions_imports.donations", "transactions_imports", "donation", _everything, report_donation),
    EntityMapping("givebutter.transactions", "givebutter", "donation", _contains("Transactions", "transactions"), givebutter_transaction),
    EntityMapping("csv.donations", "csv", "donation", _everything, generic_donation),
    # commerce
    EntityMapping(
        "keap.invoices", "keap", "invoice", _contains("Invoice", excluding=("InvoiceItem", "InvoicePayment")), keap_invoice
    ),
    EntityMapping(
        "keap.payments", "keap", "payment", _contains("Payment", excluding=("InvoicePayment", "Saved")), keap_payment
    ),
    EntityMapping("stripe.payments", "stripe", "payment", _contains("Payments", "payments", "charges"), stripe_payment),
    EntityMapping("keap.orders", "keap", "order", _contains("Orders known as Jobs"), keap_order),
    EntityMapping("keap.subscriptions", "keap", "subscription", _contains("JobRecurring"), keap_subscription),
    EntityMapping(
        "donor_direct.recurring",
        "donor_direct",
        "subscription",
        _contains("PFM_Recurring", "recurringTransactions"),
        donor_direct_recurring,
    ),
    EntityMapping("keap.products", "keap", "product", _contains("Product", excluding=("ProductCategory",)), keap_product),
    # engagement
    EntityMapping("keap.notes", "keap", "note", _contains("Notes"), keap_note),
    EntityMapping("donor_direct.notes", "donor_direct", "note", _contains("AccountNotes"), donor_direct_note),
    EntityMapping(
        "donor_direct.communications",
        "donor_direct",
        "communication",
        _contains("AccountCommunications", "Communications"),
        donor_direct_communication,
    ),
    EntityMapping(
        "givebutter.communications", "givebutter", "communication", _contains("Communication"), givebutter_communication
    ),
    EntityMapping(
        "donor_direct.kindful_activity", "donor_direct", "activity", _contains("Kindful Activity"), donor_direct_kindful_activity
    ),
    EntityMapping("keap.tags", "keap", "tag", _contains("Tags", "Tag Applications"), keap_tag),
    EntityMapping("donor_direct.kindful_tags", "donor_direct", "tag", _contains("Kindful Donors"), donor_direct_kindful_tags),
)


def mappings_for(
    *,
    source: str | None = None,
    entity: str | None = None,
    registry: Iterable[EntityMapping] = MAPPINGS,
) -> list[EntityMapping]:
    """Registry entries filtered by source and entity, in entity order."""

    selected = [
        mapping
        for mapping in registry
        if (source is None or mapping.source == source) and (entity is None or mapping.entity == entity)
    ]
    selected.sort(key=lambda mapping: ENTITY_ORDER.index(mapping.entity))
    return selected
