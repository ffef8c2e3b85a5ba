"""
Karbon API response normalizer.

Converts raw Karbon v3 dicts into field dicts that map directly onto the
SQLModel tables in mottahub.models. No DB access and no network access here;
callers (sync_service, webhook handling) handle persistence.

Guarantees shared by every map_* function:

  - Never raises on missing or null nested data. Absent data becomes None.
  - Every column of the kind's table is present in the output, except id
    and the reconciliation-owned contact_id / organization_id, so a batch of
    mapped records can be written with a single upsert statement.
  - Deterministic apart from last_synced_at / updated_at, which are "now".

Multi-source fields are resolved through ordered extractor tuples (see
mottahub.karbon.fields.resolve): explicit top-level field, then the
primary/flagged nested entry, then the first nested entry, then None.
"""
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from mottahub.karbon.fields import (
    as_list,
    business_card,
    card_field,
    compact,
    field,
    first_entry,
    labelled_entry,
    parse_karbon_date,
    parse_karbon_datetime,
    primary_entry,
    resolve,
    text,
    to_bool,
    to_float,
    to_int,
)

KARBON_APP_URL = "https://app2.karbonhq.com/4mTyp9lLRWTC#"

# ─── Domain heuristics ────────────────────────────────────────────────────────

_YEAR_TOKEN = re.compile(r"20\d{2}")

# Evaluated top to bottom; the first rule with a matching keyword wins.
# "1120-S" must precede "1120" because the latter is a substring of the former.
ENTITY_TYPE_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("1120-S - S-Corp", ("1120-S", "1120S", "S-CORP")),
    ("1120 - C-Corp", ("1120", "C-CORP")),
    ("1065 - Partnership", ("1065", "PARTNERSHIP")),
    ("1040 - Individual", ("1040", "INDIVIDUAL")),
    ("990 - Nonprofit", ("990", "NONPROFIT", "NON-PROFIT", "EXEMPT")),
    ("1041 - Trusts & Estates", ("1041", "TRUST", "ESTATE")),
    ("709 - Gift", ("709", "GIFT")),
)

# More specific buckets come before the generic "tax" bucket.
REGISTRATION_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("ein", ("ein", "employer")),
    ("business_number", ("business number", "abn")),
    ("gst_number", ("gst",)),
    ("sales_tax_id", ("sales tax",)),
    ("payroll_tax_id", ("payroll",)),
    ("unemployment_tax_id", ("unemployment", "suta")),
    ("state_tax_id", ("state",)),
    ("tax_number", ("tax",)),
)
REGISTRATION_FIELDS = tuple(column for column, _ in REGISTRATION_RULES)

SERVICE_LINES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("TAX", ("TAX", "TAXES", "1040", "1120", "1065")),
    ("ACCOUNTING", ("ACCT", "ACCOUNTING", "ACCTG")),
    ("BOOKKEEPING", ("BOOK", "BOOKKEEPING", "BK")),
    ("ADVISORY", ("ADVS", "ADVISORY", "ADV")),
    ("MOTTA", ("MOTTA", "INTERNAL")),
    ("ALFRED AI", ("ALFRED", "AI", "AAI")),
    ("MWM", ("MWM", "WEALTH", "WEALTH MANAGEMENT", "WM")),
    ("SUFFOLK", ("SUFFOLK", "SUFF", "SEED")),
)

# Primary status names that take a status out of the default "active" filter
INACTIVE_STATUS_WORDS = (
    "completed",
    "cancelled",
    "on hold",
    "archived",
    "closed",
    "deferred",
    "not applicable",
    "n/a",
    "deleted",
)


def parse_tax_year(raw: Dict[str, Any]) -> Optional[int]:
    """
    Derive a work item's tax year.

    Tried in order, each only if the previous yields nothing:
      1. explicit TaxYear
      2. calendar year of YearEnd, accepted only within [2000, 2100)
      3. first 20xx token in Title
    Returns None when all three fail.
    """
    explicit = to_int(raw.get("TaxYear")) if isinstance(raw, dict) else None
    if explicit:
        return explicit

    year_end = parse_karbon_datetime(raw.get("YearEnd")) if isinstance(raw, dict) else None
    if year_end is not None and 2000 <= year_end.year < 2100:
        return year_end.year

    title = raw.get("Title") if isinstance(raw, dict) else None
    if isinstance(title, str):
        match = _YEAR_TOKEN.search(title)
        if match:
            return int(match.group(0))
    return None


def classify_entity_type(*texts: Optional[str]) -> Optional[str]:
    """Tax-return entity bucket for a work item title / work type, or None."""
    haystack = " ".join(t for t in texts if isinstance(t, str)).upper()
    if not haystack:
        return None
    for label, keywords in ENTITY_TYPE_RULES:
        if any(keyword in haystack for keyword in keywords):
            return label
    return None


def classify_service_line(title: Optional[str], client_name: Optional[str] = None) -> str:
    """Bucket a work item into a firm service line from its title prefix."""
    if title and "PROSPECT" in title.upper():
        return "PROSPECTS"
    # All work for the firm itself is internal
    if client_name and "MOTTA" in client_name.upper():
        return "MOTTA"
    if not title:
        return "OTHER"

    prefix = re.split(r"[|\-:]", title, maxsplit=1)[0].strip().upper()
    for service_line, keywords in SERVICE_LINES:
        if any(keyword in prefix for keyword in keywords):
            return service_line
    return "OTHER"


def classify_registration_numbers(entries: Any) -> Dict[str, Optional[str]]:
    """
    Bucket Karbon registration-number entries by their free-text Type.

    Each entry lands in exactly one bucket (first matching rule, case
    insensitive substring). Entries matching no rule are dropped. When two
    entries land in the same bucket, the later one wins.
    """
    result: Dict[str, Optional[str]] = {column: None for column in REGISTRATION_FIELDS}
    for entry in as_list(entries):
        if not isinstance(entry, dict):
            continue
        number = text(entry.get("RegistrationNumber")) or text(entry.get("Number"))
        reg_type = (text(entry.get("Type")) or "").lower()
        if not number or not reg_type:
            continue
        for column, keywords in REGISTRATION_RULES:
            if any(keyword in reg_type for keyword in keywords):
                result[column] = number
                break
    return result


# ─── Shared helpers ───────────────────────────────────────────────────────────

def _now() -> datetime:
    return datetime.utcnow()


def _karbon_url(section: str, key: Optional[str]) -> Optional[str]:
    return f"{KARBON_APP_URL}/{section}/{key}" if key else None


def _json_list(value: Any) -> Optional[List[Any]]:
    if value is None:
        return None
    return value if isinstance(value, list) else [value]


def _json_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) and value else None


def _addresses(raw: Dict[str, Any]) -> List[Any]:
    card = business_card(raw)
    return as_list(card.get("Addresses")) or as_list(card.get("PostalAddresses"))


def _physical_address(raw: Dict[str, Any]) -> Dict[str, Any]:
    addresses = _addresses(raw)
    chosen = (
        labelled_entry(addresses, "Physical", "Business")
        or labelled_entry(addresses, "Physical", "Business", key="Type")
        or primary_entry(addresses, "IsPrimary")
        or first_entry(addresses)
    )
    return chosen if isinstance(chosen, dict) else {}


def _mailing_address(raw: Dict[str, Any]) -> Dict[str, Any]:
    addresses = _addresses(raw)
    chosen = labelled_entry(addresses, "Mailing") or labelled_entry(
        addresses, "Mailing", key="Type"
    )
    return chosen if isinstance(chosen, dict) else {}


def _phones(raw: Dict[str, Any]) -> List[Any]:
    return as_list(business_card(raw).get("PhoneNumbers"))


def _labelled_phone(*labels: str) -> Callable[[Dict[str, Any]], Optional[str]]:
    def extract(raw: Dict[str, Any]) -> Optional[str]:
        phones = _phones(raw)
        entry = labelled_entry(phones, *labels) or labelled_entry(phones, *labels, key="Type")
        return text(entry)

    return extract


def _emails(raw: Dict[str, Any]) -> List[Any]:
    return as_list(business_card(raw).get("EmailAddresses"))


def _registration_entries(raw: Dict[str, Any]) -> List[Any]:
    accounting = raw.get("AccountingDetail")
    nested = accounting.get("RegistrationNumbers") if isinstance(accounting, dict) else None
    return as_list(raw.get("RegistrationNumbers")) or as_list(nested)


def _address_fields(address: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    line1 = address.get("AddressLines") or address.get("AddressLine1") or address.get("Street")
    return {
        f"{prefix}address_line1": text(line1),
        f"{prefix}city": text(address.get("City")),
        f"{prefix}state": text(
            resolve(address, (field("StateProvinceCounty"), field("StateProvince"), field("State")))
        ),
        f"{prefix}zip_code": text(
            resolve(address, (field("ZipCode"), field("PostCode"), field("PostalCode")))
        ),
        f"{prefix}country": text(resolve(address, (field("CountryCode"), field("Country")))),
    }


# ─── Field extractor tables (resolution order is significant) ─────────────────

EMAIL_SOURCES = (
    field("EmailAddress"),
    lambda raw: text(primary_entry(_emails(raw), "IsPrimary")),
    lambda raw: text(first_entry(_emails(raw))),
)
PHONE_SOURCES = (
    field("PhoneNumber"),
    lambda raw: text(primary_entry(_phones(raw), "IsPrimary")),
    _labelled_phone("Primary", "Work", "Business"),
    lambda raw: text(first_entry(_phones(raw))),
)
WEBSITE_SOURCES = (
    field("Website"),
    lambda raw: text(primary_entry(business_card(raw).get("WebSites"), "IsPrimary")),
    lambda raw: text(first_entry(business_card(raw).get("WebSites"))),
)
LINKEDIN_SOURCES = (
    field("LinkedInLink"),
    card_field("LinkedInLink"),
    card_field("LinkedInUrl"),
)
TWITTER_SOURCES = (
    field("TwitterLink"),
    card_field("TwitterLink"),
    card_field("TwitterUrl"),
)
FACEBOOK_SOURCES = (
    field("FacebookLink"),
    card_field("FacebookLink"),
    card_field("FacebookUrl"),
)


# ─── Entity mappers ───────────────────────────────────────────────────────────

def map_contact(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a Karbon Contact (optionally expanded with BusinessCards / AccountingDetail)."""
    raw = raw if isinstance(raw, dict) else {}
    accounting = raw.get("AccountingDetail") if isinstance(raw.get("AccountingDetail"), dict) else {}
    key = text(raw.get("ContactKey"))

    emails = compact(text(e) for e in _emails(raw))
    primary_email = text(resolve(raw, EMAIL_SOURCES))
    secondary = [e for e in emails if e != primary_email]

    ein = None
    ssn_last_four = None
    for entry in as_list(accounting.get("RegistrationNumbers")):
        if not isinstance(entry, dict):
            continue
        reg_type = (text(entry.get("Type")) or "").lower()
        number = text(entry.get("RegistrationNumber"))
        if not number:
            continue
        if "ein" in reg_type or "employer" in reg_type:
            ein = number
        elif "ssn" in reg_type or "social" in reg_type:
            ssn_last_four = number[-4:]

    name_parts = compact(
        text(raw.get(k)) for k in ("FirstName", "MiddleName", "LastName")
    )
    contact_type = text(raw.get("ContactType"))
    notes = accounting.get("Notes")

    return {
        "karbon_contact_key": key,
        "full_name": text(raw.get("FullName")) or (" ".join(name_parts) or None),
        "first_name": text(raw.get("FirstName")),
        "last_name": text(raw.get("LastName")),
        "middle_name": text(raw.get("MiddleName")),
        "preferred_name": text(raw.get("PreferredName")),
        "salutation": text(raw.get("Salutation")),
        "prefix": text(raw.get("Prefix")),
        "suffix": text(raw.get("Suffix")),
        "contact_type": contact_type,
        "entity_type": text(accounting.get("EntityType")),
        "status": text(raw.get("Status")),
        "restriction_level": text(raw.get("RestrictionLevel")),
        "is_prospect": (contact_type == "Prospect") if contact_type else None,
        "avatar_url": text(raw.get("AvatarUrl")),
        "primary_email": primary_email,
        "secondary_email": secondary[0] if secondary else None,
        "phone_primary": text(resolve(raw, PHONE_SOURCES)),
        "phone_mobile": _labelled_phone("Mobile")(raw),
        "phone_work": _labelled_phone("Work")(raw),
        "phone_fax": _labelled_phone("Fax")(raw),
        **_address_fields(_physical_address(raw)),
        "address_line2": text(_physical_address(raw).get("AddressLine2")),
        **_address_fields(_mailing_address(raw), prefix="mailing_"),
        "date_of_birth": parse_karbon_date(accounting.get("BirthDate")),
        "occupation": text(raw.get("Occupation")) or text(accounting.get("Occupation")),
        "employer": text(raw.get("Employer")),
        "source": text(raw.get("Source")),
        "referred_by": text(raw.get("ReferredBy")),
        "linkedin_url": text(resolve(raw, LINKEDIN_SOURCES)),
        "twitter_handle": text(resolve(raw, TWITTER_SOURCES)),
        "facebook_url": text(resolve(raw, FACEBOOK_SOURCES)),
        "website": text(resolve(raw, WEBSITE_SOURCES)),
        "ein": ein,
        "ssn_last_four": ssn_last_four,
        "tax_provider_key": text(field("TaxProvider", "OrganizationKey")(accounting)),
        "tax_provider_name": text(field("TaxProvider", "Name")(accounting)),
        "client_manager_key": text(raw.get("ClientManagerKey")),
        "client_partner_key": text(raw.get("ClientPartnerKey")),
        "tags": _json_list(raw.get("Tags")),
        "custom_fields": _json_dict(raw.get("CustomFields")),
        "notes": text(notes.get("Body")) if isinstance(notes, dict) else text(raw.get("Notes")),
        "karbon_url": _karbon_url("contacts", key),
        "karbon_created_at": parse_karbon_datetime(raw.get("CreatedDateTime")),
        "karbon_modified_at": parse_karbon_datetime(raw.get("LastModifiedDateTime")),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_organization(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a Karbon Organization, including registration-number buckets."""
    raw = raw if isinstance(raw, dict) else {}
    accounting = raw.get("AccountingDetail") if isinstance(raw.get("AccountingDetail"), dict) else {}
    key = text(raw.get("OrganizationKey"))
    address = _physical_address(raw)

    def either(name: str) -> Any:
        return resolve(raw, (field(name), lambda _: accounting.get(name)))

    return {
        "karbon_organization_key": key,
        "name": text(resolve(raw, (field("OrganizationName"), field("Name"), field("FullName")))),
        "legal_name": text(raw.get("LegalName")),
        "trading_name": text(raw.get("TradingName")),
        "description": text(raw.get("Description")),
        "contact_type": text(raw.get("ContactType")),
        "entity_type": text(resolve(raw, (lambda _: accounting.get("EntityType"), field("EntityType")))),
        "industry": text(raw.get("Industry")),
        "line_of_business": text(raw.get("LineOfBusiness")),
        "primary_email": text(resolve(raw, EMAIL_SOURCES)),
        "phone": text(resolve(raw, PHONE_SOURCES)),
        "website": text(resolve(raw, WEBSITE_SOURCES)),
        **_address_fields(address),
        "address_line2": text(address.get("AddressLine2")),
        "linkedin_url": text(resolve(raw, LINKEDIN_SOURCES)),
        "twitter_handle": text(resolve(raw, TWITTER_SOURCES)),
        "facebook_url": text(resolve(raw, FACEBOOK_SOURCES)),
        **classify_registration_numbers(_registration_entries(raw)),
        "fiscal_year_end_month": to_int(
            resolve(raw, (field("FinancialYearEndMonth"), lambda _: accounting.get("FiscalYearEndMonth")))
        ),
        "fiscal_year_end_day": to_int(
            resolve(raw, (field("FinancialYearEndDay"), lambda _: accounting.get("FiscalYearEndDay")))
        ),
        "base_currency": text(either("BaseCurrency")),
        "tax_country_code": text(either("TaxCountryCode")),
        "pays_tax": to_bool(either("PaysTax")),
        "is_vat_registered": to_bool(either("IsVATRegistered")),
        "client_manager_key": text(raw.get("ClientManagerKey")),
        "client_partner_key": text(raw.get("ClientPartnerKey")),
        "parent_organization_key": text(raw.get("ParentOrganizationKey")),
        "custom_fields": _json_dict(raw.get("CustomFieldValues")) or _json_dict(raw.get("CustomFields")),
        "karbon_url": _karbon_url("organizations", key),
        "karbon_created_at": parse_karbon_datetime(raw.get("CreatedDateTime")),
        "karbon_modified_at": parse_karbon_datetime(raw.get("LastModifiedDateTime")),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_client_group(raw: Dict[str, Any]) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    key = text(raw.get("ClientGroupKey"))
    return {
        "karbon_client_group_key": key,
        "name": text(resolve(raw, (field("FullName"), field("Name")))),
        "description": text(resolve(raw, (field("EntityDescription"), field("Description")))),
        "contact_type": text(raw.get("ContactType")),
        "primary_contact_key": text(raw.get("PrimaryContactKey")),
        "primary_contact_name": text(raw.get("PrimaryContactName")),
        "client_owner_key": text(resolve(raw, (field("ClientOwnerKey"), field("ClientOwner")))),
        "client_owner_name": text(raw.get("ClientOwnerName")),
        "client_manager_key": text(resolve(raw, (field("ClientManagerKey"), field("ClientManager")))),
        "client_manager_name": text(raw.get("ClientManagerName")),
        "members": _json_list(raw.get("Members")),
        "restriction_level": text(raw.get("RestrictionLevel")),
        "user_defined_identifier": text(raw.get("UserDefinedIdentifier")),
        "karbon_url": _karbon_url("client-groups", key),
        "karbon_created_at": parse_karbon_datetime(
            resolve(raw, (field("CreatedDateTime"), field("CreatedDate")))
        ),
        "karbon_modified_at": parse_karbon_datetime(raw.get("LastModifiedDateTime")),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_user(raw: Dict[str, Any]) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    first = text(raw.get("FirstName"))
    last = text(raw.get("LastName"))
    return {
        "karbon_user_key": text(resolve(raw, (field("UserKey"), field("MemberKey")))),
        "full_name": text(raw.get("FullName")) or (" ".join(compact([first, last])) or None),
        "first_name": first,
        "last_name": last,
        "email": text(resolve(raw, (field("EmailAddress"), field("Email")))),
        "title": text(resolve(raw, (field("Title"), field("JobTitle")))),
        "role": text(resolve(raw, (field("Role"), field("UserRole")))),
        "department": text(raw.get("Department")),
        "phone_number": text(resolve(raw, (field("PhoneNumber"), field("WorkPhone")))),
        "is_active": to_bool(raw.get("IsActive")),
        "karbon_modified_at": parse_karbon_datetime(raw.get("LastModifiedDateTime")),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_work_status(raw: Dict[str, Any], index: int = 0) -> Dict[str, Any]:
    """
    Normalize one entry of TenantSettings.WorkStatuses.

    The name is "<primary> - <secondary>" when a secondary status exists.
    display_order falls back to the entry's position in the tenant list.
    """
    raw = raw if isinstance(raw, dict) else {}
    primary = text(raw.get("PrimaryStatusName"))
    secondary = text(raw.get("SecondaryStatusName"))
    if primary and secondary:
        name = f"{primary} - {secondary}"
    else:
        name = primary or text(raw.get("Name")) or f"Status {index}"
    basis = (primary or text(raw.get("Name")) or "").lower()
    active = not any(word in basis for word in INACTIVE_STATUS_WORDS)
    display_order = to_int(raw.get("DisplayOrder"))
    return {
        "karbon_status_key": text(raw.get("WorkStatusKey")),
        "name": name,
        "description": secondary or text(raw.get("Description")),
        "status_type": primary,
        "primary_status_name": primary,
        "secondary_status_name": secondary,
        "work_type_keys": _json_list(raw.get("WorkTypeKeys")),
        "display_order": display_order if display_order is not None else index,
        "is_active": active,
        "is_default_filter": active,
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_work_item(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a Karbon WorkItem, deriving tax_year, entity_type and service_line."""
    raw = raw if isinstance(raw, dict) else {}
    key = text(raw.get("WorkItemKey"))
    title = text(raw.get("Title"))
    work_type = text(raw.get("WorkType"))
    client_name = text(raw.get("ClientName"))
    fee_type = text(field("FeeSettings", "FeeType")(raw))
    fee_value = to_float(field("FeeSettings", "FeeValue")(raw))
    budget_hours = to_float(field("Budget", "BudgetedHours")(raw))

    return {
        "karbon_work_item_key": key,
        "title": title,
        "description": text(raw.get("Description")),
        "work_type": work_type,
        "workflow_status": text(raw.get("WorkStatus")),
        "primary_status": text(raw.get("PrimaryStatus")),
        "secondary_status": text(raw.get("SecondaryStatus")),
        "work_status_key": text(raw.get("WorkStatusKey")),
        "priority": text(raw.get("Priority")),
        # Present in Karbon, so not deleted
        "status": None,
        "user_defined_identifier": text(raw.get("UserDefinedIdentifier")),
        "work_template_key": text(raw.get("WorkTemplateKey")),
        "client_type": text(raw.get("ClientType")),
        "karbon_client_key": text(raw.get("ClientKey")),
        "client_name": client_name,
        "client_group_key": text(resolve(raw, (field("RelatedClientGroupKey"), field("ClientGroupKey")))),
        "client_group_name": text(resolve(raw, (field("RelatedClientGroupName"), field("ClientGroupName")))),
        "assignee_key": text(raw.get("AssigneeKey")),
        "assignee_name": text(raw.get("AssigneeName")),
        "client_manager_key": text(raw.get("ClientManagerKey")),
        "client_manager_name": text(raw.get("ClientManagerName")),
        "client_partner_key": text(raw.get("ClientPartnerKey")),
        "client_partner_name": text(raw.get("ClientPartnerName")),
        "start_date": parse_karbon_date(raw.get("StartDate")),
        "due_date": parse_karbon_date(raw.get("DueDate")),
        "deadline_date": parse_karbon_date(raw.get("DeadlineDate")),
        "completed_date": parse_karbon_date(raw.get("CompletedDate")),
        "period_start": parse_karbon_date(raw.get("PeriodStart")),
        "period_end": parse_karbon_date(raw.get("PeriodEnd")),
        "year_end": parse_karbon_date(raw.get("YearEnd")),
        "tax_year": parse_tax_year(raw),
        "entity_type": classify_entity_type(title, work_type),
        "service_line": classify_service_line(title, client_name) if title or client_name else None,
        "fee_type": fee_type,
        "estimated_fee": fee_value,
        "fixed_fee_amount": fee_value if fee_type == "Fixed" else None,
        "hourly_rate": fee_value if fee_type == "Hourly" else None,
        "budget_hours": budget_hours,
        "budget_minutes": round(budget_hours * 60) if budget_hours is not None else None,
        "budget_amount": to_float(field("Budget", "BudgetedAmount")(raw)),
        "tags": _json_list(raw.get("Tags")),
        "custom_fields": _json_dict(raw.get("CustomFields")),
        "karbon_url": _karbon_url("work", key),
        "karbon_created_at": parse_karbon_datetime(
            resolve(raw, (field("CreatedDateTime"), field("CreatedDate")))
        ),
        "karbon_modified_at": parse_karbon_datetime(
            resolve(raw, (field("LastModifiedDateTime"), field("ModifiedDate")))
        ),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_task(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a work item task. Integration tasks nest their payload under Data."""
    raw = raw if isinstance(raw, dict) else {}

    def pick(name: str) -> Any:
        return resolve(raw, (field("Data", name), field(name)))

    status = text(raw.get("Status"))
    is_complete = to_bool(raw.get("IsComplete"))
    if is_complete is None and status:
        is_complete = status.lower() in ("completed", "complete", "done")

    return {
        "karbon_task_key": text(
            resolve(raw, (field("IntegrationTaskKey"), field("TaskKey"), field("Key")))
        ),
        "karbon_work_item_key": text(raw.get("WorkItemKey")),
        "title": text(pick("Title")),
        "description": text(pick("Description")),
        "status": status,
        "priority": text(pick("Priority")),
        "is_complete": is_complete,
        "is_blocking": to_bool(pick("IsBlocking")),
        "due_date": parse_karbon_date(pick("DueDate")),
        "completed_date": parse_karbon_date(pick("CompletedDate")),
        "assignee_key": text(pick("AssigneeKey")),
        "assignee_name": text(pick("AssigneeName")),
        "assignee_email": text(pick("AssigneeEmailAddress")),
        "estimated_minutes": to_int(pick("EstimatedMinutes")),
        "actual_minutes": to_int(pick("ActualMinutes")),
        "karbon_created_at": parse_karbon_datetime(
            resolve(raw, (field("CreatedAt"), field("CreatedDate")))
        ),
        "karbon_modified_at": parse_karbon_datetime(
            resolve(raw, (field("UpdatedAt"), field("LastModifiedDateTime")))
        ),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_note(raw: Dict[str, Any]) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    return {
        "karbon_note_key": text(resolve(raw, (field("NoteKey"), field("WorkItemNoteKey")))),
        "karbon_work_item_key": text(raw.get("WorkItemKey")),
        "karbon_contact_key": text(raw.get("ContactKey")),
        "subject": text(raw.get("Subject")),
        "body": text(raw.get("Body")),
        "note_type": text(raw.get("NoteType")),
        "author_key": text(raw.get("AuthorKey")),
        "author_name": text(raw.get("AuthorName")),
        "is_pinned": to_bool(raw.get("IsPinned")),
        "karbon_created_at": parse_karbon_datetime(raw.get("CreatedDate")),
        "karbon_modified_at": parse_karbon_datetime(raw.get("LastModifiedDateTime")),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_invoice(raw: Dict[str, Any]) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    total = to_float(resolve(raw, (field("TotalAmount"), field("Amount"))))
    paid = to_float(raw.get("AmountPaid"))
    amount_due = to_float(raw.get("AmountDue"))
    if amount_due is None and total is not None:
        amount_due = total - (paid or 0.0)

    return {
        "karbon_invoice_key": text(resolve(raw, (field("InvoiceKey"), field("InvoiceNumber")))),
        "invoice_number": text(raw.get("InvoiceNumber")),
        "invoice_date": parse_karbon_date(raw.get("InvoiceDate")),
        "due_date": parse_karbon_date(raw.get("DueDate")),
        "payment_date": parse_karbon_date(raw.get("PaymentDate")),
        "status": text(raw.get("Status")),
        "currency": text(raw.get("Currency")),
        "subtotal": to_float(resolve(raw, (field("SubTotal"), field("Subtotal")))),
        "tax_amount": to_float(raw.get("TaxAmount")),
        "total_amount": total,
        "amount_paid": paid,
        "amount_due": amount_due,
        "client_key": text(raw.get("ClientKey")),
        "client_name": text(raw.get("ClientName")),
        "karbon_work_item_key": text(raw.get("WorkItemKey")),
        "line_items": _json_list(raw.get("LineItems")),
        "karbon_created_at": parse_karbon_datetime(raw.get("CreatedDate")),
        "karbon_modified_at": parse_karbon_datetime(raw.get("LastModifiedDateTime")),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def map_time_entry(
    entry: Dict[str, Any],
    timesheet: Optional[Dict[str, Any]] = None,
    index: int = 0,
) -> Dict[str, Any]:
    """
    Normalize one entry of a weekly timesheet.

    Entries without their own key get a synthesized one built from the
    timesheet key, the entry date, the work item key and the entry position,
    which is stable across re-syncs of the same timesheet.
    """
    entry = entry if isinstance(entry, dict) else {}
    parent = timesheet if isinstance(timesheet, dict) else {}
    own_date = parse_karbon_date(entry.get("Date"))
    entry_date = own_date or parse_karbon_date(parent.get("StartDate"))
    sheet_key = text(parent.get("TimesheetKey"))

    key = text(resolve(entry, (field("TimeEntryKey"), field("TimesheetKey"))))
    if key is None:
        key = "-".join([
            sheet_key or "ts",
            own_date.isoformat() if own_date else "nodate",
            text(entry.get("WorkItemKey")) or "nowi",
            str(index),
        ])

    minutes = to_int(entry.get("Minutes"))
    rate = to_float(entry.get("HourlyRate"))
    return {
        "karbon_time_entry_key": key,
        "karbon_timesheet_key": sheet_key,
        "entry_date": entry_date,
        "minutes": minutes,
        "description": text(resolve(entry, (field("Description"), field("TaskTypeName")))),
        "is_billable": to_bool(entry.get("IsBillable")),
        "hourly_rate": rate,
        "billed_amount": rate * minutes / 60 if rate is not None and minutes is not None else None,
        "user_key": text(resolve(entry, (field("UserKey"), lambda _: parent.get("UserKey")))),
        "user_name": text(resolve(entry, (field("UserName"), lambda _: parent.get("UserName")))),
        "karbon_work_item_key": text(entry.get("WorkItemKey")),
        "client_key": text(entry.get("ClientKey")),
        "client_name": text(entry.get("ClientName")),
        "role_name": text(entry.get("RoleName")),
        "task_type_name": text(entry.get("TaskTypeName")),
        "timesheet_status": text(resolve(parent, (field("Status"),))) or text(entry.get("Status")),
        "karbon_modified_at": parse_karbon_datetime(
            resolve(entry, (field("LastModifiedDateTime"), lambda _: parent.get("LastModifiedDateTime")))
        ),
        "last_synced_at": _now(),
        "updated_at": _now(),
    }


def flatten_timesheets(timesheets: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Weekly timesheets with expanded TimeEntries → one mapped record per entry."""
    records = []
    for sheet in timesheets:
        if not isinstance(sheet, dict):
            continue
        for index, entry in enumerate(as_list(sheet.get("TimeEntries"))):
            records.append(map_time_entry(entry, sheet, index))
    return records


MAPPERS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "users": map_user,
    "work_statuses": map_work_status,
    "contacts": map_contact,
    "organizations": map_organization,
    "client_groups": map_client_group,
    "work_items": map_work_item,
    "tasks": map_task,
    "notes": map_note,
    "invoices": map_invoice,
    "timesheets": map_time_entry,
}


def map_to_local(raw: Dict[str, Any], kind: str) -> Dict[str, Any]:
    """Dispatch raw to the mapper for kind. Unknown kinds raise KeyError."""
    return MAPPERS[kind](raw)
