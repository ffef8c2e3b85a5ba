"""Client-side records mirrored from Karbon: contacts, organizations, groups, team."""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class Contact(SQLModel, table=True):
    """An individual client (Karbon Contact)."""

    __tablename__ = "contacts"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_contact_key: str = Field(unique=True, index=True)

    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    middle_name: Optional[str] = None
    preferred_name: Optional[str] = None
    salutation: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None

    contact_type: Optional[str] = None  # "Client", "Prospect", ...
    entity_type: Optional[str] = None
    status: Optional[str] = None
    restriction_level: Optional[str] = None
    is_prospect: Optional[bool] = None
    avatar_url: Optional[str] = None

    primary_email: Optional[str] = None
    secondary_email: Optional[str] = None
    phone_primary: Optional[str] = None
    phone_mobile: Optional[str] = None
    phone_work: Optional[str] = None
    phone_fax: Optional[str] = None

    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    mailing_address_line1: Optional[str] = None
    mailing_city: Optional[str] = None
    mailing_state: Optional[str] = None
    mailing_zip_code: Optional[str] = None
    mailing_country: Optional[str] = None

    date_of_birth: Optional[date] = None
    occupation: Optional[str] = None
    employer: Optional[str] = None
    source: Optional[str] = None
    referred_by: Optional[str] = None

    linkedin_url: Optional[str] = None
    twitter_handle: Optional[str] = None
    facebook_url: Optional[str] = None
    website: Optional[str] = None

    ein: Optional[str] = None
    ssn_last_four: Optional[str] = None  # never the full number

    tax_provider_key: Optional[str] = None
    tax_provider_name: Optional[str] = None
    client_manager_key: Optional[str] = None
    client_partner_key: Optional[str] = None

    tags: Optional[List[Any]] = Field(default=None, sa_column=Column(JSON))
    custom_fields: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    notes: Optional[str] = None

    karbon_url: Optional[str] = None
    karbon_created_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))


class Organization(SQLModel, table=True):
    """A business client (Karbon Organization)."""

    __tablename__ = "organizations"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_organization_key: str = Field(unique=True, index=True)

    name: Optional[str] = None
    legal_name: Optional[str] = None
    trading_name: Optional[str] = None
    description: Optional[str] = None
    contact_type: Optional[str] = None
    entity_type: Optional[str] = None
    industry: Optional[str] = None
    line_of_business: Optional[str] = None

    primary_email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    linkedin_url: Optional[str] = None
    twitter_handle: Optional[str] = None
    facebook_url: Optional[str] = None

    # Registration numbers, one column per bucket
    ein: Optional[str] = None
    business_number: Optional[str] = None
    gst_number: Optional[str] = None
    sales_tax_id: Optional[str] = None
    payroll_tax_id: Optional[str] = None
    unemployment_tax_id: Optional[str] = None
    state_tax_id: Optional[str] = None
    tax_number: Optional[str] = None

    fiscal_year_end_month: Optional[int] = None
    fiscal_year_end_day: Optional[int] = None
    base_currency: Optional[str] = None
    tax_country_code: Optional[str] = None
    pays_tax: Optional[bool] = None
    is_vat_registered: Optional[bool] = None

    client_manager_key: Optional[str] = None
    client_partner_key: Optional[str] = None
    parent_organization_key: Optional[str] = None
    custom_fields: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    karbon_url: Optional[str] = None
    karbon_created_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))


class ClientGroup(SQLModel, table=True):
    """A family or affiliated-business grouping of contacts and organizations."""

    __tablename__ = "client_groups"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_client_group_key: str = Field(unique=True, index=True)

    name: Optional[str] = None
    description: Optional[str] = None
    contact_type: Optional[str] = None
    primary_contact_key: Optional[str] = None
    primary_contact_name: Optional[str] = None
    client_owner_key: Optional[str] = None
    client_owner_name: Optional[str] = None
    client_manager_key: Optional[str] = None
    client_manager_name: Optional[str] = None
    members: Optional[List[Any]] = Field(default=None, sa_column=Column(JSON))
    restriction_level: Optional[str] = None
    user_defined_identifier: Optional[str] = None

    karbon_url: Optional[str] = None
    karbon_created_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))


class TeamMember(SQLModel, table=True):
    """A firm user (Karbon User)."""

    __tablename__ = "team_members"

    id: Optional[int] = Field(default=None, primary_key=True)
    karbon_user_key: str = Field(unique=True, index=True)

    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None
    role: Optional[str] = None
    department: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: Optional[bool] = None

    karbon_modified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, index=True))
    last_synced_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column=Column(DateTime, nullable=False))
