# donor_app/models/donor.py
"""
Donor record model.

Contact columns are written by imports and the API; the analytics columns
(lifetime value, gift counts, donation dates) are maintained by the gift
ledger and are never written by the import merge policy.
"""

import enum

from sqlalchemy import Enum, Index
from sqlalchemy.orm import validates

from donor_app.utils.normalize import normalize_email, normalize_phone

from .base import BaseModel, db, new_uuid


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class DonorType(str, enum.Enum):
    ALUMNI = "alumni"
    PARENT = "parent"
    COMMUNITY = "community"
    STAFF = "staff"
    BOARD = "board"
    FOUNDATION = "foundation"
    CORPORATE = "corporate"


class EngagementLevel(str, enum.Enum):
    NEW = "new"
    ACTIVE = "active"
    LAPSED = "lapsed"
    MAJOR = "major"
    INACTIVE = "inactive"


class GiftSizeTier(str, enum.Enum):
    GRASSROOTS = "grassroots"
    MID_LEVEL = "mid_level"
    MAJOR = "major"
    PRINCIPAL = "principal"


class ContactMethod(str, enum.Enum):
    EMAIL = "email"
    PHONE = "phone"
    MAIL = "mail"


class Donor(BaseModel):
    """A person or organisation that gives to the institution."""

    __tablename__ = "donors"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)

    # Name and contact
    first_name = db.Column(db.String(100), nullable=False, index=True)
    last_name = db.Column(db.String(100), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(100), nullable=True, index=True)
    state = db.Column(db.String(50), nullable=True)
    zip_code = db.Column(db.String(20), nullable=True, index=True)
    country = db.Column(db.String(100), nullable=True, default="USA")

    # Lookup keys kept in sync by the validators below
    email_normalized = db.Column(db.String(255), nullable=True, index=True)
    phone_digits = db.Column(db.String(40), nullable=True, index=True)

    # Classification
    donor_type = db.Column(
        Enum(DonorType, name="donor_type_enum", values_callable=_enum_values),
        nullable=False,
        default=DonorType.COMMUNITY,
        index=True,
    )
    engagement_level = db.Column(
        Enum(EngagementLevel, name="engagement_level_enum", values_callable=_enum_values),
        nullable=False,
        default=EngagementLevel.NEW,
    )
    gift_size_tier = db.Column(
        Enum(GiftSizeTier, name="gift_size_tier_enum", values_callable=_enum_values),
        nullable=False,
        default=GiftSizeTier.GRASSROOTS,
    )
    student_name = db.Column(db.String(200), nullable=True, index=True)
    grade_level = db.Column(db.String(20), nullable=True)
    alumni_year = db.Column(db.Integer, nullable=True)
    graduation_year = db.Column(db.Integer, nullable=True)

    # Analytics (derived)
    lifetime_value = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    average_gift_size = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_donations = db.Column(db.Integer, nullable=False, default=0)
    first_donation_date = db.Column(db.Date, nullable=True)
    last_donation_date = db.Column(db.Date, nullable=True)

    # Communication preferences
    email_opt_in = db.Column(db.Boolean, nullable=False, default=True)
    phone_opt_in = db.Column(db.Boolean, nullable=False, default=False)
    mail_opt_in = db.Column(db.Boolean, nullable=False, default=True)
    preferred_contact_method = db.Column(
        Enum(ContactMethod, name="contact_method_enum", values_callable=_enum_values),
        nullable=False,
        default=ContactMethod.EMAIL,
    )

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    notes = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, nullable=True)

    __table_args__ = (
        Index("idx_donor_name", "last_name", "first_name"),
        Index("idx_donor_active_type", "is_active", "donor_type"),
    )

    ANALYTICS_FIELDS = frozenset(
        {
            "lifetime_value",
            "average_gift_size",
            "total_donations",
            "first_donation_date",
            "last_donation_date",
        }
    )

    def __repr__(self):
        return f"<Donor {self.first_name} {self.last_name}>"

    @validates("email")
    def _sync_email(self, key, value):
        if value is not None:
            value = value.strip() or None
        self.email_normalized = normalize_email(value)
        return value

    @validates("phone")
    def _sync_phone(self, key, value):
        if value is not None:
            value = value.strip() or None
        self.phone_digits = normalize_phone(value)
        return value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "country": self.country,
            "donorType": _value(self.donor_type),
            "engagementLevel": _value(self.engagement_level),
            "giftSizeTier": _value(self.gift_size_tier),
            "studentName": self.student_name,
            "gradeLevel": self.grade_level,
            "alumniYear": self.alumni_year,
            "graduationYear": self.graduation_year,
            "lifetimeValue": str(self.lifetime_value) if self.lifetime_value is not None else None,
            "totalDonations": self.total_donations,
            "lastDonationDate": self.last_donation_date.isoformat() if self.last_donation_date else None,
            "emailOptIn": self.email_opt_in,
            "phoneOptIn": self.phone_opt_in,
            "mailOptIn": self.mail_opt_in,
            "preferredContactMethod": _value(self.preferred_contact_method),
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def _value(member):
    return member.value if isinstance(member, enum.Enum) else member
