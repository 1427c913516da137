"""
Form schemas (Flask-WTF / WTForms) and the immutable form state used for
"has anything changed?" tracking on the profile page.
"""
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from flask_wtf import FlaskForm
from flask_wtf.file import FileAllowed, FileField, FileRequired
from wtforms import (
    DateField,
    DecimalField,
    IntegerField,
    PasswordField,
    SelectField,
    StringField,
    TextAreaField,
)
from wtforms.validators import (
    AnyOf,
    DataRequired,
    EqualTo,
    InputRequired,
    Length,
    NumberRange,
    Optional,
    Regexp,
)

from models import SUPPORTED_COUNTRIES, InvestmentStatus
from storage_service import ALLOWED_IMAGE

EMAIL_RE = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
COUNTRY_CHOICES = [(c, c) for c in SUPPORTED_COUNTRIES]
ACCOUNT_TYPE_CHOICES = [("checking", "Checking"), ("savings", "Savings")]

PROFILE_FIELDS = (
    "country",
    "phone",
    "dob",
    "address_line1",
    "address_line2",
    "city",
    "state_region",
    "postal_code",
    "ssn_last4",
    "itin_last4",
)
ADDRESS_FIELDS = ("address_line1", "address_line2", "city", "state_region", "postal_code")


# ------------------------------------------------------
# Input filters
# ------------------------------------------------------
def strip(value):
    return value.strip() if isinstance(value, str) else value


def lower(value):
    return value.lower() if isinstance(value, str) else value


def digits(limit):
    def _filter(value):
        if not isinstance(value, str):
            return value
        return re.sub(r"\D", "", value)[:limit]
    return _filter


def _email_field(label="Email"):
    return StringField(
        label,
        filters=[strip, lower],
        validators=[
            DataRequired("Enter a valid email"),
            Regexp(EMAIL_RE, message="Enter a valid email"),
            Length(max=255),
        ],
    )


# ------------------------------------------------------
# Auth
# ------------------------------------------------------
class SendCodeForm(FlaskForm):
    email = _email_field()


class SignupForm(FlaskForm):
    first_name = StringField("First name", filters=[strip],
                             validators=[DataRequired("First name is required"), Length(max=120)])
    last_name = StringField("Last name", filters=[strip],
                            validators=[DataRequired("Last name is required"), Length(max=120)])
    country = SelectField("Country", choices=COUNTRY_CHOICES, default="United States", validate_choice=False,
                          validators=[AnyOf(SUPPORTED_COUNTRIES, message="Select United States or Canada.")])
    email = _email_field()

    # Only shown after the code was sent
    code = StringField("Verification code", filters=[digits(6)])

    phone = StringField("Phone number", filters=[strip],
                        validators=[Length(min=6, max=40, message="Phone is required")])
    dob = DateField("Date of birth", validators=[DataRequired("Date of birth is required")])

    address_line1 = StringField("Address line 1", filters=[strip],
                                validators=[Length(min=2, max=255, message="Address is required")])
    address_line2 = StringField("Address line 2 (optional)", filters=[strip],
                                validators=[Optional(), Length(max=255)])
    city = StringField("City", filters=[strip],
                       validators=[Length(min=2, max=120, message="City is required")])
    state_region = StringField("State/Province", filters=[strip],
                               validators=[DataRequired("State/Province is required"), Length(max=120)])
    postal_code = StringField("Postal code", filters=[strip],
                              validators=[Length(min=2, max=20, message="Postal code is required")])

    tax_id_last4 = StringField("SSN last 4", filters=[digits(4)],
                               validators=[Regexp(r"^\d{4}$", message="Enter last 4 digits")])

    # Required, but checked after the code so the messages come in order
    id_document = FileField("Upload valid ID",
                            validators=[FileAllowed(ALLOWED_IMAGE, "Image only.")])

    def profile_values(self) -> dict:
        return {
            "first_name": self.first_name.data,
            "last_name": self.last_name.data,
            "email": self.email.data,
            "country": self.country.data,
            "phone": self.phone.data,
            "dob": self.dob.data,
            "address_line1": self.address_line1.data,
            "address_line2": self.address_line2.data or None,
            "city": self.city.data,
            "state_region": self.state_region.data,
            "postal_code": self.postal_code.data,
            "tax_id_last4": self.tax_id_last4.data,
        }


class PasswordLoginForm(FlaskForm):
    email = _email_field()
    password = PasswordField("Password", validators=[DataRequired("Enter email and password.")])


class CodeLoginForm(FlaskForm):
    email = _email_field()
    code = StringField("Verification code", filters=[digits(6)],
                       validators=[Length(min=6, max=6, message="Enter the 6-digit code.")])


class ForgotPasswordForm(FlaskForm):
    email = _email_field()


class ResetPasswordForm(FlaskForm):
    password = PasswordField(
        "New password",
        validators=[Length(min=8, message="Password must be at least 8 characters.")],
    )
    confirm = PasswordField(
        "Confirm password",
        validators=[EqualTo("password", message="Passwords do not match.")],
    )


# ------------------------------------------------------
# Withdrawal
# ------------------------------------------------------
class WithdrawalForm(FlaskForm):
    # Required fields and amount rules live in withdrawals.check_eligibility
    amount = StringField("Amount (USD)", filters=[strip], validators=[Length(max=32)])
    bank_name = StringField("Bank name", filters=[strip], validators=[Length(max=120)])
    account_type = SelectField("Account type", choices=ACCOUNT_TYPE_CHOICES, default="checking")
    account_name = StringField("Account holder name", filters=[strip], validators=[Length(max=120)])
    routing = StringField("Routing number", filters=[strip], validators=[Length(max=32)])
    account = StringField("Account number", filters=[strip], validators=[Length(max=34)])
    swift = StringField("SWIFT/BIC (optional)", filters=[strip], validators=[Length(max=11)])
    beneficiary_address = StringField("Beneficiary address (optional)", filters=[strip],
                                      validators=[Length(max=255)])
    note = TextAreaField("Note (optional)", filters=[strip], validators=[Length(max=500)])

    def request_fields(self) -> dict:
        return {
            name: getattr(self, name).data or ""
            for name in (
                "amount", "bank_name", "account_type", "account_name", "routing",
                "account", "swift", "beneficiary_address", "note",
            )
        }


# ------------------------------------------------------
# Profile
# ------------------------------------------------------
class ProfileForm(FlaskForm):
    country = SelectField(
        "Country",
        choices=[("", "Select country")] + COUNTRY_CHOICES,
        validate_choice=False,
        validators=[AnyOf(SUPPORTED_COUNTRIES, message="Select United States or Canada.")],
    )
    phone = StringField("Phone", filters=[strip], validators=[Optional(), Length(max=40)])
    dob = DateField("Date of birth", validators=[Optional()])
    address_line1 = StringField("Address line 1", filters=[strip], validators=[Optional(), Length(max=255)])
    address_line2 = StringField("Address line 2", filters=[strip], validators=[Optional(), Length(max=255)])
    city = StringField("City", filters=[strip], validators=[Optional(), Length(max=120)])
    state_region = StringField("State/Province", filters=[strip], validators=[Optional(), Length(max=120)])
    postal_code = StringField("Postal code", filters=[strip], validators=[Optional(), Length(max=20)])
    ssn_last4 = StringField("SSN last 4", filters=[digits(4)],
                            validators=[Optional(), Regexp(r"^\d{4}$", message="SSN last 4 must be 4 digits.")])
    itin_last4 = StringField("ITIN last 4", filters=[digits(4)],
                             validators=[Optional(), Regexp(r"^\d{4}$", message="ITIN last 4 must be 4 digits.")])

    def values(self) -> dict:
        return {name: getattr(self, name).data or None for name in PROFILE_FIELDS}


class IdDocumentForm(FlaskForm):
    id_document = FileField(
        "Government-issued ID",
        validators=[FileRequired("Choose an image to upload."), FileAllowed(ALLOWED_IMAGE, "Image only.")],
    )


# ------------------------------------------------------
# Admin
# ------------------------------------------------------
class CreatePlanForm(FlaskForm):
    name = StringField("Name", default="Starter", filters=[strip],
                       validators=[DataRequired("Name is required"), Length(max=120)])
    roi_percent = DecimalField("ROI %", default=10, validators=[InputRequired(), NumberRange(min=0)])
    duration_days = IntegerField("Duration days", default=60, validators=[InputRequired(), NumberRange(min=1)])
    min_amount = DecimalField("Minimum amount", default=0, validators=[InputRequired(), NumberRange(min=0)])
    max_amount = DecimalField("Maximum amount (optional)", validators=[Optional(), NumberRange(min=0)])

    def payload(self) -> dict:
        return {
            "name": self.name.data,
            "roi_percent": self.roi_percent.data,
            "duration_days": self.duration_days.data,
            "min_amount": self.min_amount.data,
            "max_amount": self.max_amount.data,
        }


class SetBalanceForm(FlaskForm):
    user_id = StringField("User ID", filters=[strip], validators=[DataRequired("User ID is required")])
    amount = DecimalField("Amount", default=0, validators=[InputRequired()])

    def payload(self) -> dict:
        return {"user_id": self.user_id.data, "amount": self.amount.data}


class AssignPlanForm(FlaskForm):
    user_id = StringField("User ID", filters=[strip], validators=[DataRequired("User ID is required")])
    # Choices are filled from the plans table by the view
    plan_id = SelectField("Plan", choices=[], validate_choice=False,
                          validators=[DataRequired("Select a plan")])

    def payload(self) -> dict:
        return {"user_id": self.user_id.data, "plan_id": self.plan_id.data}


class CreateInvestmentForm(FlaskForm):
    user_id = StringField("User ID", filters=[strip], validators=[DataRequired("User ID is required")])
    title = StringField("Title", default="BTC Mining", filters=[strip],
                        validators=[DataRequired("Title is required"), Length(max=200)])
    amount = DecimalField("Amount", default=1000, validators=[InputRequired(), NumberRange(min=0)])
    status = SelectField("Status", choices=[(s.value, s.value.title()) for s in InvestmentStatus],
                         default=InvestmentStatus.active.value)

    def payload(self) -> dict:
        return {
            "user_id": self.user_id.data,
            "title": self.title.data,
            "amount": self.amount.data,
            "status": self.status.data,
        }


def first_error(form) -> str:
    for errors in form.errors.values():
        if errors:
            return errors[0]
    return "Please check the form."


# ------------------------------------------------------
# Form state
# ------------------------------------------------------
def _norm(value):
    if isinstance(value, str):
        value = value.strip()
    return None if value == "" else value


def diff_fields(saved: Mapping, current: Mapping) -> dict:
    """{field: (saved, current)} for every field whose value differs. "" and None are equal."""
    keys = sorted(set(saved) | set(current))
    return {
        k: (saved.get(k), current.get(k))
        for k in keys
        if _norm(saved.get(k)) != _norm(current.get(k))
    }


@dataclass(frozen=True)
class FormState:
    """Current form values next to the last-saved snapshot. Never mutated in place."""

    values: Mapping = field(default_factory=dict)
    saved: Mapping = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))
        object.__setattr__(self, "saved", MappingProxyType(dict(self.saved)))

    @classmethod
    def load(cls, values: Mapping) -> "FormState":
        return cls(values=values, saved=values)

    def edit(self, **changes) -> "FormState":
        return FormState(values={**self.values, **changes}, saved=self.saved)

    def changes(self) -> dict:
        return diff_fields(self.saved, self.values)

    @property
    def dirty(self) -> bool:
        return bool(self.changes())

    def mark_saved(self) -> "FormState":
        return FormState(values=self.values, saved=self.values)
