"""Checkout form validation returning field -> message maps."""

from typing import Dict, Mapping, Optional

from pydantic import BaseModel, EmailStr, Field, ValidationError

from schemas import Address

REQUIRED_MESSAGE = "This field is required"

FIELD_MESSAGES = {
    "email": "Please enter a valid email address",
    "phone": "Please enter a valid phone number",
    "postal_code": "Please enter a valid postal code",
}

ADDRESS_FIELDS = [
    "first_name",
    "last_name",
    "email",
    "phone",
    "address1",
    "address2",
    "city",
    "state",
    "postal_code",
    "country",
]


class AddressForm(BaseModel):
    first_name: str
    last_name: str
    email: Optional[EmailStr] = None
    phone: str = Field(..., pattern=r"^\+?[0-9\s()-]+$")
    address1: str
    address2: Optional[str] = None
    city: str
    state: str
    postal_code: str = Field(..., pattern=r"^[0-9a-zA-Z\s-]+$")
    country: str


def _clean(form: Mapping[str, str], prefix: str = "") -> Dict[str, str]:
    # blank inputs count as missing
    data = {}
    for field in ADDRESS_FIELDS:
        value = form.get(prefix + field)
        if value is not None and str(value).strip():
            data[field] = str(value).strip()
    return data


def _field_errors(exc: ValidationError, prefix: str = "") -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for err in exc.errors():
        field = str(err["loc"][0])
        if err["type"] == "missing":
            errors[prefix + field] = REQUIRED_MESSAGE
        else:
            errors[prefix + field] = FIELD_MESSAGES.get(field, "This field is invalid")
    return errors


def validate_address(form: Mapping[str, str], prefix: str = "") -> Optional[Dict[str, str]]:
    """Returns a map of field errors, or None when the address is valid."""
    try:
        AddressForm.model_validate(_clean(form, prefix))
    except ValidationError as e:
        return _field_errors(e, prefix)
    return None


def parse_address(form: Mapping[str, str], prefix: str = "") -> Address:
    return Address.model_validate(_clean(form, prefix))


def is_checked(form: Mapping[str, str], field: str) -> bool:
    return str(form.get(field, "")).lower() in ("on", "true", "1", "yes")


def validate_payment_form(form: Mapping[str, str]) -> Optional[Dict[str, str]]:
    errors: Dict[str, str] = {}
    payment_type = str(form.get("payment_type") or "").strip()
    if not payment_type:
        return {"payment_type": "Payment method is required"}

    if not is_checked(form, "same_as_shipping"):
        errors.update(validate_address(form, prefix="billing_") or {})

    if payment_type == "credit_card" and not str(form.get("cardholder_name") or "").strip():
        errors["cardholder_name"] = "Cardholder name is required"

    return errors or None
