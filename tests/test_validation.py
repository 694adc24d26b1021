"""Tests for checkout form validation."""

from validation import REQUIRED_MESSAGE, is_checked, parse_address, validate_address, validate_payment_form

VALID_FORM = {
    "first_name": "Jane",
    "last_name": "Doe",
    "email": "jane@shopmail.com",
    "phone": "+1 (555) 010-2030",
    "address1": "12 Harbor Street",
    "address2": "",
    "city": "Portland",
    "state": "OR",
    "postal_code": "97201",
    "country": "US",
}


def billing(form):
    return {f"billing_{k}": v for k, v in form.items()}


class TestValidateAddress:
    def test_valid(self):
        assert validate_address(VALID_FORM) is None

    def test_missing_fields(self):
        form = dict(VALID_FORM, first_name="  ", city="")
        form.pop("country")

        errors = validate_address(form)

        assert errors == {"first_name": REQUIRED_MESSAGE, "city": REQUIRED_MESSAGE, "country": REQUIRED_MESSAGE}

    def test_malformed_values(self):
        errors = validate_address(dict(VALID_FORM, email="not-an-email", phone="call me", postal_code="97201!"))

        assert errors == {
            "email": "Please enter a valid email address",
            "phone": "Please enter a valid phone number",
            "postal_code": "Please enter a valid postal code",
        }

    def test_prefixed_fields(self):
        errors = validate_address(billing(dict(VALID_FORM, last_name="")), prefix="billing_")
        assert errors == {"billing_last_name": REQUIRED_MESSAGE}

    def test_parse_drops_blank_optional_fields(self):
        address = parse_address(VALID_FORM)
        assert address.address2 is None
        assert address.email == "jane@shopmail.com"


class TestPaymentForm:
    def test_payment_type_required(self):
        assert validate_payment_form({}) == {"payment_type": "Payment method is required"}

    def test_same_as_shipping_skips_billing(self):
        form = {"payment_type": "credit_card", "same_as_shipping": "on", "cardholder_name": "Jane Doe"}
        assert validate_payment_form(form) is None

    def test_billing_address_validated(self):
        form = {"payment_type": "paypal", **billing(dict(VALID_FORM, city=""))}
        assert validate_payment_form(form) == {"billing_city": REQUIRED_MESSAGE}

    def test_cardholder_required_for_cards(self):
        form = {"payment_type": "credit_card", "same_as_shipping": "true"}
        assert validate_payment_form(form) == {"cardholder_name": "Cardholder name is required"}

    def test_is_checked(self):
        assert is_checked({"x": "on"}, "x")
        assert not is_checked({"x": "off"}, "x")
        assert not is_checked({}, "x")
