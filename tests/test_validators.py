import pytest

from household_budget import parse_row_index, parse_transaction_type
from household_budget.validators import ValidationError, to_cents


def test_to_cents_converts_to_whole_cents():
    assert to_cents("12.34") == 1234
    assert to_cents(40) == 4000
    assert to_cents("-3.10", allow_negative=True) == -310


@pytest.mark.parametrize("value", [1e30, "1e30", "-1e30", 100000000.01])
def test_to_cents_rejects_amounts_over_the_maximum(value):
    with pytest.raises(ValidationError, match="exceeds maximum"):
        to_cents(value, allow_negative=True)


@pytest.mark.parametrize("value", [None, True, "abc", "nan", "inf"])
def test_to_cents_rejects_non_numbers(value):
    with pytest.raises(ValidationError, match="valid number"):
        to_cents(value)


def test_parse_row_index_accepts_whole_numbers():
    assert parse_row_index(2) == 2
    assert parse_row_index(2.0) == 2
    assert parse_row_index("3") == 3


@pytest.mark.parametrize("value", [1.5, True, "one", None])
def test_parse_row_index_rejects_fractions_and_non_numbers(value):
    with pytest.raises(ValidationError):
        parse_row_index(value)


def test_parse_transaction_type_defaults_to_expense():
    assert parse_transaction_type(None) == "expense"
    assert parse_transaction_type("") == "expense"
    assert parse_transaction_type(" Income ") == "income"
    with pytest.raises(ValidationError):
        parse_transaction_type("transfer")
