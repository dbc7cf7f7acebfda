"""Tests for the transaction normalizer."""

from datetime import datetime, timezone
from decimal import Decimal

from email_ledger.schemas.extraction import TransactionCandidate
from email_ledger.schemas.normalizer import normalize_transaction

PROCESSED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def candidate(**fields) -> TransactionCandidate:
    return TransactionCandidate.from_dict({"transactionType": "deposit", **fields})


class TestDecimalFidelity:
    """Numeric fields are stored as exact decimal strings."""

    def test_float_amount_round_trips(self):
        tx = normalize_transaction(candidate(amount=1000.123456), "acc-1")

        assert tx.amount == "1000.123456"
        assert Decimal(tx.amount) == Decimal("1000.123456")

    def test_all_numeric_fields_are_strings(self):
        tx = normalize_transaction(
            candidate(amount="10.10", quantity=3, price=0.1, fees="0.00", confidence=0.75),
            "acc-1",
        )

        assert (tx.amount, tx.quantity, tx.price, tx.fees, tx.confidence) == (
            "10.10",
            "3",
            "0.1",
            "0.00",
            "0.75",
        )

    def test_no_exponent_notation(self):
        tx = normalize_transaction(candidate(amount="1E+3"), "acc-1")

        assert tx.amount == "1000"

    def test_missing_numbers_stay_none(self):
        tx = normalize_transaction(candidate(), None)

        assert tx.amount is None
        assert tx.quantity is None
        assert tx.account_id is None


class TestDates:
    """Transaction date handling."""

    def test_missing_date_defaults_to_processing_time(self):
        tx = normalize_transaction(candidate(), "acc-1", processed_at=PROCESSED_AT)

        assert tx.date == "2024-05-01T12:00:00Z"

    def test_plain_date(self):
        tx = normalize_transaction(candidate(transactionDate="2024-03-15"), "acc-1")

        assert tx.date == "2024-03-15T00:00:00Z"

    def test_unparseable_date_kept_in_data(self):
        tx = normalize_transaction(
            candidate(transactionDate="March 15th"), "acc-1", processed_at=PROCESSED_AT
        )

        assert tx.date == "2024-05-01T12:00:00Z"
        assert tx.data["raw_transaction_date"] == "March 15th"


class TestSideData:
    """Typed and free-form fields merge into the data payload."""

    def test_option_fields_merged(self):
        option = TransactionCandidate.from_dict(
            {
                "transactionType": "option_trade",
                "optionType": "call",
                "strikePrice": 150,
                "securityName": "AAPL Jun 150 Call",
            }
        )

        tx = normalize_transaction(option, "acc-1")

        assert tx.type == "option_trade"
        assert tx.data["option_type"] == "call"
        assert tx.data["strike_price"] == "150"
        assert tx.data["security_name"] == "AAPL Jun 150 Call"

    def test_additional_fields_do_not_override_typed_fields(self):
        wire = TransactionCandidate.from_dict(
            {
                "transactionType": "wire_transfer_out",
                "referenceNumber": "FED-1",
                "additionalFields": {"reference_number": "other", "beneficiary": "Bob"},
            }
        )

        tx = normalize_transaction(wire, "acc-1", "acc-2")

        assert tx.data["reference_number"] == "FED-1"
        assert tx.data["beneficiary"] == "Bob"
        assert tx.to_account_id == "acc-2"

    def test_currency_defaults_to_usd(self):
        tx = normalize_transaction(candidate(), "acc-1")

        assert tx.currency == "USD"

    def test_each_call_gets_new_id(self):
        c = candidate(amount=1)

        assert normalize_transaction(c, "a").id != normalize_transaction(c, "a").id
