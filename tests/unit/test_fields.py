"""Unit tests for Karbon field resolution helpers."""
from datetime import date, datetime

from mottahub.karbon.fields import (
    as_list,
    business_card,
    card_field,
    field,
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


class TestResolve:
    def test_first_non_empty_wins(self):
        raw = {"A": "", "B": None, "C": "value", "D": "later"}
        assert resolve(raw, (field("A"), field("B"), field("C"), field("D"))) == "value"

    def test_all_empty_returns_none(self):
        assert resolve({"A": ""}, (field("A"), field("B"))) is None

    def test_extractor_errors_are_skipped(self):
        def broken(raw):
            return raw["missing"]["deeper"]

        assert resolve({"Ok": 1}, (broken, field("Ok"))) == 1

    def test_zero_and_false_are_values(self):
        assert resolve({"A": 0}, (field("A"),)) == 0
        assert resolve({"A": False}, (field("A"),)) is False

    def test_nested_path_tolerates_non_dicts(self):
        assert field("Budget", "BudgetedHours")({"Budget": {"BudgetedHours": 4}}) == 4
        assert field("Budget", "BudgetedHours")({"Budget": None}) is None
        assert field("Budget", "BudgetedHours")({"Budget": [1, 2]}) is None


class TestNestedEntries:
    def test_as_list_wraps_single_object(self):
        assert as_list(None) == []
        assert as_list({"a": 1}) == [{"a": 1}]
        assert as_list([1, 2]) == [1, 2]

    def test_primary_entry(self):
        entries = [{"Number": "1"}, {"Number": "2", "IsPrimary": True}]
        assert primary_entry(entries, "IsPrimary") == {"Number": "2", "IsPrimary": True}
        assert primary_entry([{"Number": "1"}], "IsPrimary") is None

    def test_labelled_entry_by_label_or_type(self):
        phones = [{"Number": "1", "Label": "Work"}, {"Number": "2", "Type": "Mobile"}]
        assert labelled_entry(phones, "Work")["Number"] == "1"
        assert labelled_entry(phones, "Mobile") is None
        assert labelled_entry(phones, "Mobile", key="Type")["Number"] == "2"

    def test_business_card_prefers_primary(self):
        raw = {"BusinessCards": [{"Name": "first"}, {"Name": "primary", "IsPrimaryCard": True}]}
        assert business_card(raw)["Name"] == "primary"

    def test_business_card_falls_back_to_first(self):
        raw = {"BusinessCards": [{"Name": "first"}, {"Name": "second"}]}
        assert business_card(raw)["Name"] == "first"

    def test_business_card_singular_key(self):
        assert business_card({"BusinessCard": {"Name": "only"}})["Name"] == "only"

    def test_business_card_missing(self):
        assert business_card({}) == {}
        assert business_card({"BusinessCards": None}) == {}

    def test_card_field(self):
        raw = {"BusinessCards": [{"LinkedInLink": "https://linkedin.com/in/x"}]}
        assert card_field("LinkedInLink")(raw) == "https://linkedin.com/in/x"
        assert card_field("LinkedInLink")({}) is None


class TestScalars:
    def test_text_unwraps_contact_dicts(self):
        assert text({"Number": "555-0100", "Label": "Work"}) == "555-0100"
        assert text({"EmailAddress": "a@example.com"}) == "a@example.com"
        assert text({"Label": "Work"}) is None

    def test_text_strips_and_blanks(self):
        assert text("  hello ") == "hello"
        assert text("   ") is None
        assert text(["a"]) is None
        assert text(42) == "42"

    def test_to_int(self):
        assert to_int("12") == 12
        assert to_int(7.9) == 7
        assert to_int("n/a") is None
        assert to_int(True) is None

    def test_to_float(self):
        assert to_float("850") == 850.0
        assert to_float(None) is None
        assert to_float("abc") is None

    def test_to_bool(self):
        assert to_bool("Yes") is True
        assert to_bool("false") is False
        assert to_bool(0) is False
        assert to_bool("maybe") is None
        assert to_bool(None) is None


class TestTimestamps:
    def test_trailing_z(self):
        assert parse_karbon_datetime("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, 0)

    def test_offset_converted_to_utc(self):
        assert parse_karbon_datetime("2024-03-01T10:00:00-05:00") == datetime(2024, 3, 1, 15, 0)

    def test_fractional_seconds(self):
        assert parse_karbon_datetime("2024-03-01T10:00:00.123Z") == datetime(2024, 3, 1, 10, 0, 0, 123000)

    def test_plain_date(self):
        assert parse_karbon_datetime("2024-03-01") == datetime(2024, 3, 1)

    def test_result_is_naive(self):
        assert parse_karbon_datetime("2024-03-01T10:00:00+02:00").tzinfo is None

    def test_garbage_is_none(self):
        assert parse_karbon_datetime("not a date") is None
        assert parse_karbon_datetime("") is None
        assert parse_karbon_datetime(None) is None
        assert parse_karbon_datetime(12345) is None

    def test_date_part(self):
        assert parse_karbon_date("2024-04-15T00:00:00Z") == date(2024, 4, 15)
        assert parse_karbon_date("2024-04-15") == date(2024, 4, 15)
        assert parse_karbon_date("soon") is None
