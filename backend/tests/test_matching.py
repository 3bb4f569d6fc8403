from datetime import date

import pytest

from agencycrm.schemas.csv_import import ImportRecord, RowResult
from agencycrm.schemas.customer import Address, Customer
from agencycrm.services.matching import (
    POSSIBLE,
    STRONG,
    address_similarity,
    customer_key,
    find_matches,
    group_rows_by_customer,
    name_similarity,
    normalize_address,
    normalize_for_matching,
    string_similarity,
)


def _record(name="John Smith", address="123 Main St", city="Springfield", state="IL", zip_code="62701", **kw):
    values = dict(
        insured_name=name,
        address=address,
        city=city,
        state=state,
        zip=zip_code,
        policy_type_normalized="Personal Auto",
        raw_policy_type="PA",
        effective_date=date(2024, 1, 15),
        expiration_date=date(2025, 1, 15),
        insurance_company="Acme Ins",
        premium=1200.0,
    )
    values.update(kw)
    return ImportRecord(**values)


def _customer(name, street="", city="", state="", zip_code=""):
    return {"fullName": name, "address": {"street": street, "city": city, "state": state, "zip": zip_code}}


class TestNormalization:
    def test_normalize_for_matching(self):
        assert normalize_for_matching("  John  O'Brien, Jr. ") == "john o brien jr"
        assert normalize_for_matching(None) == ""

    def test_abbreviations_expand(self):
        assert normalize_address("123 Main St Apt 4") == "123 main street apartment 4"
        assert normalize_address("123 Main St Apt 4") == normalize_address("123 Main Street Apartment 4")

    def test_leading_token_is_never_expanded(self):
        assert normalize_address("St James Pl") == "st james place"

    def test_unit_marker_is_dropped(self):
        assert normalize_address("9 Oak Ave Unit 2") == "9 oak avenue 2"


class TestSimilarity:
    def test_identical_and_disjoint(self):
        assert string_similarity("smith", "smith") == 1.0
        assert string_similarity("abc", "xyz") == 0.0

    def test_empty_strings(self):
        assert string_similarity("", "") == 1.0
        assert string_similarity("", "abc") == 0.0

    def test_dice_coefficient(self):
        # night: ni ig gh ht / nacht: na ac ch ht -> one shared bigram
        assert string_similarity("night", "nacht") == pytest.approx(0.25)

    def test_blank_names_and_addresses_never_match(self):
        assert name_similarity("", "") == 0.0
        assert address_similarity(None, "") == 0.0


class TestFindMatches:
    def test_same_street_and_zip_is_strong(self):
        matches = find_matches(_record(), [_customer("Jon Smith", "123 Main Street", zip_code="62701")])
        assert len(matches) == 1
        assert matches[0].match_strength == STRONG
        assert matches[0].score >= 0.9

    def test_same_name_and_state_is_strong(self):
        matches = find_matches(_record(), [_customer("John Smith", "9 Elm Rd", state="IL")])
        assert matches[0].match_strength == STRONG
        assert matches[0].score == pytest.approx(0.85 + 0.15 * matches[0].addr_score)

    def test_same_name_elsewhere_is_possible(self):
        matches = find_matches(_record(), [_customer("John Smith", "9 Elm Rd", "Chicago", "WI", "60601")])
        assert matches[0].match_strength == POSSIBLE

    def test_blank_location_fields_do_not_count(self):
        record = _record(city="", state="", zip_code="")
        matches = find_matches(record, [_customer("John Smith", "9 Elm Rd")])
        assert matches[0].match_strength == POSSIBLE
        assert not matches[0].zip_match
        assert not matches[0].state_match

    def test_unrelated_customer_is_excluded(self):
        assert find_matches(_record(), [_customer("Mary Jones", "77 Lake Dr", "Peoria", "IL", "61602")]) == []

    def test_top_three_sorted_by_score(self):
        customers = [
            _customer("John Smith", "9 Elm Rd", "Chicago", "WI", "60601"),
            _customer("John Smith", "123 Main St", "Springfield", "IL", "62701"),
            _customer("John Smyth", "9 Elm Rd", state="IL"),
            _customer("John Smith", "1 Oak Ave", state="IL"),
            _customer("Johnny Smith", "123 Main St", zip_code="62701"),
        ]
        matches = find_matches(_record(), customers)
        assert len(matches) == 3
        scores = [m.score for m in matches]
        assert scores == sorted(scores, reverse=True)
        assert matches[0].customer["address"]["street"] == "123 Main St"

    def test_accepts_customer_records(self):
        customer = Customer(
            full_name="John Smith",
            address=Address(street="123 Main Street", zip="62701"),
        )
        matches = find_matches(_record(), [customer])
        assert matches[0].customer is customer
        assert matches[0].to_dict()["match_strength"] == STRONG


class TestExactIdentity:
    def test_customer_key_ignores_case_punctuation_and_suffix_spelling(self):
        assert customer_key("John Smith", "123 Main St.", "62701") == customer_key("JOHN SMITH", "123 main street", " 62701 ")

    def test_customer_key_differs_on_zip(self):
        assert customer_key("John Smith", "123 Main St", "62701") != customer_key("John Smith", "123 Main St", "62702")

    def test_group_rows_by_customer(self):
        rows = [
            RowResult(row_index=1, data=_record()),
            RowResult(row_index=2, data=_record(address="123 MAIN STREET", policy_type_normalized="Homeowners")),
            RowResult(row_index=3, data=_record(name="Mary Jones")),
            RowResult(row_index=4, valid=False, errors=["Missing zip"]),
        ]
        groups = group_rows_by_customer(rows)
        assert [g.insured_name for g in groups] == ["John Smith", "Mary Jones"]
        assert [p["row_index"] for p in groups[0].policies] == [1, 2]
