"""
Tests del extractor tabular.
"""
from datetime import datetime, timezone

import pytest

from conftest import tally_rows
from tally_sync_connector.extractor import (
    ParseError, TabularExtractor, add_provenance, build_field_index, coerce_value, is_valid_row
)
from tally_sync_connector.models import FieldType


@pytest.fixture
def extractor():
    return TabularExtractor()


class TestParse:

    def test_rows_without_guid_are_dropped(self, extractor, ledger_spec):
        raw = tally_rows(
            ("g-1", "Cash", "0", "1,250.50", "2024-04-01"),
            ("", "Orphan", "1", "10", "2024-04-02"),
            ("g-3", "Sales", "1", "-300", "ñ"),
        )

        records = extractor.parse(raw, ledger_spec)

        assert [r["guid"] for r in records] == ["g-1", "g-3"]
        assert records[0] == {
            "guid": "g-1",
            "name": "Cash",
            "is_revenue": False,
            "opening_balance": 1250.5,
            "created_on": "2024-04-01",
        }
        assert records[1]["is_revenue"] is True
        assert records[1]["opening_balance"] == -300
        assert records[1]["created_on"] is None

    def test_missing_trailing_cells_are_empty(self, extractor, ledger_spec):
        records = extractor.parse(tally_rows(("g-1", "Cash")), ledger_spec)

        assert records == [{
            "guid": "g-1",
            "name": "Cash",
            "is_revenue": False,
            "opening_balance": None,
            "created_on": None,
        }]

    def test_entities_are_decoded(self, extractor, ledger_spec):
        records = extractor.parse(tally_rows(("g-1", "Smith &amp; Sons &lt;HQ&gt;&#13;")), ledger_spec)
        assert records[0]["name"] == "Smith & Sons <HQ>"

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_response(self, extractor, ledger_spec, raw):
        assert extractor.parse(raw, ledger_spec) == []

    def test_envelope_without_rows(self, extractor, ledger_spec):
        assert extractor.parse("<ENVELOPE></ENVELOPE>", ledger_spec) == []

    def test_line_error(self, extractor, ledger_spec):
        raw = "<ENVELOPE><LINEERROR>Could not find Report 'X'!</LINEERROR></ENVELOPE>"
        with pytest.raises(ParseError, match="Could not find Report"):
            extractor.parse(raw, ledger_spec)

    def test_bare_response_document(self, extractor, ledger_spec):
        with pytest.raises(ParseError):
            extractor.parse("<RESPONSE>Unknown Request, cannot be processed</RESPONSE>", ledger_spec)

    def test_status_zero_envelope(self, extractor, ledger_spec):
        raw = "<ENVELOPE><HEADER><VERSION>1</VERSION><STATUS>0</STATUS></HEADER></ENVELOPE>"
        with pytest.raises(ParseError, match="STATUS 0"):
            extractor.parse(raw, ledger_spec)

    def test_too_many_cells(self, extractor, ledger_spec):
        raw = tally_rows(("g-1", "Cash", "0", "1", "2024-04-01", "extra"))
        with pytest.raises(ParseError, match="celdas"):
            extractor.parse(raw, ledger_spec)


class TestCoerceValue:

    @pytest.mark.parametrize("value, field_type, expected", [
        ("Cash", FieldType.TEXT, "Cash"),
        ("  padded ", FieldType.TEXT, "padded"),
        ("", FieldType.TEXT, None),
        ("ñ", FieldType.TEXT, None),
        ("±", FieldType.DATE, None),
        (None, FieldType.AMOUNT, None),
        ("", FieldType.LOGICAL, False),
        ("1", FieldType.LOGICAL, True),
        ("Yes", FieldType.LOGICAL, True),
        ("0", FieldType.LOGICAL, False),
        ("1,234.56", FieldType.AMOUNT, 1234.56),
        ("-12", FieldType.QUANTITY, -12.0),
        ("abc", FieldType.NUMBER, 0),
        ("inf", FieldType.RATE, 0),
        ("nan", FieldType.AMOUNT, 0),
        ("2024-02-29", FieldType.DATE, "2024-02-29"),
        ("2023-02-29", FieldType.DATE, None),
        ("01/04/2024", FieldType.DATE, None),
    ])
    def test_coercion(self, value, field_type, expected):
        assert coerce_value(value, field_type) == expected

    @pytest.mark.parametrize("field_type", list(FieldType))
    @pytest.mark.parametrize("value", ["", "ñ", "garbage", "1e999", "--", "\x00"])
    def test_never_raises(self, field_type, value):
        coerce_value(value, field_type)


def test_field_index_is_cached(ledger_spec):
    first = build_field_index(ledger_spec)
    second = build_field_index(ledger_spec.model_copy())

    assert first is second
    assert first["opening_balance"].position == 3
    assert first["opening_balance"].type == FieldType.AMOUNT


def test_is_valid_row():
    assert is_valid_row({"guid": "abc"})
    assert not is_valid_row({"guid": "  "})
    assert not is_valid_row({"guid": None})
    assert not is_valid_row({})


def test_add_provenance():
    timestamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    records = add_provenance([{"guid": "g-1"}], "company", "division", "tally-sync", timestamp)

    assert records == [{
        "guid": "g-1",
        "company_id": "company",
        "division_id": "division",
        "sync_timestamp": "2024-05-01T12:00:00+00:00",
        "source": "tally-sync",
    }]
