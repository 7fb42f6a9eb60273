"""Tests for price parsing, tax and provider overrides."""

from bson import ObjectId

from pricing import calculate_tax, compute_totals, effective_options, format_price, normalize_id, parse_price


class TestParsePrice:
    def test_strips_currency_symbol(self):
        assert parse_price("€10") == 10
        assert parse_price("€ 12.50") == 12.5

    def test_comma_decimal_separator(self):
        assert parse_price("12,50 €") == 12.5

    def test_thousands_separator(self):
        assert parse_price("€1,250.00") == 1250

    def test_comma_thousands_without_decimals(self):
        assert parse_price("€1,000") == 1000
        assert parse_price("€12,345,678") == 12345678

    def test_unparseable_is_zero(self):
        assert parse_price("FREE") == 0
        assert parse_price(None) == 0

    def test_numbers_pass_through(self):
        assert parse_price(7) == 7.0


class TestTax:
    def test_twenty_percent_rounded(self):
        assert calculate_tax(25) == 5
        assert calculate_tax(13) == 3  # 2.6

    def test_rounds_half_up(self):
        assert calculate_tax(12.5) == 3  # 2.5

    def test_compute_totals(self):
        assert compute_totals(25) == {"totalAmount": 25, "tax": 5, "grandTotal": 30}


class TestNormalizeId:
    def test_object_id_and_string_match(self):
        oid = ObjectId()
        assert normalize_id(oid) == str(oid)
        assert normalize_id({"$oid": str(oid)}) == str(oid)
        assert normalize_id({"_id": oid, "name": "x"}) == str(oid)

    def test_int_ids(self):
        assert normalize_id(5) == "5"


class TestEffectiveOptions:
    def test_without_provider_uses_defaults(self, service):
        options = effective_options(service)
        assert [o["price"] for o in options] == ["€10", "€5"]

    def test_provider_override_and_fallback(self, service, provider):
        options = effective_options(service, provider)
        assert options[0]["price"] == "€8"
        assert options[1]["price"] == "€5"

    def test_does_not_mutate_service(self, service, provider):
        effective_options(service, provider)
        assert service["options"][0]["price"] == "€10"

    def test_format_price(self):
        assert format_price(8) == "€8"
        assert format_price(8.5) == "€8.50"
