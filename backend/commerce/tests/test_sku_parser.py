from decimal import Decimal

import pytest

from commerce.models import BundleHash, Entity
from commerce.services import sku_parser
from commerce.services.sku_parser import BundleItem, ParsedItem, SkuOption


def test_single_item_with_options():
    result = sku_parser.parse("laptop-ram~16gb-cover~black*2")

    item = result.items[0]
    assert item.base_sku == "LAPTOP"
    assert item.options == (SkuOption("ram", "16gb"), SkuOption("cover", "black", 2))
    assert item.get_option("RAM").value == "16gb"
    assert not item.has_option("ssd")


def test_lineage_base_sku_keeps_hyphens():
    item = sku_parser.parse("ORG-SHOP-PROD-size~xl").items[0]

    assert item.base_sku == "ORG-SHOP-PROD"
    assert item.options == (SkuOption("size", "xl"),)


def test_items_and_bundles_mix():
    result = sku_parser.parse("LAPTOP-ram~16gb, MOUSE|pad ,")

    assert len(result) == 2
    assert [item.base_sku for item in result.singles] == ["LAPTOP"]
    bundle = result.bundles[0]
    assert isinstance(bundle, BundleItem)
    assert bundle.base_skus == ["MOUSE", "PAD"]
    assert result.all_base_skus() == ["LAPTOP", "MOUSE", "PAD"]
    assert result.product_count() == 3
    assert result.contains_sku("pad")


@pytest.mark.parametrize(
    "compound",
    [
        "LAPTOP",
        "LAPTOP-ram~16gb-ssd~512gb",
        "LAPTOP-ram~16gb-cover~black*2,MOUSE,PAD",
        "LAPTOP-ram~16gb|MOUSE|PAD",
    ],
)
def test_canonical_strings_round_trip(compound):
    assert str(sku_parser.parse(compound)) == compound


def test_invalid_option_keeps_whole_item_opaque():
    item = sku_parser.parse("laptop-ram~16gb-ssd").items[0]

    assert item == ParsedItem(base_sku="LAPTOP-RAM~16GB-SSD")
    assert item.options == ()



def test_whitespace_around_separators_is_ignored():
    assert sku_parser.parse("LAPTOP - ram~16gb") == sku_parser.parse("LAPTOP-ram~16gb")
    assert sku_parser.parse(" laptop -cover~black *2 | mouse ").bundles[0].items[0].options == (
        SkuOption("cover", "black", 2),
    )


def test_zero_quantity_option_is_not_accepted():
    item = sku_parser.parse("laptop-cover~black*0").items[0]

    assert item == ParsedItem(base_sku="LAPTOP-COVER~BLACK*0")
    assert item.options == ()


def test_empty_input_parses_to_nothing():
    assert len(sku_parser.parse(None)) == 0
    assert len(sku_parser.parse("  , ,")) == 0


def test_bundle_hash_ignores_order_case_and_options():
    first = sku_parser.parse("MOUSE|laptop").bundles[0].hash
    second = sku_parser.parse("LAPTOP-ram~8gb|mouse").bundles[0].hash

    assert first == second == sku_parser.hash_bundle(["LAPTOP", "MOUSE"])
    assert first != sku_parser.hash_bundle(["LAPTOP", "PAD"])


def test_validate_reports_problems():
    assert sku_parser.validate("LAPTOP,MOUSE").valid

    empty = sku_parser.validate("")
    assert not empty.valid
    assert "No valid items found in SKU string." in empty.errors

    too_long = sku_parser.validate("A" * (sku_parser.MAX_LENGTH + 1))
    assert not too_long.valid
    assert any("maximum length" in error for error in too_long.errors)


@pytest.mark.django_db
def test_bundle_discount_found_on_nearest_ancestor():
    master = Entity.create_master("acme", "Acme Group")
    shop = master.create_child("shop", "Acme Shop")
    BundleHash.create_from_skus(["MOUSE", "LAPTOP"], master, discount_percent=Decimal("10"))
    shop_bundle = BundleHash.create_from_skus(["laptop", "mouse"], shop, fixed_price=Decimal("900.00"))

    bundle_hash = sku_parser.parse("LAPTOP|MOUSE").bundle_hashes()[0]
    found = BundleHash.find_with_hierarchy(bundle_hash, shop)

    assert found == shop_bundle
    assert found.final_price(Decimal("1000.00")) == Decimal("900.00")
    assert found.calculate_discount(Decimal("1000.00")) == Decimal("100.00")
    assert BundleHash.find_with_hierarchy(bundle_hash, master).calculate_discount(Decimal("50.00")) == Decimal("5.00")
