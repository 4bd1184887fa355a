"""Compound SKU strings.

Format: ``BASE-opt~val*qty-opt~val*qty`` per item, ``,`` between items and
``|`` between the members of a bundle::

    LAPTOP-ram~16gb-ssd~512gb        single item with options
    LAPTOP-ram~16gb-cover~black*2    quantity on an option
    LAPTOP-ram~16gb,MOUSE,PAD        three separate items
    LAPTOP-ram~16gb|MOUSE|PAD        bundle, looked up by hash for a discount

Base SKUs may contain hyphens (lineage SKUs such as ``ORG-SHOP-PROD``); options
start at the first hyphen segment holding a ``~``.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

MAX_LENGTH = 1024

ITEM_SEPARATOR = ","
BUNDLE_SEPARATOR = "|"
OPTION_SEPARATOR = "-"

OPTION_PATTERN = re.compile(r"^([a-z_][a-z0-9_]*)~([^*]+)(?:\*(\d+))?$", re.IGNORECASE)


@dataclass(frozen=True)
class SkuOption:
    code: str
    value: str
    quantity: int = 1

    def __str__(self) -> str:
        if self.quantity > 1:
            return f"{self.code}~{self.value}*{self.quantity}"
        return f"{self.code}~{self.value}"


@dataclass(frozen=True)
class ParsedItem:
    base_sku: str
    options: Tuple[SkuOption, ...] = ()

    def __str__(self) -> str:
        if not self.options:
            return self.base_sku
        return OPTION_SEPARATOR.join([self.base_sku, *(str(option) for option in self.options)])

    def get_option(self, code: str) -> Optional[SkuOption]:
        code = code.lower()
        for option in self.options:
            if option.code.lower() == code:
                return option
        return None

    def has_option(self, code: str) -> bool:
        return self.get_option(code) is not None


@dataclass(frozen=True)
class BundleItem:
    items: Tuple[ParsedItem, ...]
    hash: str

    def __str__(self) -> str:
        return BUNDLE_SEPARATOR.join(str(item) for item in self.items)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def base_skus(self) -> List[str]:
        return [item.base_sku for item in self.items]

    @property
    def base_sku_string(self) -> str:
        return BUNDLE_SEPARATOR.join(sorted(self.base_skus))

    def contains_sku(self, base_sku: str) -> bool:
        return base_sku.upper() in {sku.upper() for sku in self.base_skus}


Item = Union[ParsedItem, BundleItem]


@dataclass(frozen=True)
class SkuParseResult:
    items: Tuple[Item, ...] = ()

    def __str__(self) -> str:
        return ITEM_SEPARATOR.join(str(item) for item in self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    @property
    def singles(self) -> List[ParsedItem]:
        return [item for item in self.items if isinstance(item, ParsedItem)]

    @property
    def bundles(self) -> List[BundleItem]:
        return [item for item in self.items if isinstance(item, BundleItem)]

    @property
    def has_bundles(self) -> bool:
        return bool(self.bundles)

    def all_base_skus(self) -> List[str]:
        skus: List[str] = []
        for item in self.items:
            if isinstance(item, BundleItem):
                skus.extend(item.base_skus)
            else:
                skus.append(item.base_sku)
        return skus

    def bundle_hashes(self) -> List[str]:
        return [bundle.hash for bundle in self.bundles]

    def product_count(self) -> int:
        """Individual products, with bundles expanded."""
        return sum(len(item) if isinstance(item, BundleItem) else 1 for item in self.items)

    def contains_sku(self, base_sku: str) -> bool:
        return base_sku.upper() in {sku.upper() for sku in self.all_base_skus()}


@dataclass(frozen=True)
class SkuValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


def hash_bundle(base_skus: Iterable[str]) -> str:
    """SHA-256 of the sorted, upper-cased base SKUs; independent of their order."""
    normalised = sorted(sku.strip().upper() for sku in base_skus)
    return hashlib.sha256(BUNDLE_SEPARATOR.join(normalised).encode("utf-8")).hexdigest()


def _parse_option(segment: str) -> Optional[SkuOption]:
    match = OPTION_PATTERN.match(segment)
    if match is None:
        return None
    code, value, quantity = match.groups()
    quantity = int(quantity) if quantity else 1
    if quantity < 1:
        return None
    return SkuOption(code=code.lower(), value=value.strip(), quantity=quantity)


def parse_item(text: str) -> ParsedItem:
    """Parse one ``BASE-opt~val*qty`` item.

    An option segment that does not parse keeps the whole item as an opaque
    base SKU, so nothing the caller sent is dropped.
    """
    text = text.strip()
    base_parts: List[str] = []
    option_parts: List[str] = []
    for part in text.split(OPTION_SEPARATOR):
        part = part.strip()
        if not option_parts and "~" not in part:
            base_parts.append(part)
        else:
            option_parts.append(part)

    options = []
    for part in option_parts:
        option = _parse_option(part)
        if option is None:
            return ParsedItem(base_sku=text.upper())
        options.append(option)
    return ParsedItem(base_sku=OPTION_SEPARATOR.join(base_parts).upper(), options=tuple(options))


def parse(compound_sku: Optional[str]) -> SkuParseResult:
    """Parse a compound SKU string; never raises."""
    compound_sku = (compound_sku or "").strip()
    if not compound_sku:
        return SkuParseResult()

    items: List[Item] = []
    for segment in compound_sku.split(ITEM_SEPARATOR):
        segment = segment.strip()
        if not segment:
            continue
        if BUNDLE_SEPARATOR in segment:
            members = tuple(parse_item(part) for part in segment.split(BUNDLE_SEPARATOR) if part.strip())
            if members:
                items.append(BundleItem(items=members, hash=hash_bundle(item.base_sku for item in members)))
        else:
            items.append(parse_item(segment))
    return SkuParseResult(items=tuple(items))


def validate(compound_sku: Optional[str]) -> SkuValidation:
    errors = []
    compound_sku = compound_sku or ""
    if len(compound_sku) > MAX_LENGTH:
        errors.append(f"Compound SKU exceeds maximum length of {MAX_LENGTH} characters.")

    result = parse(compound_sku)
    if not len(result):
        errors.append("No valid items found in SKU string.")
    for item in result:
        if isinstance(item, BundleItem):
            if any(not member.base_sku for member in item.items):
                errors.append("Bundle contains item with empty base SKU.")
        elif not item.base_sku:
            errors.append("Item has empty base SKU.")
    return SkuValidation(valid=not errors, errors=errors)
