"""
Stock extractors
================
Each extractor turns the raw text of a product page into an availability
status. The set of extractor types is closed: an item in the match file picks
one by its tag and ``build_extractor`` looks it up in ``EXTRACTOR_TYPES``.

Extractors never touch the network or any shared state. A page they cannot
make sense of raises ``ExtractError`` and the monitor records Unknown.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

import soupsieve
from bs4 import BeautifulSoup

from models import (
    AvailabilityStatus,
    ConfigError,
    ExtractError,
    IN_STOCK,
    OUT_OF_STOCK,
)


OUT_OF_STOCK_TERMS = [
    "out of stock", "sold out", "currently unavailable", "temporarily out of stock",
    "notify when available", "notify me when in stock", "not in stock",
    "no stock available", "email when available", "pre-order", "coming soon",
]

IN_STOCK_TERMS = [
    "add to cart", "add to basket", "add to bag", "in stock", "buy now",
    "available now", "order now", "ready to ship",
]

# schema.org ItemAvailability values
JSONLD_IN_STOCK = {"instock", "limitedavailability", "onlineonly", "instoreonly"}
JSONLD_OUT_OF_STOCK = {"outofstock", "soldout", "discontinued", "preorder", "backorder"}


class Extractor:
    """Common interface: ``extract(content) -> AvailabilityStatus``"""

    type_name = ""

    def extract(self, content: str) -> AvailabilityStatus:
        raise NotImplementedError

    @classmethod
    def from_config(cls, options: Dict[str, Any]) -> "Extractor":
        raise NotImplementedError


class MatchExtractor(Extractor):
    """
    Rule list from the classic match file format. Every rule must hold for
    the item to count as in stock; any failing rule means out of stock.

    Rules are one-key mappings: ``regex``, ``notRegex``, ``contains`` or
    ``doesNotContain``.
    """

    type_name = "matches"
    RULE_KINDS = ("regex", "notRegex", "contains", "doesNotContain")

    def __init__(self, rules: List[Tuple[str, Any]]):
        if not rules:
            raise ConfigError("matches extractor needs at least one rule")
        self.rules = rules

    @classmethod
    def from_config(cls, options: Dict[str, Any]) -> "MatchExtractor":
        raw_rules = options.get("matches")
        if not isinstance(raw_rules, list):
            raise ConfigError("'matches' must be a list of rules")

        rules = []
        for raw in raw_rules:
            if not isinstance(raw, dict) or len(raw) != 1:
                raise ConfigError(f"Invalid match rule: {raw!r}")
            kind, value = next(iter(raw.items()))
            if kind not in cls.RULE_KINDS:
                raise ConfigError(f"Unknown match rule '{kind}', expected one of {', '.join(cls.RULE_KINDS)}")
            if not isinstance(value, str):
                raise ConfigError(f"Match rule '{kind}' needs a string value")
            if kind in ("regex", "notRegex"):
                try:
                    value = re.compile(value)
                except re.error as e:
                    raise ConfigError(f"Invalid regex {value!r}: {e}") from e
            rules.append((kind, value))
        return cls(rules)

    def _rule_holds(self, kind: str, value: Any, content: str) -> bool:
        if kind == "regex":
            return value.search(content) is not None
        if kind == "notRegex":
            return value.search(content) is None
        if kind == "contains":
            return value in content
        return value not in content

    def extract(self, content: str) -> AvailabilityStatus:
        if not content or not content.strip():
            raise ExtractError("Empty page")
        if all(self._rule_holds(kind, value, content) for kind, value in self.rules):
            return IN_STOCK
        return OUT_OF_STOCK


class KeywordExtractor(Extractor):
    """Looks for stock phrases in the visible page text. Out-of-stock phrases win."""

    type_name = "keywords"

    def __init__(self, in_stock_terms: Optional[List[str]] = None, out_of_stock_terms: Optional[List[str]] = None):
        if in_stock_terms is None:
            in_stock_terms = IN_STOCK_TERMS
        if out_of_stock_terms is None:
            out_of_stock_terms = OUT_OF_STOCK_TERMS
        self.in_stock_terms = [t.lower() for t in in_stock_terms]
        self.out_of_stock_terms = [t.lower() for t in out_of_stock_terms]

    @classmethod
    def from_config(cls, options: Dict[str, Any]) -> "KeywordExtractor":
        in_terms = options.get("in_stock")
        out_terms = options.get("out_of_stock")
        for name, terms in (("in_stock", in_terms), ("out_of_stock", out_terms)):
            if terms is not None and not (isinstance(terms, list) and all(isinstance(t, str) for t in terms)):
                raise ConfigError(f"keywords '{name}' must be a list of strings")
        if in_terms == [] and out_terms == []:
            raise ConfigError("keywords extractor needs at least one in_stock or out_of_stock term")
        return cls(in_terms, out_terms)

    def extract(self, content: str) -> AvailabilityStatus:
        soup = BeautifulSoup(content or "", "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        text = " ".join(soup.get_text(" ").lower().split())
        if not text:
            raise ExtractError("No visible text on page")

        if any(term in text for term in self.out_of_stock_terms):
            return OUT_OF_STOCK
        if any(term in text for term in self.in_stock_terms):
            return IN_STOCK
        raise ExtractError("No stock keywords found")


class SelectorExtractor(Extractor):
    """
    CSS selectors for an in-stock marker and an out-of-stock marker.
    Exactly one of them has to be present on the page.
    """

    type_name = "selector"

    def __init__(self, in_stock: str, out_of_stock: str):
        self.in_stock = in_stock
        self.out_of_stock = out_of_stock

    @classmethod
    def from_config(cls, options: Dict[str, Any]) -> "SelectorExtractor":
        in_sel = options.get("in_stock")
        out_sel = options.get("out_of_stock")
        if not isinstance(in_sel, str) or not isinstance(out_sel, str):
            raise ConfigError("selector extractor needs 'in_stock' and 'out_of_stock' CSS selectors")
        for selector in (in_sel, out_sel):
            try:
                soupsieve.compile(selector)
            except soupsieve.SelectorSyntaxError as e:
                raise ConfigError(f"Invalid CSS selector {selector!r}: {e}") from e
        return cls(in_sel, out_sel)

    def extract(self, content: str) -> AvailabilityStatus:
        soup = BeautifulSoup(content or "", "html.parser")
        in_el = soup.select_one(self.in_stock)
        out_el = soup.select_one(self.out_of_stock)

        if in_el is not None and out_el is not None:
            raise ExtractError(f"Both '{self.in_stock}' and '{self.out_of_stock}' matched")
        if out_el is not None:
            return OUT_OF_STOCK
        if in_el is not None:
            # disabled "add to cart" buttons are common on sold out pages
            if in_el.has_attr("disabled") or "disabled" in in_el.get("class", []):
                return OUT_OF_STOCK
            return IN_STOCK
        raise ExtractError(f"Neither '{self.in_stock}' nor '{self.out_of_stock}' matched")


def _safe_json_loads(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return None


def _is_product(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    t = node.get("@type")
    return t == "Product" or (isinstance(t, list) and "Product" in t)


def _pick_product_node(data: Any) -> Optional[Dict[str, Any]]:
    """Find a schema.org Product in parsed JSON-LD (dict, list or @graph)."""
    if isinstance(data, dict):
        if "@graph" in data:
            for node in data["@graph"]:
                if _is_product(node):
                    return node
        if _is_product(data):
            return data
    if isinstance(data, list):
        for node in data:
            if _is_product(node):
                return node
    return None


class JsonLdExtractor(Extractor):
    """Reads ``offers.availability`` from a JSON-LD Product block."""

    type_name = "jsonld"

    @classmethod
    def from_config(cls, options: Dict[str, Any]) -> "JsonLdExtractor":
        return cls()

    @staticmethod
    def _availability_values(product: Dict[str, Any]) -> List[str]:
        offers = product.get("offers")
        if isinstance(offers, dict) and isinstance(offers.get("offers"), list):
            # AggregateOffer
            offers = offers["offers"]
        if isinstance(offers, dict):
            offers = [offers]
        if not isinstance(offers, list):
            return []

        values = []
        for offer in offers:
            if isinstance(offer, dict) and isinstance(offer.get("availability"), str):
                # "https://schema.org/InStock" -> "instock"
                values.append(offer["availability"].rstrip("/").rsplit("/", 1)[-1].lower())
        return values

    def extract(self, content: str) -> AvailabilityStatus:
        soup = BeautifulSoup(content or "", "html.parser")
        for script in soup.find_all("script", type="application/ld+json"):
            if not script.string:
                continue
            product = _pick_product_node(_safe_json_loads(script.string))
            if not product:
                continue

            values = self._availability_values(product)
            if any(v in JSONLD_IN_STOCK for v in values):
                return IN_STOCK
            if any(v in JSONLD_OUT_OF_STOCK for v in values):
                return OUT_OF_STOCK
        raise ExtractError("No JSON-LD product availability found")


EXTRACTOR_TYPES = {
    cls.type_name: cls
    for cls in (MatchExtractor, KeywordExtractor, SelectorExtractor, JsonLdExtractor)
}


def build_extractor(options: Dict[str, Any]) -> Extractor:
    """Build an extractor from its match file entry (``type`` plus options)."""
    type_name = options.get("type")
    extractor_cls = EXTRACTOR_TYPES.get(type_name)
    if extractor_cls is None:
        raise ConfigError(f"Unknown extractor type {type_name!r}, expected one of {', '.join(sorted(EXTRACTOR_TYPES))}")
    return extractor_cls.from_config(options)
