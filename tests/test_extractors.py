"""
Tests for the stock extractors.

Each extractor is a pure function of the page text: it returns In Stock or
Out of Stock, or raises ExtractError when the page is not recognised.
"""

import pytest

from extractors import (
    EXTRACTOR_TYPES,
    JsonLdExtractor,
    KeywordExtractor,
    MatchExtractor,
    SelectorExtractor,
    build_extractor,
)
from models import IN_STOCK, OUT_OF_STOCK, ConfigError, ExtractError


class TestMatchExtractor:
    """Rule lists in the classic match file format."""

    def test_all_rules_hold_means_in_stock(self):
        extractor = MatchExtractor.from_config({"matches": [
            {"contains": "Add to Cart"},
            {"doesNotContain": "Sold Out"},
            {"regex": r"\$\d+\.\d{2}"},
            {"notRegex": "(?i)coming soon"},
        ]})
        page = "<button>Add to Cart</button><span>$499.99</span>"
        assert extractor.extract(page) == IN_STOCK

    def test_any_failing_rule_means_out_of_stock(self):
        extractor = MatchExtractor.from_config({"matches": [
            {"contains": "Add to Cart"},
            {"doesNotContain": "Sold Out"},
        ]})
        assert extractor.extract("<button>Add to Cart</button> Sold Out") == OUT_OF_STOCK
        assert extractor.extract("<p>Nothing here</p>") == OUT_OF_STOCK

    def test_contains_is_case_sensitive(self):
        extractor = MatchExtractor.from_config({"matches": [{"contains": "Add to Cart"}]})
        assert extractor.extract("add to cart") == OUT_OF_STOCK

    def test_empty_page_is_not_recognised(self):
        extractor = MatchExtractor.from_config({"matches": [{"doesNotContain": "Sold Out"}]})
        with pytest.raises(ExtractError):
            extractor.extract("   ")

    def test_invalid_regex_is_a_config_error(self):
        with pytest.raises(ConfigError, match="Invalid regex"):
            MatchExtractor.from_config({"matches": [{"regex": "([unclosed"}]})

    def test_unknown_rule_kind_is_a_config_error(self):
        with pytest.raises(ConfigError, match="Unknown match rule"):
            MatchExtractor.from_config({"matches": [{"startsWith": "Add"}]})

    def test_empty_rule_list_is_a_config_error(self):
        with pytest.raises(ConfigError):
            MatchExtractor.from_config({"matches": []})


class TestKeywordExtractor:
    """Visible text keyword matching."""

    def test_in_stock_phrase(self):
        page = "<html><body><h1>Widget</h1><button>Add to basket</button></body></html>"
        assert KeywordExtractor().extract(page) == IN_STOCK

    def test_out_of_stock_phrase_wins(self):
        page = "<html><body><p>Sold out</p><button disabled>Add to basket</button></body></html>"
        assert KeywordExtractor().extract(page) == OUT_OF_STOCK

    def test_script_text_is_ignored(self):
        page = "<html><body><p>Widget</p><script>var label = 'sold out';</script></body></html>"
        with pytest.raises(ExtractError):
            KeywordExtractor().extract(page)

    def test_custom_terms(self):
        extractor = KeywordExtractor.from_config({"in_stock": ["Auf Lager"], "out_of_stock": ["Ausverkauft"]})
        assert extractor.extract("<p>Auf Lager</p>") == IN_STOCK
        assert extractor.extract("<p>AUSVERKAUFT</p>") == OUT_OF_STOCK

    def test_blank_page_is_not_recognised(self):
        with pytest.raises(ExtractError):
            KeywordExtractor().extract("")

    def test_explicit_empty_list_is_not_replaced_by_defaults(self):
        extractor = KeywordExtractor.from_config({"in_stock": [], "out_of_stock": ["sold out"]})

        assert extractor.in_stock_terms == []
        assert extractor.extract("<p>Sold out</p>") == OUT_OF_STOCK
        with pytest.raises(ExtractError):
            extractor.extract("<button>Add to cart</button>")

    def test_both_lists_empty_is_a_config_error(self):
        with pytest.raises(ConfigError):
            KeywordExtractor.from_config({"in_stock": [], "out_of_stock": []})


class TestSelectorExtractor:
    """CSS selector markers."""

    @pytest.fixture
    def extractor(self):
        return SelectorExtractor.from_config({"in_stock": "button.add-to-cart", "out_of_stock": ".sold-out"})

    def test_in_stock_marker(self, extractor):
        assert extractor.extract('<button class="add-to-cart">Buy</button>') == IN_STOCK

    def test_out_of_stock_marker(self, extractor):
        assert extractor.extract('<div class="sold-out">Gone</div>') == OUT_OF_STOCK

    def test_disabled_button_counts_as_out_of_stock(self, extractor):
        assert extractor.extract('<button class="add-to-cart" disabled>Buy</button>') == OUT_OF_STOCK
        assert extractor.extract('<button class="add-to-cart disabled">Buy</button>') == OUT_OF_STOCK

    def test_neither_marker_is_not_recognised(self, extractor):
        with pytest.raises(ExtractError, match="Neither"):
            extractor.extract("<p>Redesigned page</p>")

    def test_both_markers_is_not_recognised(self, extractor):
        with pytest.raises(ExtractError, match="Both"):
            extractor.extract('<button class="add-to-cart">Buy</button><div class="sold-out"></div>')

    def test_missing_selectors_is_a_config_error(self):
        with pytest.raises(ConfigError):
            SelectorExtractor.from_config({"in_stock": "button"})

    @pytest.mark.parametrize("options", [
        {"type": "selector", "in_stock": "button[", "out_of_stock": ".sold"},
        {"type": "selector", "in_stock": "button.buy", "out_of_stock": ":not("},
    ])
    def test_malformed_selector_is_a_config_error(self, options):
        with pytest.raises(ConfigError, match="Invalid CSS selector"):
            build_extractor(options)


class TestJsonLdExtractor:
    """schema.org Product availability."""

    @staticmethod
    def page(ld_json):
        return f'<html><head><script type="application/ld+json">{ld_json}</script></head></html>'

    def test_in_stock_offer(self):
        page = self.page('{"@type": "Product", "name": "W", "offers": {"availability": "https://schema.org/InStock"}}')
        assert JsonLdExtractor().extract(page) == IN_STOCK

    def test_out_of_stock_offer_list(self):
        page = self.page('{"@type": "Product", "offers": [{"availability": "http://schema.org/OutOfStock"}]}')
        assert JsonLdExtractor().extract(page) == OUT_OF_STOCK

    def test_preorder_counts_as_out_of_stock(self):
        page = self.page('{"@type": "Product", "offers": {"availability": "PreOrder"}}')
        assert JsonLdExtractor().extract(page) == OUT_OF_STOCK

    def test_product_inside_graph(self):
        page = self.page(
            '{"@graph": [{"@type": "WebPage"}, '
            '{"@type": ["Product", "Thing"], "offers": {"availability": "https://schema.org/LimitedAvailability"}}]}'
        )
        assert JsonLdExtractor().extract(page) == IN_STOCK

    def test_aggregate_offer(self):
        page = self.page(
            '{"@type": "Product", "offers": {"@type": "AggregateOffer", '
            '"offers": [{"availability": "https://schema.org/SoldOut"}]}}'
        )
        assert JsonLdExtractor().extract(page) == OUT_OF_STOCK

    def test_broken_json_is_not_recognised(self):
        with pytest.raises(ExtractError):
            JsonLdExtractor().extract(self.page('{"@type": "Product", '))

    def test_product_without_availability_is_not_recognised(self):
        with pytest.raises(ExtractError):
            JsonLdExtractor().extract(self.page('{"@type": "Product", "offers": {"price": "9.99"}}'))


class TestBuildExtractor:
    def test_registry_is_closed_set(self):
        assert set(EXTRACTOR_TYPES) == {"matches", "keywords", "selector", "jsonld"}

    def test_builds_by_type_tag(self):
        assert isinstance(build_extractor({"type": "jsonld"}), JsonLdExtractor)
        assert isinstance(build_extractor({"type": "keywords"}), KeywordExtractor)

    def test_unknown_type_is_a_config_error(self):
        with pytest.raises(ConfigError, match="Unknown extractor type"):
            build_extractor({"type": "xpath"})
