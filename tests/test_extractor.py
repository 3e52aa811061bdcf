"""
Unit tests for retailer-aware metadata extraction.
Tests chain ordering, fallbacks, field cleanup and the generic pass.
"""
import re

import pytest

from extractor import (
    AMAZON,
    BESTBUY,
    Strategy,
    extract_metadata,
    format_price,
    retailer_for_url,
)

AMAZON_URL = "https://www.amazon.com/dp/B000ABCDEF"

PRICE_RE = re.compile(r"^\$\d+\.\d{2}$")


def _amazon_page(body: str, head: str = "") -> str:
    return f"<html><head><title>Amazon.com: Widget</title>{head}</head><body>{body}</body></html>"


class TestFormatPrice:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("$12.99", "$12.99"),
            ("1,299.5", "$1299.50"),
            ("USD 7", "$7.00"),
            ("19.999", "$20.00"),
            (" $ 0.50 ", "$0.50"),
        ],
    )
    def test_formats_two_decimals(self, raw, expected):
        assert format_price(raw) == expected
        assert PRICE_RE.match(expected)

    @pytest.mark.parametrize(
        "raw", [None, "", "abc", ".", "0", "0.00", "1.2.3", "USD 1234567890123456789012345678901"]
    )
    def test_rejects_implausible(self, raw):
        assert format_price(raw) is None

    def test_overlong_number_on_page_is_not_a_price(self):
        metadata, report = extract_metadata(
            "<p>USD 1234567890123456789012345678901</p>", "https://shop.example/item/1"
        )

        assert metadata.price is None
        assert "price" in report.missing


class TestStrategy:
    def test_errors_inside_a_strategy_mean_no_result(self):
        strategy = Strategy("broken", lambda ctx: {}["missing"])

        assert strategy(None) is None

    def test_blank_result_is_none(self):
        assert Strategy("blank", lambda ctx: "   ")(None) is None


class TestRetailerDispatch:
    @pytest.mark.parametrize(
        "url,name",
        [
            ("https://www.amazon.com/dp/B000ABCDEF", "amazon"),
            ("https://smile.amazon.co.uk/x", "amazon"),
            ("https://amzn.to/3xyz", "amazon"),
            ("https://www.target.com/p/-/A-1", "target"),
            ("https://www.walmart.com/ip/1", "walmart"),
            ("https://www.bestbuy.com/site/x/1234567.p", "bestbuy"),
        ],
    )
    def test_known_hosts(self, url, name):
        assert retailer_for_url(url).name == name

    def test_unknown_host(self):
        assert retailer_for_url("https://shop.example/item/42") is None


class TestAmazonChains:
    """Ordered strategies for amazon pages."""

    def test_price_falls_back_to_generic_dollar_token(self):
        """No retailer price marker on the page: the generic pattern still finds it."""
        html = _amazon_page(
            '<span id="productTitle"> Acme Widget </span>'
            "<div class=\"promo\">Now only $12.99 with coupon</div>"
        )

        metadata, report = extract_metadata(html, AMAZON_URL)

        assert metadata.price == "$12.99"
        assert report.sources["price"] == "generic.dollar-amount"

    def test_primary_price_marker_wins(self):
        html = _amazon_page(
            '<div class="a-price"><span class="a-offscreen">$1,299.00</span></div>'
            "<p>Was $12.99</p>"
        )

        metadata, report = extract_metadata(html, AMAZON_URL)

        assert metadata.price == "$1299.00"
        assert report.sources["price"] == "amazon.a-offscreen"

    def test_split_whole_and_fraction_price(self):
        html = _amazon_page(
            '<span class="a-price"><span class="a-price-whole">24.</span>'
            '<span class="a-price-fraction">95</span></span>'
        )

        metadata, report = extract_metadata(html, AMAZON_URL)

        assert metadata.price == "$24.95"
        assert report.sources["price"] == "amazon.price-whole"

    def test_logo_image_skipped_for_next_strategy(self):
        html = _amazon_page(
            "<script>var data = {"
            '"hiRes":"https://m.media-amazon.com/images/G/01/nav-logo.png",'
            '"large":"https://m.media-amazon.com/images/I/71large.jpg"};</script>'
        )

        metadata, report = extract_metadata(html, AMAZON_URL)

        assert metadata.image == "https://m.media-amazon.com/images/I/71large.jpg"
        assert report.sources["image"] == "amazon.large"

    def test_escaped_image_url_is_unescaped(self):
        html = _amazon_page(
            r'<script>{"hiRes":"https:\u002F\u002Fm.media-amazon.com\u002Fimages\u002FI\u002F81x.jpg"}</script>'
        )

        metadata, _ = extract_metadata(html, AMAZON_URL)

        assert metadata.image == "https://m.media-amazon.com/images/I/81x.jpg"

    def test_dynamic_image_map_picks_largest(self):
        dynamic = (
            "{&quot;https://m.media-amazon.com/images/I/small.jpg&quot;:[100,100],"
            "&quot;https://m.media-amazon.com/images/I/big.jpg&quot;:[1500,1500]}"
        )
        html = _amazon_page(f'<img id="landingImage" data-a-dynamic-image="{dynamic}">')

        metadata, report = extract_metadata(html, AMAZON_URL)

        assert metadata.image == "https://m.media-amazon.com/images/I/big.jpg"
        assert report.sources["image"] == "amazon.dynamic-image"

    def test_title_and_bullets(self):
        html = _amazon_page(
            '<span id="productTitle">\n  Acme Widget, Blue  \n</span>'
            '<div id="feature-bullets"><ul><li> Durable </li><li>Waterproof</li></ul></div>'
        )

        metadata, report = extract_metadata(html, AMAZON_URL)

        assert metadata.title == "Acme Widget, Blue"
        assert metadata.description == "Durable Waterproof"
        assert report.retailer == "amazon"
        assert metadata.retailer == "amazon"

    def test_retailer_fields_override_generic(self):
        html = _amazon_page(
            '<span id="productTitle">Acme Widget</span>',
            head='<meta property="og:title" content="Amazon.com : Acme Widget : Home &amp; Kitchen">',
        )

        metadata, _ = extract_metadata(html, AMAZON_URL)

        assert metadata.title == "Acme Widget"

    def test_image_requires_file_extension(self):
        html = _amazon_page('<img id="landingImage" src="https://m.media-amazon.com/images/render?id=5">')

        metadata, report = extract_metadata(html, AMAZON_URL)

        assert report.sources.get("image") != "amazon.landingImage"


class TestOtherRetailers:
    def test_target_script_state(self):
        html = (
            '<html><body><h1 data-test="product-title">Cotton Tee</h1>'
            '<div data-test="product-price">$24.99</div>'
            r'<script>{"downstream_description":"Soft \"cotton\" tee\u2014comfy",'
            r'"src":"https:\/\/target.scene7.com\/is\/image\/Target\/GUEST_123"}</script>'
            "</body></html>"
        )

        metadata, report = extract_metadata(html, "https://www.target.com/p/tee/-/A-123")

        assert metadata.title == "Cotton Tee"
        assert metadata.price == "$24.99"
        assert metadata.description == 'Soft "cotton" tee\u2014comfy'
        assert metadata.image == "https://target.scene7.com/is/image/Target/GUEST_123"
        assert report.sources["description"] == "target.downstream_description"

    def test_walmart_itemprop_price(self):
        html = (
            '<html><body><h1 itemprop="name">Mixing Bowl</h1>'
            '<span itemprop="price" content="15.5">$15.50</span></body></html>'
        )

        metadata, report = extract_metadata(html, "https://www.walmart.com/ip/bowl/123456")

        assert metadata.price == "$15.50"
        assert metadata.title == "Mixing Bowl"
        assert report.sources["price"] == "walmart.itemprop-price"

    def test_bestbuy_customer_price(self):
        html = (
            '<html><body><div class="sku-title"><h1>4K TV</h1></div>'
            '<div class="priceView-customer-price"><span>$499.99</span></div></body></html>'
        )

        metadata, report = extract_metadata(html, "https://www.bestbuy.com/site/tv/6501234.p")

        assert metadata.title == "4K TV"
        assert metadata.price == "$499.99"
        assert report.retailer == BESTBUY.name


class TestGenericPass:
    """Link-preview extraction for any host."""

    def test_open_graph_page(self, product_page):
        metadata, report = extract_metadata(product_page(), "https://shop.example/item/42")

        assert metadata.title == "Blue Widget"
        assert metadata.description == "A very blue widget."
        assert metadata.image == "https://cdn.shop.example/images/widget.jpg"
        assert metadata.price == "$19.99"
        assert metadata.url == "https://shop.example/item/42"
        assert metadata.retailer == "generic"
        assert report.missing == []

    def test_canonical_url_preferred_over_final_url(self):
        html = '<html><head><link rel="canonical" href="https://shop.example/widget"></head></html>'

        metadata, _ = extract_metadata(html, "https://shop.example/widget?ref=mail")

        assert metadata.url == "https://shop.example/widget"

    def test_json_ld_price(self):
        html = (
            '<html><head><script type="application/ld+json">'
            '{"@type": "Product", "name": "Lamp", "offers": [{"price": 49}]}'
            "</script></head></html>"
        )

        metadata, report = extract_metadata(html, "https://shop.example/lamp")

        assert metadata.title == "Lamp"
        assert metadata.price == "$49.00"
        assert report.sources["price"] == "json_ld.offers.price"

    def test_title_falls_back_to_document_title(self):
        metadata, report = extract_metadata("<html><head><title>Plain Page</title></head></html>", "https://x.example/")

        assert metadata.title == "Plain Page"
        assert report.sources["title"] == "html.title"

    def test_images_deduplicated_filtered_and_capped(self):
        imgs = "".join(f'<img src="https://cdn.shop.example/p{i}.jpg">' for i in range(15))
        imgs += '<img src="https://cdn.shop.example/logo.png"><img src="https://cdn.shop.example/p0.jpg">'
        html = f"<html><body>{imgs}</body></html>"

        metadata, report = extract_metadata(html, "https://shop.example/gallery")

        assert len(metadata.images) == 10
        assert len(set(metadata.images)) == 10
        assert not any("logo" in url for url in metadata.images)
        assert metadata.image == "https://cdn.shop.example/p0.jpg"
        assert report.image_count == 10

    def test_empty_page_is_not_an_error(self):
        metadata, report = extract_metadata("", "https://shop.example/blank")

        assert metadata.title is None
        assert metadata.price is None
        assert sorted(report.missing) == ["description", "image", "price", "title"]

    def test_every_extracted_price_is_formatted(self, product_page):
        for raw in ("$5.00", "$1,234.56", "$0.99"):
            metadata, _ = extract_metadata(product_page(price=raw), "https://shop.example/p")
            assert PRICE_RE.match(metadata.price)


def test_amazon_profile_requires_image_extension():
    assert AMAZON.require_image_extension is True
