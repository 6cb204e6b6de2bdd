import pytest

from chatcart.cart_store import Cart, CartLine
from chatcart.recommendation import (
    CLARIFY_REPLY,
    NO_MATCH_HEADER,
    RECO_HEADER,
    Needs,
    Recommender,
    complementary_categories,
    discounted,
    extract_needs,
    merge_needs,
    needs_clarification,
    price_tier,
    recently_clarified,
    rerank,
)


def line_for(product, qty=1):
    return CartLine(
        product_name=product.name,
        qty=qty,
        unit_price_cents=product.price_cents,
        product_id=product.id,
        tags=sorted(product.tags),
    )


def test_extract_needs():
    assert extract_needs("serum for oily acne skin") == Needs(product_type="serum", concerns=("acne", "oily"))
    needs = extract_needs("cheap moisturiser for dry skin")
    assert needs.product_type == "moisturizer"
    assert needs.concerns == ("dry", "hydrating")
    assert needs.price_tier == "budget"
    assert extract_needs("hello") == Needs()


def test_price_tiers():
    assert price_tier(899) == "budget"
    assert price_tier(1299) == "mid"
    assert price_tier(2500) == "premium"


def test_rerank_moves_matching_type_first_and_keeps_ties(catalog):
    products = [catalog.get("niacinamide-serum"), catalog.get("ceramide-serum"), catalog.get("ceramide-moisture-gel")]
    ranked = rerank(products, Needs(product_type="moisturizer"))
    assert [product.id for product in ranked] == ["ceramide-moisture-gel", "niacinamide-serum", "ceramide-serum"]


def test_recommend_matches_synonyms(catalog):
    result = Recommender(catalog).recommend("any good cream?")
    assert result.matched
    assert result.header == RECO_HEADER
    assert result.products[0].id == "ceramide-moisture-gel"


def test_recommend_without_match_returns_popular_products(catalog):
    result = Recommender(catalog, limit=2).recommend("vitamin c")
    assert not result.matched
    assert result.header == NO_MATCH_HEADER
    assert [product.id for product in result.products] == ["ceramide-moisture-gel", "niacinamide-serum"]


def test_recommender_rejects_non_positive_limit(catalog):
    with pytest.raises(ValueError):
        Recommender(catalog, limit=0)


def test_upsell_for_moisturizer_cart(catalog):
    cart = Cart(session_id="s", items=[line_for(catalog.get("ceramide-moisture-gel"), 2)])
    items = Recommender(catalog).upsell(cart)
    assert [(item.product.id, item.price_cents, item.original_price_cents) for item in items] == [
        ("niacinamide-serum", 989, 1099),
        ("ceramide-serum", 1169, 1299),
    ]
    assert all(item.discount_percent == 10 for item in items)


def test_upsell_skips_products_in_cart(catalog):
    cart = Cart(
        session_id="s",
        items=[line_for(catalog.get("niacinamide-serum")), line_for(catalog.get("ceramide-serum"))],
    )
    items = Recommender(catalog).upsell(cart)
    assert [(item.product.id, item.price_cents) for item in items] == [("ceramide-moisture-gel", 809)]


def test_upsell_for_empty_cart(catalog):
    assert Recommender(catalog).upsell(Cart(session_id="s")) == []


def test_complementary_categories():
    assert complementary_categories([]) == ["sunscreen"]
    assert complementary_categories(["ceramide"]) == ["serum", "moisturizer"]
    assert complementary_categories(["Serum", "moisturizer"]) == ["serum", "sunscreen", "moisturizer"]


def test_discount_rounds_half_up(catalog):
    assert discounted(catalog.get("niacinamide-serum")).price_cents == 989
    assert discounted(catalog.get("ceramide-moisture-gel"), percent=50).price_cents == 450


def test_merge_needs_keeps_latest_type_and_all_concerns():
    merged = merge_needs([extract_needs("recommend a serum"), extract_needs("oily and acne skin, cheap")])
    assert merged == Needs(product_type="serum", concerns=("acne", "oily"), price_tier="budget")
    assert merge_needs([]) == Needs()


@pytest.mark.parametrize(
    "message, expected",
    [
        ("recommend a serum", True),
        ("serum for oily skin", False),
        ("cheap serum", False),
        ("any good cream?", False),
        ("hello", False),
    ],
)
def test_needs_clarification(message, expected):
    assert needs_clarification(extract_needs(message)) is expected


def test_recently_clarified_looks_at_the_last_few_turns():
    assert recently_clarified(["Hi!", CLARIFY_REPLY])
    assert not recently_clarified([CLARIFY_REPLY, "a", "b", "c"])
    assert not recently_clarified([])


def test_recommend_uses_remembered_product_type(catalog):
    needs = merge_needs([extract_needs("recommend a serum"), extract_needs("for oily skin")])
    result = Recommender(catalog).recommend("for oily skin", needs=needs)
    assert result.matched
    assert {product.id for product in result.products} == {"niacinamide-serum", "ceramide-serum"}
