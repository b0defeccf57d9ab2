"""
Tests for the keyword router.

Covers intent classification, the context-reference guard and the
catalogue-backed replies.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import TEST_SHOP
from shopchat.models.api import ProductSort
from shopchat.models.domain import ProductSnapshot
from shopchat.services.keywords import (
    ADD_TO_CART_REPLY,
    COMPLIMENT_REPLIES,
    GREETING_REPLIES,
    NO_PRODUCTS_REPLY,
    Intent,
    KeywordRouter,
    classify_intent,
    normalize_typos,
    store_name,
)

PRODUCTS = (
    ProductSnapshot(product_id="p1", title="Trail Runner", price=89.0),
    ProductSnapshot(product_id="p2", title="Merino Beanie", price=24.5),
)


@pytest.fixture
def catalog() -> MagicMock:
    catalog = MagicMock()
    catalog.search = AsyncMock(return_value=PRODUCTS)
    catalog.mentions_category = AsyncMock(return_value=False)
    return catalog


@pytest.fixture
def router(catalog: MagicMock) -> KeywordRouter:
    return KeywordRouter(catalog)


class TestClassification:
    """Tests for intent classification."""

    def test_typos_fixed(self) -> None:
        assert normalize_typos("  Where is my ODER? ") == "where is my order?"
        assert normalize_typos("shiping policy") == "shipping policy"

    @pytest.mark.parametrize(
        ("message", "intent"),
        [
            ("you guys are the best", Intent.COMPLIMENT),
            ("hello there", Intent.GREETING),
            ("good morning!", Intent.GREETING),
            ("what is your return policy?", Intent.POLICY_QUERY),
            ("how do i add to cart", Intent.ADD_TO_CART),
            ("can i add socks to my order", Intent.ORDER_EDIT),
            ("where is my order", Intent.ORDER_STATUS),
            ("what is your store name", Intent.STORE_INFO),
            ("what are your cheapest products", Intent.PRODUCT_QUERY),
            ("any new arrivals?", Intent.PRODUCT_QUERY),
            ("tell me a joke", Intent.GENERAL_INQUIRY),
        ],
    )
    def test_intents(self, message: str, intent: Intent) -> None:
        assert classify_intent(message) == intent

    def test_greeting_needs_whole_word(self) -> None:
        assert classify_intent("hiking boots") != Intent.GREETING

    def test_store_name(self) -> None:
        assert store_name("acme-outdoors.myshopify.com") == "Acme Outdoors"


class TestSmallTalk:
    """Tests for canned replies."""

    async def test_greeting(self, router: KeywordRouter, catalog: MagicMock) -> None:
        reply = await router.match(TEST_SHOP, "Hi!")

        assert reply is not None
        assert reply.intent == "GREETING"
        assert reply.text in GREETING_REPLIES
        assert reply.products == ()
        catalog.search.assert_not_awaited()

    async def test_compliment_referring_back_still_answered(
        self, router: KeywordRouter
    ) -> None:
        reply = await router.match(TEST_SHOP, "Thanks so much, appreciate it")

        assert reply is not None
        assert reply.text in COMPLIMENT_REPLIES

    async def test_policy_reply_has_no_products(
        self, router: KeywordRouter, catalog: MagicMock
    ) -> None:
        reply = await router.match(TEST_SHOP, "What's your shiping policy?")

        assert reply is not None
        assert reply.intent == "POLICY_QUERY"
        assert "shipping policy" in reply.text
        assert "Test Shop" in reply.text
        assert reply.products == ()
        catalog.search.assert_not_awaited()

    async def test_order_status(self, router: KeywordRouter) -> None:
        reply = await router.match(TEST_SHOP, "where is my oder")

        assert reply is not None
        assert reply.intent == "ORDER_STATUS"
        assert "track your order" in reply.text

    async def test_add_to_cart(self, router: KeywordRouter) -> None:
        reply = await router.match(TEST_SHOP, "how do I add to cart")

        assert reply is not None
        assert reply.text == ADD_TO_CART_REPLY

    @pytest.mark.parametrize(
        "message", ["can I add socks to my order", "what is your store name", "tell me a joke"]
    )
    async def test_left_to_model(self, router: KeywordRouter, message: str) -> None:
        assert await router.match(TEST_SHOP, message) is None


class TestCatalogReplies:
    """Tests for catalogue-backed replies."""

    async def test_cheapest_products(self, router: KeywordRouter, catalog: MagicMock) -> None:
        reply = await router.match(TEST_SHOP, "Show me your cheapest products")

        assert reply is not None
        assert reply.products == PRODUCTS
        assert reply.text.startswith("Here are our most affordable products:")
        assert "1. **Trail Runner** - $89.00" in reply.text
        assert "2. **Merino Beanie** - $24.50" in reply.text
        catalog.search.assert_awaited_once_with(
            TEST_SHOP, "", sort=ProductSort.PRICE_ASC, limit=5
        )
        catalog.mentions_category.assert_not_awaited()

    async def test_premium_products(self, router: KeywordRouter, catalog: MagicMock) -> None:
        reply = await router.match(TEST_SHOP, "your most expensive items")

        assert reply is not None
        assert "premium" in reply.text
        assert catalog.search.call_args.kwargs["sort"] == ProductSort.PRICE_DESC

    async def test_specific_category_goes_to_model(
        self, router: KeywordRouter, catalog: MagicMock
    ) -> None:
        catalog.mentions_category = AsyncMock(return_value=True)

        assert await router.match(TEST_SHOP, "cheapest running shoes") is None
        catalog.mentions_category.assert_awaited_once_with(TEST_SHOP, "cheapest running shoes")
        catalog.search.assert_not_awaited()

    async def test_category_not_stocked_lists_cheapest(
        self, router: KeywordRouter, catalog: MagicMock
    ) -> None:
        reply = await router.match(TEST_SHOP, "cheapest shoes")

        assert reply is not None
        assert reply.products == PRODUCTS
        catalog.search.assert_awaited_once()

    async def test_best_sellers(self, router: KeywordRouter, catalog: MagicMock) -> None:
        reply = await router.match(TEST_SHOP, "What are your best sellers?")

        assert reply is not None
        assert reply.text.startswith("Here are our best-selling products:")
        assert catalog.search.call_args.kwargs["sort"] == ProductSort.BEST_SELLING

    async def test_new_arrivals(self, router: KeywordRouter, catalog: MagicMock) -> None:
        reply = await router.match(TEST_SHOP, "any new arrivals?")

        assert reply is not None
        assert reply.text.startswith("Here are our newest products:")
        assert catalog.search.call_args.kwargs["sort"] == ProductSort.NEWEST

    async def test_empty_catalog(self, router: KeywordRouter, catalog: MagicMock) -> None:
        catalog.search = AsyncMock(return_value=())

        reply = await router.match(TEST_SHOP, "show me your best sellers")

        assert reply is not None
        assert reply.text == NO_PRODUCTS_REPLY
        assert reply.products == ()

    async def test_reference_to_conversation_goes_to_model(
        self, router: KeywordRouter, catalog: MagicMock
    ) -> None:
        assert await router.match(TEST_SHOP, "how much does that cost?") is None
        assert await router.match(TEST_SHOP, "show me the cheapest one") is None
        catalog.search.assert_not_awaited()

    async def test_specific_lookup_goes_to_model(self, router: KeywordRouter) -> None:
        assert await router.match(TEST_SHOP, "do you sell wool hats") is None

    async def test_catalog_failure_goes_to_model(
        self, router: KeywordRouter, catalog: MagicMock
    ) -> None:
        catalog.search = AsyncMock(side_effect=SQLAlchemyError("connection lost"))

        assert await router.match(TEST_SHOP, "show me your best sellers") is None
