"""
Keyword Router - Answers simple storefront questions without the model.

Greetings, compliments, policy and order-tracking questions, cart help and
generic catalogue asks (cheapest, best sellers, new arrivals) get a canned or
catalogue-backed reply. Anything that refers back to the conversation ("it",
"that one") or names a specific category goes to the model.
"""

import random
import re
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from shopchat.models.api import ProductSort
from shopchat.models.domain import KeywordReply, ProductSnapshot
from shopchat.services.catalog import ProductCatalog

logger = get_logger(__name__)


class Intent(str, Enum):
    """Message intent enumeration."""

    COMPLIMENT = "COMPLIMENT"
    GREETING = "GREETING"
    POLICY_QUERY = "POLICY_QUERY"
    ADD_TO_CART = "ADD_TO_CART"
    ORDER_EDIT = "ORDER_EDIT"
    ORDER_STATUS = "ORDER_STATUS"
    STORE_INFO = "STORE_INFO"
    PRODUCT_QUERY = "PRODUCT_QUERY"
    GENERAL_INQUIRY = "GENERAL_INQUIRY"


# ============================================================================
# Vocabulary
# ============================================================================

TYPOS = {
    "trak": "track",
    "oder": "order",
    "shiping": "shipping",
    "retun": "return",
    "pament": "payment",
    "produc": "product",
    "producs": "products",
    "recieve": "receive",
    "recieved": "received",
}

CONTEXT_REFERENCE_RE = re.compile(r"\b(it|that|them|those|this|one|ones)\b")

COMPLIMENTS = (
    "you are the best", "you guys are the best", "you're the best",
    "you are amazing", "you're amazing", "you are awesome", "you're awesome",
    "you are great", "you're great", "you are wonderful", "you're wonderful",
    "love you", "love your", "thank you so much", "thanks so much",
    "appreciate you", "appreciate it", "you rock",
    "best service", "great service", "excellent service", "amazing service",
    "well done", "good job", "nice work", "keep it up",
    "so helpful", "very helpful", "really helpful", "extremely helpful",
)

GREETING_RE = re.compile(
    r"^(hi|hello|hey|howdy|greetings|sup|what's up|good (morning|afternoon|evening))\b"
)

POLICY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Shipping Policy": (
        "shipping cost", "shipping price", "shipping fee", "shipping policy",
        "delivery cost", "delivery price", "delivery fee", "delivery policy",
        "how much shipping", "how much delivery", "free shipping",
        "shipping information", "shipping details",
    ),
    "Return Policy": (
        "return policy", "return item", "how to return", "can i return",
        "return process", "return information", "return details",
    ),
    "Refund Policy": (
        "refund policy", "how to refund", "can i get refund", "refund process",
        "refund information", "refund details", "money back",
    ),
    "Payment Policy": (
        "payment method", "payment options", "how to pay", "payment policy",
        "payment information", "payment details", "accepted payment",
    ),
    "Privacy Policy": ("privacy policy", "privacy information", "data privacy"),
    "Terms of Service": ("terms of service", "terms and conditions", "terms of use"),
}

ADD_TO_CART_KEYWORDS = (
    "add to cart", "add it to cart", "add to my cart", "add this to cart",
    "put in cart", "put it in cart", "add to basket", "add it to basket",
    "add to shopping cart", "add to bag", "add it to bag", "add to my bag",
)

ORDER_EDIT_KEYWORDS = (
    "add to order", "add to my order", "add to existing order",
    "modify order", "change my order", "edit order", "update order", "can i add",
)

ORDER_STATUS_KEYWORDS = (
    "track order", "order status", "where is my order", "tracking",
    "order number", "track my package", "delivery status", "shipment status",
)

STORE_INFO_KEYWORDS = (
    "store name", "what is your store", "who are you", "what store",
    "business name", "company name", "shop name", "about your store",
)

PRODUCT_ASK_KEYWORDS = (
    "show me", "looking for", "need a", "want to buy", "shopping for",
    "find", "search for", "do you have", "do you sell", "available",
    "tell me about", "which", "what products",
)

PRODUCT_CATEGORIES = (
    "clothing", "clothes", "apparel", "fashion", "shirt", "dress", "shoes",
    "electronics", "phone", "laptop", "furniture", "kitchen", "sofa", "chair",
    "beauty", "skincare", "makeup", "sport", "outdoor", "fitness",
)

GENERIC_NOUNS = frozenset(
    {"item", "items", "product", "products", "stuff", "thing", "things", "goods", "inventory"}
)


def _word_re(words: tuple[str, ...]) -> re.Pattern[str]:
    return re.compile(r"\b(" + "|".join(re.escape(w) for w in words) + r")\b")


PRICE_RE = _word_re((
    "cheap", "cheapest", "expensive", "cost", "price", "budget", "under", "below",
    "above", "over", "affordable", "lowest", "highest",
))
PREMIUM_RE = _word_re(("expensive", "premium", "luxury", "highest"))
BEST_SELLER_RE = _word_re((
    "best seller", "best sellers", "bestseller", "bestsellers", "best selling",
    "popular", "top selling", "most bought", "most sold", "trending", "top products",
    "customer favorites", "fan favorites", "top picks",
))
NEW_ARRIVALS_RE = _word_re((
    "new arrival", "new arrivals", "new product", "new products", "latest", "newest",
    "just arrived", "recently added", "what's new",
))

GREETING_REPLIES = (
    "Hello! How can I help you today?",
    "Hi there! What can I help you find?",
    "Hey! I'm here to help. What are you looking for?",
    "Welcome! How can I assist you today?",
)

COMPLIMENT_REPLIES = (
    "Thank you so much! We really appreciate your kind words and are happy to help!",
    "That means a lot to us! Thank you for the wonderful feedback!",
    "You're so kind! We're here to make your shopping experience the best it can be!",
)

ADD_TO_CART_REPLY = (
    "I can't add items to your cart directly. To add an item:\n\n"
    "1. **Open the product** you're interested in\n"
    "2. **Select your options** (size, color, quantity) if there are any\n"
    "3. **Click 'Add to Cart'** on the product page\n\n"
    "If you need help finding a product, just ask!"
)

NO_PRODUCTS_REPLY = "I don't have any products to show you right now. Please check back later!"


# ============================================================================
# Classification
# ============================================================================


def normalize_typos(message: str) -> str:
    """Lowercase the message and fix common misspellings."""
    normalized = message.lower().strip()
    for typo, correct in TYPOS.items():
        normalized = re.sub(rf"\b{typo}\b", correct, normalized)
    return normalized


def policy_type(message: str) -> str | None:
    """Name of the policy the message asks about, if any."""
    for name, keywords in POLICY_KEYWORDS.items():
        if any(k in message for k in keywords):
            return name
    return None


def classify_intent(message: str) -> Intent:
    """Classify a normalized message. Earlier checks win."""
    if any(c in message for c in COMPLIMENTS):
        return Intent.COMPLIMENT
    if GREETING_RE.match(message):
        return Intent.GREETING
    if policy_type(message):
        return Intent.POLICY_QUERY
    if any(k in message for k in ADD_TO_CART_KEYWORDS):
        return Intent.ADD_TO_CART
    if any(k in message for k in ORDER_EDIT_KEYWORDS):
        return Intent.ORDER_EDIT
    if any(k in message for k in ORDER_STATUS_KEYWORDS):
        return Intent.ORDER_STATUS
    if any(k in message for k in STORE_INFO_KEYWORDS):
        return Intent.STORE_INFO
    if (
        any(k in message for k in PRODUCT_ASK_KEYWORDS)
        or any(c in message for c in PRODUCT_CATEGORIES)
        or GENERIC_NOUNS.intersection(re.findall(r"\w+", message))
        or BEST_SELLER_RE.search(message)
        or NEW_ARRIVALS_RE.search(message)
    ):
        return Intent.PRODUCT_QUERY
    return Intent.GENERAL_INQUIRY


def store_name(shop: str) -> str:
    """Readable store name from a myshopify domain."""
    return shop.removesuffix(".myshopify.com").replace("-", " ").title()


def product_list_reply(heading: str, products: tuple[ProductSnapshot, ...], closing: str) -> str:
    lines = [f"{i}. **{p.title}** - ${p.price:.2f}" for i, p in enumerate(products, start=1)]
    return f"{heading}\n\n" + "\n".join(lines) + f"\n\n{closing}"


# ============================================================================
# Router
# ============================================================================


# Answered even when the message refers back to the conversation.
SMALL_TALK = frozenset({Intent.COMPLIMENT, Intent.GREETING})


class KeywordRouter:
    """Serves replies for messages that don't need the model."""

    def __init__(self, catalog: ProductCatalog) -> None:
        self.catalog = catalog

    async def match(self, shop: str, message: str) -> KeywordReply | None:
        """
        Reply for the message, or None when the model should answer.

        Catalogue failures fall through to the model.
        """
        normalized = normalize_typos(message)
        intent = classify_intent(normalized)
        if intent not in SMALL_TALK and CONTEXT_REFERENCE_RE.search(normalized):
            return None

        try:
            reply = await self._reply(shop, normalized, intent)
        except SQLAlchemyError as e:
            logger.warning("keyword_lookup_failed", shop=shop, intent=intent.value, error=str(e))
            return None

        if reply is not None:
            logger.info("keyword_match", shop=shop, intent=intent.value)
        return reply

    async def _reply(self, shop: str, message: str, intent: Intent) -> KeywordReply | None:
        if intent == Intent.COMPLIMENT:
            return KeywordReply(intent.value, random.choice(COMPLIMENT_REPLIES))
        if intent == Intent.GREETING:
            return KeywordReply(intent.value, random.choice(GREETING_REPLIES))
        if intent == Intent.POLICY_QUERY:
            return KeywordReply(intent.value, self._policy_reply(shop, message))
        if intent == Intent.ORDER_STATUS:
            return KeywordReply(intent.value, self._order_status_reply(shop))
        if intent == Intent.ADD_TO_CART:
            return KeywordReply(intent.value, ADD_TO_CART_REPLY)
        if intent == Intent.PRODUCT_QUERY:
            return await self._product_reply(shop, message)
        return None

    async def _product_reply(self, shop: str, message: str) -> KeywordReply | None:
        """Price, best-seller and new-arrival asks; specific lookups go to the model."""
        if PRICE_RE.search(message):
            generic = bool(GENERIC_NOUNS.intersection(re.findall(r"\w+", message)))
            if not generic and await self.catalog.mentions_category(shop, message):
                return None
            premium = bool(PREMIUM_RE.search(message))
            products = await self.catalog.search(
                shop,
                "",
                sort=ProductSort.PRICE_DESC if premium else ProductSort.PRICE_ASC,
                limit=5,
            )
            label = "premium" if premium else "most affordable"
            return self._catalog_reply(
                products,
                f"Here are our {label} products:",
                "Would you like more details about any of these products?",
            )

        if BEST_SELLER_RE.search(message):
            products = await self.catalog.search(
                shop, "", sort=ProductSort.BEST_SELLING, limit=5
            )
            return self._catalog_reply(
                products,
                "Here are our best-selling products:",
                "These are customer favorites! Would you like more details about any of them?",
            )

        if NEW_ARRIVALS_RE.search(message):
            products = await self.catalog.search(shop, "", sort=ProductSort.NEWEST, limit=5)
            return self._catalog_reply(
                products,
                "Here are our newest products:",
                "Would you like more details about any of these?",
            )
        return None

    def _catalog_reply(
        self, products: tuple[ProductSnapshot, ...], heading: str, closing: str
    ) -> KeywordReply:
        if not products:
            return KeywordReply(Intent.PRODUCT_QUERY.value, NO_PRODUCTS_REPLY)
        return KeywordReply(
            Intent.PRODUCT_QUERY.value,
            product_list_reply(heading, products, closing),
            products,
        )

    def _policy_reply(self, shop: str, message: str) -> str:
        # Policy questions never return products.
        name = policy_type(message) or "store policies"
        return (
            f"Great question about our {name.lower()}! {store_name(shop)} is committed to "
            "fair and transparent policies.\n\n"
            f"For the most current {name.lower()} details, please check our website or "
            "contact our support team. Is there anything else I can help you with?"
        )

    def _order_status_reply(self, shop: str) -> str:
        return (
            f"I'd be happy to help you check your order status!\n\n"
            f"**Here's how you can track your order from {store_name(shop)}:**\n\n"
            "1. **Check your email** for the order confirmation with your order number "
            "and tracking link.\n"
            "2. **Visit your account** on our website to see your orders and their status.\n"
            "3. **Use the tracking link** for real-time updates from the carrier.\n"
            "4. **Contact support** with your order number or email if you need more help.\n\n"
            "Is there anything else I can help you with regarding your order?"
        )
