"""
Product Catalog - Product lookup behind the recommend_products tool and keyword replies.

Searches the local products table by keyword; ranking is a simple term
match score.
"""

import re

from sqlalchemy import Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from shopchat.db.models import Product
from shopchat.models.api import ProductSort
from shopchat.models.domain import ProductSnapshot

logger = get_logger(__name__)

BEST_SELLING_QUERIES = frozenset({"", "best selling", "best sellers", "bestseller", "popular"})
CANDIDATE_POOL = 50
CATEGORY_SAMPLE_SIZE = 100
TERM_RE = re.compile(r"[\w-]+")


def tokenize(query: str) -> list[str]:
    """Lowercased search terms of at least two characters."""
    return [t for t in TERM_RE.findall(query.lower()) if len(t) > 1]


def score_product(product: Product, terms: list[str]) -> float:
    """Fraction of weighted term hits; title hits count double."""
    if not terms:
        return 0.0
    title = product.title.lower()
    handle = (product.handle or "").lower()
    product_type = (product.product_type or "").lower()
    tags = {t.lower() for t in product.tags or []}

    hits = 0.0
    for term in terms:
        if term in title:
            hits += 2
        if term in handle or term in product_type:
            hits += 1
        if term in tags:
            hits += 1
    return round(hits / (4 * len(terms)), 4)


class ProductCatalog:
    """Keyword product search over the shop's catalogue."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def search(
        self,
        shop: str,
        query: str,
        min_price: float | None = None,
        max_price: float | None = None,
        sort: ProductSort = ProductSort.RELEVANCE,
        limit: int = 6,
    ) -> tuple[ProductSnapshot, ...]:
        """Products matching the query, filtered by price and sorted."""
        normalized = query.strip().lower()
        terms = [] if normalized in BEST_SELLING_QUERIES else tokenize(normalized)
        if not terms and sort == ProductSort.RELEVANCE:
            sort = ProductSort.BEST_SELLING

        stmt = select(Product).where(Product.shop == shop)
        if min_price is not None:
            stmt = stmt.where(Product.price >= min_price)
        if max_price is not None:
            stmt = stmt.where(Product.price <= max_price)
        if terms:
            stmt = stmt.where(or_(*[self._term_clause(t) for t in terms]))
        stmt = self._apply_sort(stmt, sort).limit(CANDIDATE_POOL if terms else limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            products = list(result.scalars().all())

        scored = [(p, score_product(p, terms)) for p in products]
        if sort == ProductSort.RELEVANCE:
            scored.sort(key=lambda pair: pair[1], reverse=True)

        logger.debug("catalog_search", shop=shop, query=query, sort=sort.value, hits=len(scored))
        return tuple(
            ProductSnapshot(
                product_id=p.product_id,
                title=p.title,
                price=p.price,
                handle=p.handle,
                image=p.image or "",
                score=score,
            )
            for p, score in scored[:limit]
        )

    async def mentions_category(self, shop: str, message: str) -> bool:
        """True when the message names a tag, product type or title word of this shop."""
        stmt = (
            select(Product.tags, Product.product_type, Product.title)
            .where(Product.shop == shop)
            .limit(CATEGORY_SAMPLE_SIZE)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        terms: set[str] = set()
        for tags, product_type, title in rows:
            terms.update(t.lower() for t in tags or [] if len(t) > 2)
            if product_type and len(product_type) > 2:
                terms.add(product_type.lower())
            terms.update(w for w in title.lower().split() if 4 < len(w) < 20)

        lowered = message.lower()
        return any(term in lowered for term in terms)

    def _term_clause(self, term: str):
        pattern = f"%{term}%"
        return or_(
            Product.title.ilike(pattern),
            Product.handle.ilike(pattern),
            Product.product_type.ilike(pattern),
            Product.tags.any(term),
        )

    def _apply_sort(self, stmt: Select, sort: ProductSort) -> Select:
        if sort == ProductSort.PRICE_ASC:
            return stmt.order_by(Product.price.asc())
        if sort == ProductSort.PRICE_DESC:
            return stmt.order_by(Product.price.desc())
        if sort == ProductSort.NEWEST:
            return stmt.order_by(Product.created_at.desc())
        if sort == ProductSort.BEST_SELLING:
            return stmt.order_by(Product.sales_rank.asc().nulls_last(), Product.title)
        return stmt.order_by(func.length(Product.title))
