"""Product catalog loading and search.

This module loads catalog.json into immutable Product records and provides the
deterministic search helpers used by the cart engine and the recommendation
responder.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from .utils import normalize_text, tokenize

logger = logging.getLogger("chatcart.catalog")

NAME_KEYS = ["name", "title"]
PRICE_KEYS = ["price_cents", "price"]
IMAGE_KEYS = ["image_url", "image"]

# Colloquial product words mapped to a canonical root; the first matching root wins.
QUERY_SYNONYMS: List[Tuple[str, List[str]]] = [
    ("moisturizer", ["moisturizer", "moisturiser", "mosturizer", "moist", "hydrating", "gel", "cream", "lotion"]),
    ("serum", ["serum"]),
    ("sunscreen", ["sunscreen", "spf", "sun block", "sunblock"]),
    ("cleanser", ["cleanser", "face wash", "wash"]),
    ("toner", ["toner"]),
]


@dataclass(frozen=True)
class Product:
    """Immutable catalog entry; prices are integer cents."""
    id: str
    name: str
    price_cents: int
    image_url: Optional[str] = None
    tags: FrozenSet[str] = field(default_factory=frozenset)
    benefits: Tuple[str, ...] = ()
    ingredients: Tuple[str, ...] = ()
    description: str = ""
    variant_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.price_cents < 0:
            raise ValueError(f"price_cents must be >= 0 for {self.name!r}")

    def matches_ref(self, ref: str) -> bool:
        """True when ref names this product by id, variant id, or exact name."""
        if not ref:
            return False
        lowered = ref.strip().lower()
        return lowered in {self.id.lower(), (self.variant_id or "").lower(), self.name.lower()}


@dataclass(frozen=True)
class QueryTerms:
    root: str
    terms: Tuple[str, ...]


@dataclass
class CatalogMeta:
    """Metadata describing the catalog file version for logging."""
    file_name: str
    updated_at: str
    sha256: str


DEFAULT_PRODUCTS: Tuple[Product, ...] = (
    Product(
        id="ceramide-moisture-gel",
        name="5X Ceramide Barrier Repair Moisture Gel",
        price_cents=899,
        image_url="https://images.unsplash.com/photo-1601004890684-d8cbf643f5f2?w=400&q=80",
        tags=frozenset({"ceramide", "moisturizer"}),
        benefits=("Repairs skin barrier", "Soothes redness", "Hydrates"),
        ingredients=("Ceramides", "Hyaluronic Acid", "Centella"),
    ),
    Product(
        id="niacinamide-serum",
        name="10% Niacinamide Brightening Serum",
        price_cents=1099,
        image_url="https://images.unsplash.com/photo-1585386959984-a4155223168f?w=400&q=80",
        tags=frozenset({"niacinamide", "serum"}),
        benefits=("Brightens", "Evens tone", "Minimizes pores"),
        ingredients=("Niacinamide", "Zinc"),
    ),
    Product(
        id="ceramide-serum",
        name="5X Ceramide Barrier Repair Serum",
        price_cents=1299,
        image_url="https://images.unsplash.com/photo-1505575972945-28021aaeea3b?w=400&q=80",
        tags=frozenset({"ceramide", "serum"}),
        benefits=("Strengthens barrier", "Smooths texture"),
        ingredients=("Ceramides", "Marine Collagen"),
    ),
)


class Catalog:
    """Ordered, read-only product list with substring and synonym search."""

    def __init__(self, products: Sequence[Product]) -> None:
        self._products: Tuple[Product, ...] = tuple(products)

    @property
    def products(self) -> Tuple[Product, ...]:
        return self._products

    def __len__(self) -> int:
        return len(self._products)

    def get(self, ref: Optional[str]) -> Optional[Product]:
        """Return the product whose id, variant id or exact name equals ref."""
        if not ref:
            return None
        for product in self._products:
            if product.matches_ref(ref):
                return product
        return None

    def search(self, query: str, limit: int = 6) -> List[Product]:
        """Purpose: Rank catalog products against a raw query string.
        Inputs/Outputs: Inputs are the query and a positive limit; output is at most
            `limit` products.
        Side Effects / State: None.
        Dependencies: Uses Product.name and Product.tags only.
        Failure Modes: Empty or blank query returns an empty list, never the full
            catalog; limit <= 0 raises ValueError.
        If Removed: add/edit/delete cannot resolve products from free text.
        Testing Notes: Products whose name contains the query come first. A tag
            matches when the tag appears inside the query ("serum" matches
            "ceramide serum please"), not the reverse. Tag matches keep catalog
            order.
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        q = (query or "").strip().lower()
        if not q:
            return []
        name_hits: List[Product] = []
        tag_hits: List[Product] = []
        for product in self._products:
            if q in product.name.lower():
                name_hits.append(product)
                continue
            if any(tag and tag.lower() in q for tag in product.tags):
                tag_hits.append(product)
        ranked = name_hits + tag_hits
        return ranked[:limit]

    def resolve(self, query: Optional[str]) -> Optional[Product]:
        """Best single match for a product reference or free-text query."""
        if not query:
            return None
        exact = self.get(query)
        if exact:
            return exact
        results = self.search(query, limit=5)
        return results[0] if results else None

    def search_normalized(self, query: str, limit: int = 6) -> List[Product]:
        """Purpose: Synonym-aware search over titles, tags, and descriptive fields.
        Inputs/Outputs: Inputs are query and limit; output is a ranked product list.
        Side Effects / State: None.
        Dependencies: Uses normalize_query and _product_blob.
        Failure Modes: Empty query returns an empty list.
        If Removed: Recommendations only match literal tag/name substrings, so
            "lotion" or "face wash" find nothing.
        Testing Notes: "any good cream?" should return moisturizer-tagged products.
        """
        terms = normalize_query(query)
        if not terms.terms:
            return []
        scored: List[Tuple[float, int, Product]] = []
        for index, product in enumerate(self._products):
            blob = _product_blob(product)
            tags = {tag.lower() for tag in product.tags}
            score = 0.0
            if terms.root in tags:
                score += 2.0
            for term in terms.terms:
                if term in tags:
                    score += 1.0
                elif term in blob:
                    score += 0.5
            if score > 0:
                scored.append((-score, index, product))
        scored.sort(key=lambda entry: (entry[0], entry[1]))
        return [product for _, _, product in scored[:limit]]


def normalize_query(text: str) -> QueryTerms:
    """Purpose: Map colloquial product words to a canonical root and term set.
    Inputs/Outputs: Input is raw query text; output is QueryTerms(root, terms).
    Side Effects / State: None.
    Dependencies: Uses QUERY_SYNONYMS and normalize_text.
    Failure Modes: Unmatched input falls back to plain tokens of three or more
        characters with the first token as root; empty input yields no terms.
    If Removed: Synonym search cannot expand "lotion" to moisturizer products.
    Testing Notes: "need a lotion" -> root "moisturizer"; "vitamin c" -> ("vitamin",).
    """
    q = normalize_text(text)
    for root, words in QUERY_SYNONYMS:
        if any(word in q for word in words):
            return QueryTerms(root=root, terms=tuple(words))
    # One- and two-letter tokens ("c", "no") match almost any product blob.
    tokens = tuple(token for token in tokenize(q) if len(token) >= 3)
    return QueryTerms(root=tokens[0] if tokens else q, terms=tokens)


def _product_blob(product: Product) -> str:
    parts = [product.name, product.description, *product.tags, *product.benefits, *product.ingredients]
    return normalize_text(" ".join(part for part in parts if part))


def load_catalog(path: Path) -> Tuple[Catalog, Optional[CatalogMeta]]:
    """Purpose: Load and normalize catalog data from a JSON resource file.
    Inputs/Outputs: Input is the file path; returns the Catalog and its metadata
        (None when the built-in defaults were used).
    Side Effects / State: Reads the file and computes its hash/mtime.
    Dependencies: Uses json, hashlib, and _product_from_dict.
    Failure Modes: A missing file falls back to DEFAULT_PRODUCTS with a warning;
        malformed JSON or invalid prices raise to the caller at startup.
    If Removed: The app can only ever serve the built-in demo products.
    Testing Notes: Load a temp file with both list and {"products": [...]} shapes.
    """
    if not path.exists():
        logger.warning("Catalog file %s not found; using built-in products", path)
        return Catalog(DEFAULT_PRODUCTS), None

    raw_bytes = path.read_bytes()
    data = json.loads(raw_bytes.decode("utf-8-sig"))
    if isinstance(data, dict):
        records = data.get("products", [])
    elif isinstance(data, list):
        records = data
    else:
        records = []

    products = [_product_from_dict(record) for record in records if isinstance(record, dict)]
    meta = CatalogMeta(
        file_name=path.name,
        updated_at=datetime.fromtimestamp(path.stat().st_mtime).isoformat(),
        sha256=hashlib.sha256(raw_bytes).hexdigest(),
    )
    logger.info("Loaded %d products from %s (sha256=%s)", len(products), meta.file_name, meta.sha256[:12])
    return Catalog(products), meta


def _product_from_dict(record: Dict[str, Any]) -> Product:
    # Accept "price" in major units as well as "price_cents".
    name = str(_first_value(record, NAME_KEYS) or "").strip()
    if "price_cents" in record:
        price_cents = int(record["price_cents"])
    else:
        price_cents = int(round(float(_first_value(record, PRICE_KEYS) or 0) * 100))
    product_id = str(record.get("id") or _slugify(name))
    return Product(
        id=product_id,
        name=name,
        price_cents=price_cents,
        image_url=_first_value(record, IMAGE_KEYS),
        tags=frozenset(str(tag).lower() for tag in record.get("tags") or []),
        benefits=tuple(str(item) for item in record.get("benefits") or []),
        ingredients=tuple(str(item) for item in record.get("ingredients") or []),
        description=str(record.get("description") or ""),
        variant_id=record.get("variant_id"),
    )


def _first_value(record: Dict[str, Any], keys: List[str]) -> Optional[Any]:
    for key in keys:
        value = record.get(key)
        if value is not None and not (isinstance(value, str) and not value.strip()):
            return value
    return None


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
