"""
Aggregation layer: source rows → immutable ``FactBundle``.

``AggregationLayer.load(scope, as_of)`` reads users, products, transactions
and bids, groups the raw rows per entity (buyer, seller, category) and only
then validates each group. A malformed record therefore fails the
fact-gathering of the entities it belongs to, is recorded as an
``AggregationFailure`` and logged, and every other entity loads normally.

Only records dated at or before ``as_of`` are considered, so a bundle is a
pure function of stored data and the reference instant. The loader
performs no writes.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from datetime import datetime
from typing import Callable, Iterable, TypeVar

from pydantic import ValidationError

from marketplace_intel.aggregation.facts import (
    AggregationFailure,
    BidFact,
    BuyerActivity,
    DeliveryOutcome,
    DeliveryOutcomes,
    FactBundle,
    PriceHistory,
    PricePoint,
    PurchaseHistory,
    Scope,
)
from marketplace_intel.db.repositories.source_repo import (
    SourceRepository,
    row_to_bid,
    row_to_transaction,
)
from marketplace_intel.models.source import Bid, Transaction
from marketplace_intel.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AggregationError(RuntimeError):
    """Raised when one entity's facts cannot be assembled.

    Attributes:
        entity_kind: ``"buyer"``, ``"seller"`` or ``"category"``.
        entity_id: Identifier of the failing entity.
        record_id: Source record that failed validation, when known.
    """

    def __init__(self, entity_kind: str, entity_id: str, record_id: str | None, detail: str) -> None:
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.record_id = record_id
        super().__init__(
            f"Cannot aggregate {entity_kind} '{entity_id}': record {record_id!r} is malformed ({detail})"
        )


def _validate_rows(
    rows: Iterable[sqlite3.Row],
    parse: Callable[[sqlite3.Row], T],
    id_column: str,
    entity_kind: str,
    entity_id: str,
) -> list[T]:
    parsed: list[T] = []
    for row in rows:
        try:
            parsed.append(parse(row))
        except (ValidationError, ValueError, TypeError) as exc:
            detail = exc.errors()[0]["msg"] if isinstance(exc, ValidationError) else str(exc)
            raise AggregationError(entity_kind, entity_id, row[id_column], detail) from exc
    return parsed


class AggregationLayer:
    """Builds ``FactBundle`` instances from the source tables.

    Args:
        conn: Open connection; only read from.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.repo = SourceRepository(conn)

    def load(self, scope: Scope, as_of: datetime) -> FactBundle:
        as_of = ensure_utc(as_of)

        users = {u.user_id: u for u in self.repo.list_users()}
        products = {p.product_id: p for p in self.repo.list_products()}
        tx_rows = self.repo.fetch_transaction_rows(as_of)
        bid_rows = self.repo.fetch_bid_rows(as_of)

        by_buyer: dict[str, list[sqlite3.Row]] = defaultdict(list)
        by_seller: dict[str, list[sqlite3.Row]] = defaultdict(list)
        by_category: dict[str, list[sqlite3.Row]] = defaultdict(list)
        for row in tx_rows:
            by_buyer[row["buyer_id"]].append(row)
            by_seller[row["seller_id"]].append(row)
            by_category[row["category_name"]].append(row)

        bids_by_buyer: dict[str, list[sqlite3.Row]] = defaultdict(list)
        for row in bid_rows:
            bids_by_buyer[row["buyer_id"]].append(row)

        buyer_ids, seller_ids, categories = self._scoped_keys(
            scope, products, set(by_buyer) | set(bids_by_buyer), set(by_seller), set(by_category)
        )

        failures: list[AggregationFailure] = []
        purchases: dict[tuple[str, str], PurchaseHistory] = {}
        activity: dict[str, BuyerActivity] = {}
        deliveries: dict[str, DeliveryOutcomes] = {}
        prices: dict[str, PriceHistory] = {}

        for buyer_id in sorted(buyer_ids):
            try:
                txs = _validate_rows(by_buyer.get(buyer_id, []), row_to_transaction,
                                     "transaction_id", "buyer", buyer_id)
                bids = _validate_rows(bids_by_buyer.get(buyer_id, []), row_to_bid,
                                      "bid_id", "buyer", buyer_id)
            except AggregationError as exc:
                failures.append(AggregationFailure("buyer", buyer_id, str(exc)))
                logger.warning("Aggregation skipped buyer: %s", exc)
                continue
            categories_of = {b.bid_id: r["category_name"] for b, r in zip(bids, bids_by_buyer.get(buyer_id, []))}
            purchases.update(_purchase_histories(buyer_id, txs))
            activity[buyer_id] = _buyer_activity(buyer_id, txs, bids, categories_of)

        for seller_id in sorted(seller_ids):
            try:
                txs = _validate_rows(by_seller.get(seller_id, []), row_to_transaction,
                                     "transaction_id", "seller", seller_id)
            except AggregationError as exc:
                failures.append(AggregationFailure("seller", seller_id, str(exc)))
                logger.warning("Aggregation skipped seller: %s", exc)
                continue
            outcomes = _delivery_outcomes(seller_id, txs)
            if outcomes.outcomes:
                deliveries[seller_id] = outcomes

        for category in sorted(categories):
            try:
                txs = _validate_rows(by_category.get(category, []), row_to_transaction,
                                     "transaction_id", "category", category)
            except AggregationError as exc:
                failures.append(AggregationFailure("category", category, str(exc)))
                logger.warning("Aggregation skipped category: %s", exc)
                continue
            prices[category] = _price_history(category, txs)

        logger.info(
            "Aggregated facts | as_of=%s | buyers=%d sellers=%d categories=%d failures=%d",
            as_of.isoformat(), len(activity), len(deliveries), len(prices), len(failures),
        )

        return FactBundle(
            as_of=as_of,
            scope=scope,
            users=users,
            products=products,
            purchases=purchases,
            deliveries=deliveries,
            prices=prices,
            activity=activity,
            failures=tuple(failures),
        )

    @staticmethod
    def _scoped_keys(
        scope: Scope,
        products: dict,
        buyer_ids: set[str],
        seller_ids: set[str],
        categories: set[str],
    ) -> tuple[set[str], set[str], set[str]]:
        """Narrow the entity key sets to ``scope``."""
        if scope.buyer_id is not None:
            buyer_ids = buyer_ids & {scope.buyer_id}
        if scope.seller_id is not None:
            seller_ids = seller_ids & {scope.seller_id}
        if scope.product_id is not None:
            product = products.get(scope.product_id)
            if product is None:
                return buyer_ids, set(), set()
            if scope.seller_id is None:
                seller_ids = seller_ids & {product.seller_id}
            categories = categories & ({product.category_name} if product.category_name else set())
        return buyer_ids, seller_ids, categories


# ── Grouping helpers ──────────────────────────────────────────────────────────

def _purchase_histories(buyer_id: str, txs: list[Transaction]) -> dict[tuple[str, str], PurchaseHistory]:
    grouped: dict[str, list[Transaction]] = defaultdict(list)
    for tx in txs:
        grouped[tx.category_name].append(tx)

    result: dict[tuple[str, str], PurchaseHistory] = {}
    for category, items in grouped.items():
        items.sort(key=lambda t: (t.transaction_date, t.transaction_id))
        result[(buyer_id, category)] = PurchaseHistory(
            buyer_id=buyer_id,
            category_name=category,
            dates=tuple(t.transaction_date for t in items),
            quantities=tuple(t.quantity for t in items),
            unit_prices=tuple(t.unit_price for t in items),
            seller_ids=tuple(t.seller_id for t in items),
        )
    return result


def _buyer_activity(
    buyer_id: str,
    txs: list[Transaction],
    bids: list[Bid],
    bid_categories: dict[str, str | None],
) -> BuyerActivity:
    txs = sorted(txs, key=lambda t: (t.transaction_date, t.transaction_id))
    seller_counts: dict[str, int] = defaultdict(int)
    category_counts: dict[str, int] = defaultdict(int)
    for tx in txs:
        seller_counts[tx.seller_id] += 1
        category_counts[tx.category_name] += 1
    return BuyerActivity(
        buyer_id=buyer_id,
        transaction_dates=tuple(t.transaction_date for t in txs),
        order_values=tuple(t.total_value or 0.0 for t in txs),
        seller_counts=dict(seller_counts),
        category_counts=dict(category_counts),
        bids=tuple(
            BidFact(
                product_id=b.product_id,
                category_name=bid_categories.get(b.bid_id),
                status=b.status,
                created_at=b.created_at,
            )
            for b in sorted(bids, key=lambda b: (b.created_at, b.bid_id))
        ),
    )


def _delivery_outcomes(seller_id: str, txs: list[Transaction]) -> DeliveryOutcomes:
    recorded = sorted(
        (t for t in txs if t.has_outcome),
        key=lambda t: (t.transaction_date, t.transaction_id),
    )
    return DeliveryOutcomes(
        seller_id=seller_id,
        outcomes=tuple(
            DeliveryOutcome(
                transaction_id=t.transaction_id,
                category_name=t.category_name,
                transaction_date=t.transaction_date,
                ordered_quantity=t.quantity,
                delivered_quantity=t.delivered_quantity,
                on_time=t.delivered_on_time,
                quality_as_expected=t.quality_as_expected,
                unit_price=t.unit_price,
            )
            for t in recorded
        ),
    )


def _price_history(category: str, txs: list[Transaction]) -> PriceHistory:
    points = sorted(
        (
            PricePoint(at=t.transaction_date, unit_price=t.unit_price, quantity=t.quantity)
            for t in txs
            if t.unit_price is not None and t.unit_price > 0
        ),
        key=lambda p: p.at,
    )
    return PriceHistory(category_name=category, points=tuple(points))
