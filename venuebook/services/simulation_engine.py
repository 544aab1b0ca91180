"""
Simulation Engine - Application Layer

Projects the execution outcome of a hypothetical order against a book
snapshot by walking the opposing side level by level.

MARKET ORDERS:
    - buy consumes asks (lowest first), sell consumes bids (highest first)
    - at each level: fill = min(remaining, level quantity)
    - stop when nothing remains or the side is exhausted
    - slippage = |average fill price - best opposite price|

LIMIT ORDERS:
    - same greedy walk, bounded by the limit price
      (buy: ask <= limit, sell: bid >= limit)
    - the unfilled remainder is positioned in the opposing-side list at the
      first level at or beyond the limit price
    - slippage = |average fill price - limit price| over the crossed portion

SHARED METRICS:
    - market impact = filled / total visible depth on the consumed side * 100
    - time to fill: tiered on the filled fraction and the timing class

The engine is stateless: every call is independent and safe to run
concurrently against any snapshot.
"""

import logging
from decimal import Decimal
from typing import Optional, Sequence, Tuple

from ..models.order_book import OrderBookSnapshot, PriceLevel
from ..models.simulation import (
    HypotheticalOrder,
    InvalidOrder,
    MARKET_ORDER_LEVEL,
    OrderImpactMetrics,
    OrderPlacement,
    OrderPosition,
    OrderSide,
    OrderTiming,
    OrderType,
)


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Time-to-fill estimates for immediate orders, in milliseconds
IMMEDIATE_FAST_FILL_MS = 100
IMMEDIATE_PARTIAL_FILL_MS = 5000
IMMEDIATE_SLOW_FILL_MS = 30000


class SimulationEngine:
    """
    Order-impact simulator.

    Usage:
        engine = SimulationEngine()
        placement = engine.simulate(order, store.get_snapshot("OKX", "BTC-USD"))
        print(placement.impact.average_fill_price)
    """

    def simulate(self, order: HypotheticalOrder, book: OrderBookSnapshot) -> OrderPlacement:
        """
        Simulate placing `order` against `book`.

        Args:
            order: The hypothetical order
            book: Book snapshot to evaluate against

        Returns:
            OrderPlacement with impact metrics and book position

        Raises:
            InvalidOrder: Limit order without a price, or quantity <= 0
        """
        self.validate(order)

        if order.order_type is OrderType.MARKET:
            placement = self._simulate_market(order, book)
        else:
            placement = self._simulate_limit(order, book)

        logger.debug(
            f"Simulated {order.order_type.value} {order.side.value} "
            f"{order.quantity} on {book.venue}:{book.symbol}: "
            f"fill={placement.impact.estimated_fill_percentage}% "
            f"avg={placement.impact.average_fill_price}"
        )
        return placement

    @staticmethod
    def validate(order: HypotheticalOrder) -> None:
        """
        Reject orders that cannot be simulated.

        Raises:
            InvalidOrder: If the order is missing a limit price or has a
                          non-positive quantity
        """
        if order.quantity is None or order.quantity <= 0:
            raise InvalidOrder(f"quantity must be positive, got {order.quantity}")
        if order.order_type is OrderType.LIMIT and order.price is None:
            raise InvalidOrder("limit order requires a price")
        if order.price is not None and order.price <= 0:
            raise InvalidOrder(f"price must be positive, got {order.price}")

    def _simulate_market(self, order: HypotheticalOrder, book: OrderBookSnapshot) -> OrderPlacement:
        levels = self._consumed_levels(order.side, book)

        filled, total_value = self._walk_book(levels, order.quantity)
        average_price = total_value / filled if filled > 0 else ZERO

        # An empty side reports 0 slippage alongside a 0% fill
        best_price = levels[0].price if levels else None
        slippage = abs(average_price - best_price) if best_price is not None else ZERO

        impact = self._build_metrics(order, levels, filled, total_value, average_price, slippage)
        position = OrderPosition(
            level=MARKET_ORDER_LEVEL,
            is_new_level=False,
            price=average_price,
            quantity=filled,
        )
        return OrderPlacement(order=order, impact=impact, position=position)

    def _simulate_limit(self, order: HypotheticalOrder, book: OrderBookSnapshot) -> OrderPlacement:
        levels = self._consumed_levels(order.side, book)
        limit_price = order.price

        filled, total_value = self._walk_book(
            levels, order.quantity, limit_price=limit_price, side=order.side
        )
        # Nothing crossed: report the limit price so slippage reads as 0
        average_price = total_value / filled if filled > 0 else limit_price
        slippage = abs(average_price - limit_price)

        level_index, is_new_level = self._find_insert_position(levels, limit_price, order.side)

        impact = self._build_metrics(order, levels, filled, total_value, average_price, slippage)
        position = OrderPosition(
            level=level_index,
            is_new_level=is_new_level,
            price=limit_price,
            quantity=order.quantity - filled,
        )
        return OrderPlacement(order=order, impact=impact, position=position)

    @staticmethod
    def _consumed_levels(side: OrderSide, book: OrderBookSnapshot) -> Sequence[PriceLevel]:
        """Buy orders consume asks, sell orders consume bids."""
        return book.asks if side is OrderSide.BUY else book.bids

    @staticmethod
    def _walk_book(
        levels: Sequence[PriceLevel],
        quantity: Decimal,
        limit_price: Optional[Decimal] = None,
        side: Optional[OrderSide] = None,
    ) -> Tuple[Decimal, Decimal]:
        """
        Greedily consume levels in best-first order.

        Args:
            levels: Opposing-side levels, best first
            quantity: Requested quantity
            limit_price: If given, stop at the first level beyond this price
            side: Order side, required with limit_price

        Returns:
            Tuple of (filled quantity, total value)
        """
        remaining = quantity
        filled = ZERO
        total_value = ZERO

        for level in levels:
            if remaining <= 0:
                break
            if limit_price is not None:
                if side is OrderSide.BUY and level.price > limit_price:
                    break
                if side is OrderSide.SELL and level.price < limit_price:
                    break

            fill_at_level = min(remaining, level.quantity)
            total_value += fill_at_level * level.price
            filled += fill_at_level
            remaining -= fill_at_level

        return filled, total_value

    @staticmethod
    def _find_insert_position(
        levels: Sequence[PriceLevel],
        limit_price: Decimal,
        side: OrderSide,
    ) -> Tuple[int, bool]:
        """
        Locate the resting position for a limit order in the opposing list.

        Buy: first index with price >= limit. Sell: first index with
        price <= limit. An exact price match reuses that level; no match
        appends after the last level.

        Returns:
            Tuple of (level index, is_new_level)
        """
        for index, level in enumerate(levels):
            if side is OrderSide.BUY:
                reached = level.price >= limit_price
            else:
                reached = level.price <= limit_price
            if reached:
                return index, level.price != limit_price
        return len(levels), True

    def _build_metrics(
        self,
        order: HypotheticalOrder,
        levels: Sequence[PriceLevel],
        filled: Decimal,
        total_value: Decimal,
        average_price: Decimal,
        slippage: Decimal,
    ) -> OrderImpactMetrics:
        return OrderImpactMetrics(
            estimated_fill_percentage=filled / order.quantity * HUNDRED,
            market_impact=self.calculate_market_impact(levels, filled),
            slippage_estimation=slippage,
            total_value=total_value,
            average_fill_price=average_price,
            filled_quantity=filled,
            time_to_fill=self.estimate_time_to_fill(order.timing, filled, order.quantity),
        )

    @staticmethod
    def calculate_market_impact(levels: Sequence[PriceLevel], filled: Decimal) -> Decimal:
        """
        Fraction of visible liquidity the order would remove, in percent.

        The denominator sums every level on the consumed side, not only the
        levels the order reached.
        """
        total_depth = sum((level.quantity for level in levels), ZERO)
        if total_depth == 0:
            return ZERO
        return filled / total_depth * HUNDRED

    @staticmethod
    def estimate_time_to_fill(timing: OrderTiming, filled: Decimal, requested: Decimal) -> int:
        """
        Approximate milliseconds until the order is filled.

        Tiers on the filled fraction:
            >= 90%: 100 ms (immediate) or the timing delay
            >= 50%: 5000 ms (immediate) or 2x the timing delay
            <  50%: 30000 ms (immediate) or 10x the timing delay
        """
        fill_fraction = filled / requested
        immediate = timing is OrderTiming.IMMEDIATE

        if fill_fraction >= Decimal("0.9"):
            return IMMEDIATE_FAST_FILL_MS if immediate else timing.delay_ms
        elif fill_fraction >= Decimal("0.5"):
            return IMMEDIATE_PARTIAL_FILL_MS if immediate else timing.delay_ms * 2
        else:
            return IMMEDIATE_SLOW_FILL_MS if immediate else timing.delay_ms * 10
