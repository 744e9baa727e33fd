"""
Price Tracking Module
=====================

Appends price observations to the ledger and drives the per-source sale
state machine:

    no sale --(discounted)--> active --(discounted)--> active (updated in place)
                                     --(full price / end_at passed)--> inactive

At most one sale per product source is active at a time. The check runs
before every insert, and the partial unique index on product_sales
catches concurrent writers that pass the check together.

SalePredictor is read-only: it summarizes the ledger by calendar month.
"""

from __future__ import annotations

import logging
import statistics
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from asp_catalog.core.enums import SaleTransition
from asp_catalog.core.schema import ProductSale, SalePrediction, SaleStats
from asp_catalog.db.models import _utc_now
from asp_catalog.db.repositories import (
    PriceHistoryRepository,
    ProductSaleRepository,
    ProductSourceRepository,
)

logger = logging.getLogger(__name__)


def derive_discount_percent(price: int, sale_price: int) -> int:
    """Discount of sale_price against price, in whole percent."""
    if price <= 0:
        return 0
    return round((1 - sale_price / price) * 100)


@dataclass
class ObservationResult:
    """Result of recording one price observation."""

    history_id: str
    transition: SaleTransition
    sale_id: str | None = None


class PriceTracker:
    """Records price observations and maintains sale periods."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.history = PriceHistoryRepository(session)
        self.sales = ProductSaleRepository(session)

    def record_price_observation(
        self,
        product_source_id: str,
        price: int,
        sale_price: int | None = None,
        discount_percent: int | None = None,
        observed_at: datetime | None = None,
        end_at: datetime | None = None,
    ) -> ObservationResult:
        """
        Append an observation and apply the sale transition it implies.

        Args:
            product_source_id: Product source being observed
            price: Regular price
            sale_price: Current sale price, if the source shows one
            discount_percent: Discount as reported by the source
            observed_at: Observation time (defaults to now, naive UTC)
            end_at: Sale end announced by the source

        Returns:
            ObservationResult with the ledger row id and the transition
        """
        observed_at = observed_at or _utc_now()

        if sale_price is None and discount_percent and price > 0:
            sale_price = round(price * (100 - discount_percent) / 100)
        if sale_price is not None and sale_price < price and not discount_percent:
            discount_percent = derive_discount_percent(price, sale_price)

        discounted = (
            sale_price is not None
            and sale_price < price
            and (discount_percent or 0) > 0
            and (end_at is None or end_at >= observed_at)
        )

        entry = self.history.append(
            product_source_id,
            price=price,
            sale_price=sale_price,
            discount_percent=discount_percent if sale_price is not None else None,
            recorded_at=observed_at,
        )

        transition = SaleTransition.NONE
        active = self.sales.get_active(product_source_id)

        if active is not None and active.end_at is not None and active.end_at < observed_at:
            self.sales.deactivate(active.id)
            logger.info(f"Sale {active.id} on {product_source_id} expired at {active.end_at}")
            active = None
            transition = SaleTransition.ENDED

        if not discounted:
            if active is not None:
                self.sales.deactivate(active.id, end_at=observed_at)
                logger.info(f"Sale {active.id} on {product_source_id} ended")
                return ObservationResult(entry.id, SaleTransition.ENDED, active.id)
            return ObservationResult(entry.id, transition)

        if active is not None:
            return self._update_sale(entry.id, active, price, sale_price, discount_percent, observed_at, end_at)

        try:
            with self.session.begin_nested():
                sale = self.sales.create_active(
                    product_source_id,
                    regular_price=price,
                    sale_price=sale_price,
                    discount_percent=discount_percent,
                    start_at=observed_at,
                    end_at=end_at,
                )
        except IntegrityError:
            winner = self.sales.get_active(product_source_id)
            if winner is None:
                raise
            logger.debug(f"Concurrent sale insert on {product_source_id}; updating {winner.id}")
            return self._update_sale(entry.id, winner, price, sale_price, discount_percent, observed_at, end_at)

        logger.info(f"Sale started on {product_source_id}: {price} -> {sale_price} ({discount_percent}%)")
        return ObservationResult(entry.id, SaleTransition.STARTED, sale.id)

    def _update_sale(
        self,
        history_id: str,
        active: ProductSale,
        price: int,
        sale_price: int,
        discount_percent: int | None,
        observed_at: datetime,
        end_at: datetime | None,
    ) -> ObservationResult:
        changed = (
            active.sale_price != sale_price
            or active.regular_price != price
            or active.discount_percent != discount_percent
            or (end_at is not None and active.end_at != end_at)
        )
        self.sales.update_active(
            active.id,
            fetched_at=observed_at,
            regular_price=price,
            sale_price=sale_price,
            discount_percent=discount_percent,
            end_at=end_at,
        )
        transition = SaleTransition.UPDATED if changed else SaleTransition.UNCHANGED
        return ObservationResult(history_id, transition, active.id)

    def get_active_sale(self, product_source_id: str) -> ProductSale | None:
        """Get the active sale for a product source."""
        return self.sales.get_active(product_source_id)

    def deactivate_expired_sales(self, now: datetime | None = None, dry_run: bool = False) -> int:
        """
        Deactivate every active sale whose end_at has passed.

        Returns:
            Number of sales deactivated (or that would be, in a dry run)
        """
        now = now or _utc_now()
        if dry_run:
            return self.sales.count_expired(now)
        count = self.sales.deactivate_expired(now)
        if count:
            logger.info(f"Deactivated {count} expired sales")
        return count

    def sale_stats(self, asp_name: str | None = None) -> SaleStats:
        """Active sale counts and average discount per ASP."""
        return self.sales.sale_stats(asp_name)


class SalePredictor:
    """
    Seasonal sale statistics over the price ledger.

    A month's sale rate is the share of observed years in which that
    month had at least one discounted observation. The probability of a
    sale within a window combines the rates of every month it touches:
    1 - prod(1 - rate).
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.history = PriceHistoryRepository(session)
        self.sales = ProductSaleRepository(session)
        self.sources = ProductSourceRepository(session)

    def predict(self, product_source_id: str, now: datetime | None = None) -> SalePrediction:
        """Predict sales for one product source."""
        return self._predict([product_source_id], now or _utc_now())

    def predict_for_product(self, product_id: str, now: datetime | None = None) -> SalePrediction:
        """Predict sales for a product across all of its sources."""
        source_ids = [s.id for s in self.sources.list_for_product(product_id)]
        return self._predict(source_ids, now or _utc_now())

    def _predict(self, source_ids: list[str], now: datetime) -> SalePrediction:
        observations = self.history.list_for_sources(source_ids)
        sales = self.sales.list_for_sources(source_ids)

        years_observed: dict[int, set[int]] = defaultdict(set)
        years_on_sale: dict[int, set[int]] = defaultdict(set)
        discounts: list[int] = []

        for obs in observations:
            month = obs.recorded_at.month
            years_observed[month].add(obs.recorded_at.year)
            if obs.is_discounted:
                years_on_sale[month].add(obs.recorded_at.year)
                if obs.discount_percent is not None:
                    discounts.append(obs.discount_percent)
                elif obs.sale_price is not None:
                    discounts.append(derive_discount_percent(obs.price, obs.sale_price))

        rates = {
            month: round(len(years_on_sale[month]) / len(years), 4)
            for month, years in sorted(years_observed.items())
        }

        durations = [s.duration_days for s in sales if s.duration_days is not None]

        return SalePrediction(
            probability_30_days=_window_probability(rates, now, 30),
            probability_90_days=_window_probability(rates, now, 90),
            typical_discount_percent=round(statistics.median(discounts)) if discounts else None,
            next_likely_sale_month=_next_likely_month(rates, now),
            monthly_sale_rate=rates,
            historical_sale_dates=[s.start_at for s in sales],
            average_sale_duration_days=round(statistics.mean(durations), 1) if durations else None,
            total_historical_sales=len(sales),
            observation_count=len(observations),
        )


def _months_in_window(now: datetime, days: int) -> list[int]:
    """Calendar months touched by [now, now + days]."""
    end = now + timedelta(days=days)
    months = []
    year, month = now.year, now.month
    while (year, month) <= (end.year, end.month):
        months.append(month)
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


def _window_probability(rates: dict[int, float], now: datetime, days: int) -> float:
    no_sale = 1.0
    for month in _months_in_window(now, days):
        no_sale *= 1 - rates.get(month, 0.0)
    return round(min(max(1 - no_sale, 0.0), 1.0), 4)


def _next_likely_month(rates: dict[int, float], now: datetime) -> str | None:
    """The month within the next year with the highest sale rate (earliest on ties)."""
    best: tuple[float, str] | None = None
    year, month = now.year, now.month
    for _ in range(12):
        rate = rates.get(month, 0.0)
        if rate > 0 and (best is None or rate > best[0]):
            best = (rate, f"{year:04d}-{month:02d}")
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return best[1] if best else None
