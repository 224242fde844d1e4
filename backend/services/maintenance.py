"""
Maintenance Service

Hand-run repairs against the activity tables. Categories are re-derived
from fresh Gamma tags and duplicate ``open`` records are demoted.
Copy positions left open after a missed whale SELL get closed as well.
"""

import asyncio
from typing import Optional

import httpx
from sqlalchemy import or_, select

from models import PolymarketMarket, TradeMetadata
from models.database import (
    ActivityRecord,
    ActivityStatus,
    ActivityType,
    AsyncSessionLocal,
    CopyPositionStatus,
    CopyTradePosition,
)
from services.category import OTHER, classify_market
from services.copy_trader import CopyTradeSimulator, copy_trade_simulator
from services.polymarket import polymarket_client
from services.position_tracker import PositionTracker, position_tracker
from utils.logger import get_logger

logger = get_logger("maintenance")


class MaintenanceService:
    def __init__(
        self,
        client=None,
        tracker: Optional[PositionTracker] = None,
        simulator: Optional[CopyTradeSimulator] = None,
    ):
        self.client = client or polymarket_client
        self.tracker = tracker or position_tracker
        self.simulator = simulator or copy_trade_simulator

    # ==================== CATEGORIES ====================

    async def _fetch_tags(self, slug: str) -> tuple[str, Optional[list[str]], Optional[str]]:
        """Returns (slug, tags, question); tags is None when the lookup failed."""
        try:
            raw = await self.client.get_market_by_slug(slug, include_tag=True)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Tag lookup failed", slug=slug, error=str(exc))
            return slug, None, None
        if raw is None:
            return slug, [], None
        market = PolymarketMarket.from_gamma_response(raw)
        return slug, market.tags, market.question or None

    async def recategorize_activities(
        self,
        missing_only: bool = True,
        dry_run: bool = False,
        batch_size: int = 10,
    ) -> dict:
        """Recompute ``category`` for activity records from their market's current tags.

        With ``missing_only`` only records without a category (or with
        ``other``) are touched. Slugs are looked up ``batch_size`` at a time.
        """
        async with AsyncSessionLocal() as session:
            query = select(ActivityRecord).where(ActivityRecord.meta.isnot(None))
            if missing_only:
                query = query.where(or_(ActivityRecord.category.is_(None), ActivityRecord.category == OTHER))
            records = list((await session.execute(query)).scalars().all())

            by_slug: dict[str, list[ActivityRecord]] = {}
            for record in records:
                slug = record.metadata_model.slug
                if slug:
                    by_slug.setdefault(slug, []).append(record)

            stats = {
                "scanned": len(records),
                "slugs": len(by_slug),
                "updated": 0,
                "unchanged": 0,
                "failed": 0,
                "dry_run": dry_run,
            }
            slugs = list(by_slug)
            for start in range(0, len(slugs), max(1, batch_size)):
                batch = slugs[start:start + batch_size]
                lookups = await asyncio.gather(*(self._fetch_tags(slug) for slug in batch))
                for slug, tags, question in lookups:
                    if tags is None:
                        stats["failed"] += len(by_slug[slug])
                        continue
                    for record in by_slug[slug]:
                        meta: TradeMetadata = record.metadata_model
                        category = classify_market(tags or meta.tags, question or meta.market, slug)
                        if category == record.category:
                            stats["unchanged"] += 1
                            continue
                        stats["updated"] += 1
                        logger.debug(
                            "Recategorized activity",
                            activity_id=record.id,
                            slug=slug,
                            old=record.category,
                            new=category,
                        )
                        if not dry_run:
                            record.category = category
                            if tags:
                                meta.tags = list(tags)
                                record.metadata_model = meta

            if dry_run:
                await session.rollback()
            else:
                await session.commit()

        logger.info("Activity recategorization finished", **stats)
        return stats

    # ==================== POSITIONS ====================

    async def reconcile_open_positions(self) -> dict:
        async with AsyncSessionLocal() as session:
            demoted = await self.tracker.reconcile_open_duplicates(session)
            await session.commit()
        return {"demoted": demoted}

    async def _closing_sell(self, session, position: CopyTradePosition) -> Optional[ActivityRecord]:
        result = await session.execute(
            select(ActivityRecord)
            .where(
                ActivityRecord.wallet_id == position.wallet_id,
                ActivityRecord.condition_id == position.condition_id,
                ActivityRecord.outcome_index == position.outcome_index,
                ActivityRecord.activity_type == ActivityType.SELL,
                ActivityRecord.status == ActivityStatus.CLOSED,
                ActivityRecord.is_orphan.is_(False),
                ActivityRecord.activity_timestamp >= position.entry_date,
            )
            .order_by(ActivityRecord.activity_timestamp.asc())
            .limit(1)
        )
        return result.scalars().first()

    async def reconcile_closed_copy_positions(self) -> dict:
        """Fully close untouched copy positions whose originating BUY is already closed.

        Positions are processed oldest-first and priced at the first
        non-orphan SELL for the key after the position's entry.
        """
        closed = 0
        skipped = 0
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(CopyTradePosition)
                .join(ActivityRecord, ActivityRecord.id == CopyTradePosition.activity_id)
                .where(
                    CopyTradePosition.status == CopyPositionStatus.OPEN,
                    ActivityRecord.status == ActivityStatus.CLOSED,
                )
                .order_by(CopyTradePosition.entry_date.asc(), CopyTradePosition.created_at.asc())
            )
            positions = list(result.scalars().all())

            for position in positions:
                async with self.tracker.lock_for(position.wallet_id):
                    sell = await self._closing_sell(session, position)
                    if sell is None or sell.price is None:
                        skipped += 1
                        logger.warning(
                            "No SELL found for closed copy position",
                            position_id=position.id,
                            wallet_id=position.wallet_id,
                            condition_id=position.condition_id,
                        )
                        continue
                    self.simulator.close_position_fully(position, sell)
                    closed += 1

            await session.commit()

        logger.info("Copy position reconciliation finished", closed=closed, skipped=skipped)
        return {"closed": closed, "skipped": skipped}


maintenance_service = MaintenanceService()
