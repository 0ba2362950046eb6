"""Snapshot replay for offline opportunity detection."""

import pandas as pd
from typing import Dict, Iterator, List, Any, Optional, Tuple
from loguru import logger

from flasharb.config import Config
from flasharb.core.detector import OpportunityDetector
from flasharb.core.types import Opportunity, Pair, VenueQuote


class SnapshotReplay:
    """Replays recorded snapshots through the detector, cycle by cycle."""

    def __init__(self, config: Config):
        self.config = config
        self.quotes_df: Optional[pd.DataFrame] = None

    def load_parquet(self, parquet_file: str):
        """Load recorded quotes from parquet file."""
        try:
            self.quotes_df = pd.read_parquet(parquet_file)
            self.quotes_df = self.quotes_df.sort_values(['cycle', 'ts_ns', 'venue']).reset_index(drop=True)

            logger.info(f"Loaded {len(self.quotes_df)} quotes from {parquet_file}")
            if len(self.quotes_df):
                logger.info(
                    f"Time range: {pd.to_datetime(self.quotes_df['ts_ns'].min(), unit='ns')} "
                    f"to {pd.to_datetime(self.quotes_df['ts_ns'].max(), unit='ns')}"
                )

        except Exception as e:
            logger.error(f"Failed to load parquet file: {e}")
            raise

    def snapshots(self) -> Iterator[Tuple[int, Dict[Pair, List[VenueQuote]]]]:
        """Yield ``(cycle, snapshot)`` in recording order."""
        if self.quotes_df is None:
            return
        for cycle, group in self.quotes_df.groupby('cycle', sort=True):
            snapshot: Dict[Pair, List[VenueQuote]] = {}
            for row in group.to_dict('records'):
                pair = Pair(row['token_a'], row['token_b'])
                snapshot.setdefault(pair, []).append(VenueQuote(
                    venue=row['venue'],
                    pair=pair,
                    price=float(row['price']),
                    liquidity_a=float(row['liquidity_a']),
                    liquidity_b=float(row['liquidity_b']),
                    fee_bps=float(row['fee_bps']),
                    observed_at_ms=int(row['observed_at_ms']),
                    impact_coefficient=float(row.get('impact_coefficient', 1.0)),
                ))
            yield int(cycle), snapshot

    def run(self, gas_price_gwei: Optional[float] = None) -> Dict[str, Any]:
        """Run detection over every recorded cycle and summarize the results."""
        detector = OpportunityDetector(self.config)
        cycles = 0
        found: List[Opportunity] = []
        by_pair: Dict[str, Dict[str, float]] = {}

        for cycle, snapshot in self.snapshots():
            cycles += 1
            for opportunity in detector.find_opportunities(snapshot, gas_price_gwei):
                found.append(opportunity)
                stats = by_pair.setdefault(opportunity.pair.key, {"count": 0, "net_profit": 0.0})
                stats["count"] += 1
                stats["net_profit"] += opportunity.net_profit
                logger.debug(f"Cycle {cycle}: {opportunity.pair} net {opportunity.net_profit:.6f}")

        best = max(found, key=lambda o: o.net_profit) if found else None
        summary = {
            "cycles": cycles,
            "opportunities": len(found),
            "total_net_profit": sum(o.net_profit for o in found),
            "by_pair": by_pair,
            "best": {
                "pair": best.pair.key,
                "buy_venue": best.buy_venue,
                "sell_venue": best.sell_venue,
                "trade_size": best.trade_size,
                "net_profit": best.net_profit,
            } if best else None,
        }
        logger.info(
            f"Replay finished: {cycles} cycles, {len(found)} opportunities, "
            f"total net {summary['total_net_profit']:.6f}"
        )
        return summary
