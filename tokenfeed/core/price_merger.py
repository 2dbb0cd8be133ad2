import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from tokenfeed.core.models import AssetRecord, PriceQuote
from tokenfeed.utils.logger import get_logger, log_metric

QUOTE_FIELDS = ("price", "change_24h", "market_cap", "volume_24h")


class PriceMerger:
    """Reconcile fresh price quotes into a previously known asset list.

    The output has exactly the input's assets in the input's order. Assets
    with no quote, or whose quote carries nothing new, are passed through as
    the same objects so repeated merges of identical data are no-ops.
    """

    def __init__(self):
        self.logger = get_logger("PriceMerger")

    @staticmethod
    def _changes(known: AssetRecord, quote: PriceQuote) -> Dict[str, Any]:
        changes = {}
        for field_name in QUOTE_FIELDS:
            value = getattr(quote, field_name)
            if value is not None and value != getattr(known, field_name):
                changes[field_name] = value
        if "price" in changes:
            changes["previous_price"] = known.price
        return changes

    def merge(
        self,
        known_assets: Sequence[AssetRecord],
        fresh_quotes: Dict[str, PriceQuote],
        now: Optional[float] = None,
    ) -> List[AssetRecord]:
        now = time.time() if now is None else now
        quotes = {symbol.upper(): quote for symbol, quote in (fresh_quotes or {}).items()}

        merged = []
        matched = 0
        repriced = 0
        for asset in known_assets:
            quote = quotes.get(asset.symbol.upper())
            if quote is None:
                merged.append(asset)
                continue

            matched += 1
            changes = self._changes(asset, quote)
            if not changes:
                merged.append(asset)
                continue

            if "price" in changes:
                repriced += 1
            merged.append(replace(asset, last_updated=now, **changes))

        self.logger.info(
            f"Merged {len(quotes)} quotes into {len(merged)} assets ({matched} matched, {repriced} repriced)"
        )
        log_metric("price_merge", matched, {"assets": len(merged), "quotes": len(quotes), "repriced": repriced})
        return merged
