import hashlib
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import requests

from tokenfeed.core.batch_planner import BatchPlanner
from tokenfeed.core.errors import UpstreamUnavailable
from tokenfeed.core.fallback_resolver import FallbackResolver, FetchRequest, ResolveResult, Strategy
from tokenfeed.core.freshness_cache import FreshnessCache
from tokenfeed.core.models import AssetRecord, PriceQuote
from tokenfeed.core.normalizer import Normalizer
from tokenfeed.core.price_merger import PriceMerger
from tokenfeed.core.retrying_fetcher import RetryingFetcher
from tokenfeed.core.strategies import ProviderExecutors, build_listing_strategies, build_price_strategies
from tokenfeed.utils.config_loader import DEFAULT_SETTINGS
from tokenfeed.utils.logger import correlation_decorator, get_logger, log_metric


class MarketDataService:
    """Cached, fault-tolerant access to market data.

    ``fetch_top_assets`` serves the bulk listing: fresh cache first, then the
    listing strategies in order, then whatever the cache still holds.
    ``update_prices`` refreshes prices of the top-ranked known assets in
    chunks and never raises. Both are safe to call from several threads.
    """

    def __init__(
        self,
        fetcher: RetryingFetcher,
        cache: FreshnessCache,
        settings: Optional[Dict[str, Any]] = None,
        resolver: Optional[FallbackResolver] = None,
        listing_strategies: Optional[Sequence[Strategy]] = None,
        price_strategies: Optional[Sequence[Strategy]] = None,
        planner: Optional[BatchPlanner] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.logger = get_logger("MarketDataService")
        self.settings = settings if settings is not None else DEFAULT_SETTINGS
        self.fetcher = fetcher
        self.cache = cache
        self.normalizer = Normalizer()
        self.merger = PriceMerger()
        self._cancel_event = threading.Event()

        refresh_config = self.settings.get("refresh", {})
        batching_config = self.settings.get("batching", {})
        self.default_limit = refresh_config.get("default_limit", 300)
        self.price_update_top_n = refresh_config.get("price_update_top_n", 75)

        if resolver is None:
            executors = ProviderExecutors(fetcher, self.settings, sleep=sleep, cancel_event=self._cancel_event)
            resolver = FallbackResolver(executors.executors())
        self.resolver = resolver
        self.listing_strategies = list(listing_strategies or build_listing_strategies(self.settings))
        self.price_strategies = list(price_strategies or build_price_strategies(self.settings))
        self.planner = planner or BatchPlanner(
            max_chunk_size=batching_config.get("max_chunk_size", 50),
            inter_chunk_delay=batching_config.get("inter_chunk_delay_seconds", 0.3),
            sleep=sleep,
        )

        self._sources = {
            strategy.name: strategy.params.get("source", "mobula")
            for strategy in self.listing_strategies + self.price_strategies
        }
        self._status_lock = threading.Lock()
        self._last_listing: Dict[str, Any] = {}
        self._last_price_update: Dict[str, Any] = {}

        self.logger.info(
            f"MarketDataService ready ({len(self.listing_strategies)} listing strategies, "
            f"{len(self.price_strategies)} price strategies)"
        )

    @classmethod
    def from_settings(
        cls,
        settings: Dict[str, Any],
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> "MarketDataService":
        fetcher = RetryingFetcher.from_settings(settings, session=session, sleep=sleep)
        cache = FreshnessCache.from_settings(settings)
        return cls(fetcher, cache, settings=settings, sleep=sleep)

    @staticmethod
    def listing_cache_key(limit: int) -> str:
        return f"top:{limit}"

    @staticmethod
    def symbols_cache_key(symbols: Iterable[str]) -> str:
        normalized = ",".join(sorted({symbol.strip().upper() for symbol in symbols if symbol and symbol.strip()}))
        return f"symbols:{hashlib.sha1(normalized.encode('utf-8')).hexdigest()}"

    def _source_for(self, strategy_name: Optional[str]) -> str:
        return self._sources.get(strategy_name, "mobula")

    @staticmethod
    def _unavailable(message: str, result: ResolveResult) -> UpstreamUnavailable:
        return UpstreamUnavailable(
            message,
            last_strategy=result.last_strategy,
            last_status=result.last_status,
            attempts=[attempt.to_dict() for attempt in result.attempts],
        )

    def _serve_after_failure(
        self,
        key: str,
        result: ResolveResult,
        limit: Optional[int],
        usable_hit,
    ) -> List[AssetRecord]:
        """Failure ladder once every strategy failed: stale hit, partial data, expired entry."""
        if usable_hit is not None:
            self.logger.warning(f"All strategies failed for {key}, serving cached data from {usable_hit.tier}")
            log_metric("serve_stale_cache", 1, {"key": key, "tier": usable_hit.tier})
            return list(usable_hit.payload)

        if result.records:
            partial = self.normalizer.normalize(
                result.records, source=self._source_for(result.partial_strategy), limit=limit
            )
            if partial:
                self.logger.warning(
                    f"All strategies failed for {key}, serving {len(partial)} partial records "
                    f"from {result.partial_strategy}"
                )
                log_metric("serve_partial", len(partial), {"key": key, "strategy": result.partial_strategy})
                return partial

        expired = self.cache.get_stale_allowing_expired(key)
        if expired:
            log_metric("serve_expired_cache", 1, {"key": key})
            return list(expired)

        self.logger.error(
            f"Upstream unavailable for {key}: last strategy {result.last_strategy}, "
            f"last status {result.last_status}"
        )
        log_metric("upstream_unavailable", 1, {"key": key, "strategy": result.last_strategy})
        raise self._unavailable(f"No market data available for {key}", result)

    def _resolve_and_cache(
        self,
        key: str,
        request: FetchRequest,
        strategies: Sequence[Strategy],
        force_refresh: bool,
    ) -> List[AssetRecord]:
        hit = self.cache.get(key)
        if hit is not None and hit.is_fresh and not force_refresh:
            self.logger.debug(f"Serving fresh cache for {key}")
            return list(hit.payload)

        existing = self.cache.peek(key)
        expected_stored_at = existing.stored_at if existing is not None else None

        start_time = time.time()
        result = self.resolver.resolve(request, strategies, usable=Normalizer.is_usable)

        if result.accepted:
            records = self.normalizer.normalize(
                result.records, source=self._source_for(result.accepted_strategy), limit=request.limit
            )
            if records:
                stored = self.cache.compare_and_put(key, records, expected_stored_at)
                elapsed_ms = int((time.time() - start_time) * 1000)
                self.logger.info(
                    f"Fetched {len(records)} records for {key} via {result.accepted_strategy} "
                    f"in {elapsed_ms}ms (cached={stored})"
                )
                log_metric(
                    "fetch_assets_complete",
                    len(records),
                    {"key": key, "strategy": result.accepted_strategy, "response_time_ms": elapsed_ms},
                )
                return records
            self.logger.warning(f"Strategy {result.accepted_strategy} returned no usable records for {key}")

        return self._serve_after_failure(key, result, request.limit, hit)

    @correlation_decorator()
    def fetch_top_assets(self, limit: Optional[int] = None, force_refresh: bool = False) -> List[AssetRecord]:
        """Return the top ``limit`` assets by market cap.

        Raises UpstreamUnavailable only when every strategy failed and no cache
        tier holds anything for this listing.
        """
        limit = self.default_limit if limit is None else limit
        if limit <= 0:
            raise ValueError("limit must be > 0")

        key = self.listing_cache_key(limit)
        records = self._resolve_and_cache(key, FetchRequest(limit=limit), self.listing_strategies, force_refresh)

        with self._status_lock:
            self._last_listing = {"key": key, "records": len(records), "at": time.time()}
        return records

    @correlation_decorator()
    def fetch_assets_by_symbols(self, symbols: Iterable[str], force_refresh: bool = False) -> List[AssetRecord]:
        """Targeted lookup for a set of symbols, cached under the symbol set signature."""
        wanted = []
        for symbol in symbols:
            cleaned = (symbol or "").strip().upper()
            if cleaned and cleaned not in wanted:
                wanted.append(cleaned)
        if not wanted:
            return []

        key = self.symbols_cache_key(wanted)
        records = self._resolve_and_cache(
            key, FetchRequest(symbols=tuple(wanted)), self.price_strategies, force_refresh
        )
        return [record for record in records if record.symbol in wanted]

    def _quotes_for_chunk(self, index: int, chunk: List[str]) -> Dict[str, PriceQuote]:
        result = self.resolver.resolve(
            FetchRequest(symbols=tuple(chunk)), self.price_strategies, usable=Normalizer.has_symbol
        )
        if not result.accepted:
            raise self._unavailable(f"No price data for chunk {index + 1}", result)

        wanted = set(chunk)
        quotes = self.normalizer.extract_quotes(result.records)
        return {symbol: quote for symbol, quote in quotes.items() if symbol in wanted}

    @correlation_decorator()
    def update_prices(self, current_assets: Iterable[AssetRecord]) -> List[AssetRecord]:
        """Refresh prices of the top-ranked assets. Returns the input unchanged on failure."""
        assets = list(current_assets or [])
        if not assets:
            return assets

        try:
            top_assets = sorted(assets, key=lambda asset: asset.rank)[: self.price_update_top_n]
            symbols = []
            for asset in top_assets:
                symbol = asset.symbol.upper()
                if symbol not in symbols:
                    symbols.append(symbol)

            chunks = self.planner.plan(symbols)
            self.logger.info(f"Updating prices for {len(symbols)} symbols in {len(chunks)} chunks")
            outcome = self.planner.dispatch(chunks, self._quotes_for_chunk, self._cancel_event)

            quotes: Dict[str, PriceQuote] = {}
            for _, chunk_quotes in outcome.results:
                quotes.update(chunk_quotes)

            with self._status_lock:
                self._last_price_update = {
                    "symbols": len(symbols),
                    "quotes": len(quotes),
                    "failed_chunks": outcome.failed,
                    "at": time.time(),
                }

            if not quotes:
                self.logger.warning("Price update produced no quotes, keeping known prices")
                log_metric("price_update_failed", 1, {"chunks": len(chunks), "failed": outcome.failed})
                return assets

            merged = self.merger.merge(assets, quotes)
            log_metric(
                "price_update_complete",
                len(quotes),
                {"symbols": len(symbols), "chunks": len(chunks), "failed_chunks": outcome.failed},
            )
            return merged

        except Exception as e:
            self.logger.error(f"Price update failed, keeping known prices: {type(e).__name__}: {str(e)}")
            log_metric("price_update_failed", 1, {"error": type(e).__name__})
            return assets

    def health_check(self) -> Dict[str, Any]:
        with self._status_lock:
            last_listing = dict(self._last_listing)
            last_price_update = dict(self._last_price_update)

        return {
            "status": "closed" if self._cancel_event.is_set() else "ok",
            "listing_strategies": [strategy.name for strategy in self.listing_strategies],
            "price_strategies": [strategy.name for strategy in self.price_strategies],
            "last_listing": last_listing,
            "last_price_update": last_price_update,
            "cache": self.cache.stats(),
        }

    def cancel(self) -> None:
        """Abort in-flight fetches and backoff waits. The service stays cancelled afterwards."""
        if not self._cancel_event.is_set():
            self._cancel_event.set()
            self.logger.info("MarketDataService cancelling in-flight requests")

    def close(self) -> None:
        self._cancel_event.set()
        self.fetcher.close()
        self.logger.info("MarketDataService closed")
