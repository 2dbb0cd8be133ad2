import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from tokenfeed.core.batch_planner import BatchPlanner
from tokenfeed.core.errors import FetchError
from tokenfeed.core.fallback_resolver import FetchRequest, Strategy, StrategyKind
from tokenfeed.core.normalizer import RECORD_HINT_KEYS, Normalizer
from tokenfeed.core.retrying_fetcher import RetryingFetcher
from tokenfeed.utils.logger import get_logger, log_metric


def build_listing_strategies(settings: Dict[str, Any]) -> List[Strategy]:
    """Mobula market list by each configured order, then CoinGecko paged markets."""
    provider = settings.get("provider", {})
    mobula = provider.get("mobula", {})
    coingecko = provider.get("coingecko", {})
    ratio = settings.get("resolver", {}).get("acceptance_ratio", 250 / 300)

    strategies = [
        Strategy(
            name=f"mobula_list_{order}",
            kind=StrategyKind.MARKET_LIST,
            params={"source": "mobula", "order": order, "limit": mobula.get("list_limit", 400)},
            min_ratio=ratio,
        )
        for order in mobula.get("list_orders", ["market_cap", "circulating_supply", "volume"])
    ]

    if coingecko.get("enabled", True):
        strategies.append(
            Strategy(
                name="coingecko_markets",
                kind=StrategyKind.PAGED_MARKETS,
                params={
                    "source": "coingecko",
                    "per_page": coingecko.get("per_page", 100),
                    "max_pages": coingecko.get("max_pages", 3),
                    "vs_currency": coingecko.get("vs_currency", "usd"),
                    "page_delay": coingecko.get("page_delay_seconds", 3.0),
                },
                min_ratio=ratio,
            )
        )
    return strategies


def build_price_strategies(settings: Dict[str, Any]) -> List[Strategy]:
    """Per-chunk lookups: multi-asset, then concurrent per-symbol, then filtered list."""
    mobula = settings.get("provider", {}).get("mobula", {})
    chunk_size = settings.get("batching", {}).get("max_chunk_size", 50)
    return [
        Strategy(name="mobula_multi", kind=StrategyKind.MULTI_LOOKUP, params={"source": "mobula"}),
        Strategy(
            name="mobula_per_symbol",
            kind=StrategyKind.SYMBOL_LOOKUP,
            params={"source": "mobula", "max_workers": chunk_size},
        ),
        Strategy(
            name="mobula_filtered_list",
            kind=StrategyKind.FILTERED_LIST,
            params={"source": "mobula", "order": "market_cap", "limit": mobula.get("list_limit", 400)},
        ),
    ]


class ProviderExecutors:
    """Runs each StrategyKind against the Mobula and CoinGecko HTTP APIs.

    Executors return raw provider records; normalization happens later so the
    resolver's acceptance check counts what the provider actually sent.
    """

    def __init__(
        self,
        fetcher: RetryingFetcher,
        settings: Dict[str, Any],
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.logger = get_logger("ProviderExecutors")
        self.fetcher = fetcher
        provider = settings.get("provider", {})
        self.mobula_config = provider.get("mobula", {})
        self.coingecko_config = provider.get("coingecko", {})
        self.mobula_url = self.mobula_config.get("base_url", "https://api.mobula.io/api/1").rstrip("/")
        self.coingecko_url = self.coingecko_config.get("base_url", "https://api.coingecko.com/api/v3").rstrip("/")
        self.api_key = self.mobula_config.get("api_key")
        self._sleep = sleep
        self.cancel_event = cancel_event

        if not self.api_key:
            self.logger.warning("MOBULA_API_KEY not set, Mobula requests will be unauthenticated")

    def executors(self) -> Dict[StrategyKind, Callable[[Strategy, FetchRequest], List[Dict[str, Any]]]]:
        return {
            StrategyKind.MARKET_LIST: self.run_market_list,
            StrategyKind.PAGED_MARKETS: self.run_paged_markets,
            StrategyKind.MULTI_LOOKUP: self.run_multi_lookup,
            StrategyKind.SYMBOL_LOOKUP: self.run_symbol_lookup,
            StrategyKind.FILTERED_LIST: self.run_filtered_list,
        }

    def _mobula_headers(self) -> Optional[Dict[str, str]]:
        if not self.api_key:
            return None
        return {"Authorization": f"Bearer {self.api_key}"}

    def _mobula_get(self, path: str, params: Dict[str, Any]) -> Any:
        response = self.fetcher.fetch(
            f"{self.mobula_url}/{path}",
            params=params,
            headers=self._mobula_headers(),
            cancel_event=self.cancel_event,
        )
        return response.payload

    @staticmethod
    def _keyed_records(payload: Any) -> List[Dict[str, Any]]:
        # market/multi answers {"data": {"BTC": {...}, ...}}; the key is the symbol
        data = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(data, dict) and data and not any(key in data for key in RECORD_HINT_KEYS):
            return [
                dict(record, symbol=record.get("symbol") or key)
                for key, record in data.items()
                if isinstance(record, dict)
            ]
        return Normalizer.extract_records(payload)

    def run_market_list(self, strategy: Strategy, request: FetchRequest) -> List[Dict[str, Any]]:
        params = {"limit": strategy.params.get("limit", 400), "order": strategy.params.get("order", "market_cap")}
        records = Normalizer.extract_records(self._mobula_get("market/list", params))
        self.logger.info(f"Mobula market/list ({params['order']}) returned {len(records)} records")
        return records

    def run_paged_markets(self, strategy: Strategy, request: FetchRequest) -> List[Dict[str, Any]]:
        per_page = strategy.params.get("per_page", 100)
        wanted = request.limit or per_page
        pages = min(math.ceil(wanted / per_page), strategy.params.get("max_pages", 3))

        planner = BatchPlanner(
            max_chunk_size=1, inter_chunk_delay=strategy.params.get("page_delay", 3.0), sleep=self._sleep
        )

        def fetch_page(index: int, chunk: List[int]) -> List[Dict[str, Any]]:
            params = {
                "vs_currency": strategy.params.get("vs_currency", "usd"),
                "order": "market_cap_desc",
                "per_page": per_page,
                "page": chunk[0],
                "sparkline": "false",
                "price_change_percentage": "24h",
            }
            response = self.fetcher.fetch(
                f"{self.coingecko_url}/coins/markets", params=params, cancel_event=self.cancel_event
            )
            return Normalizer.extract_records(response.payload)

        outcome = planner.dispatch(planner.plan(range(1, pages + 1)), fetch_page, self.cancel_event)
        if outcome.failures and not outcome.results:
            raise outcome.failures[-1].error

        records = []
        for _, page_records in sorted(outcome.results, key=lambda item: item[0]):
            records.extend(page_records)
        self.logger.info(
            f"CoinGecko markets returned {len(records)} records ({outcome.succeeded}/{pages} pages)"
        )
        return records

    def run_multi_lookup(self, strategy: Strategy, request: FetchRequest) -> List[Dict[str, Any]]:
        if not request.symbols:
            return []
        payload = self._mobula_get("market/multi", {"assets": ",".join(request.symbols)})
        return self._keyed_records(payload)

    def _lookup_symbol(self, symbol: str) -> List[Dict[str, Any]]:
        payload = self._mobula_get("market/data", {"asset": symbol})
        return [
            dict(record, symbol=record.get("symbol") or symbol)
            for record in Normalizer.extract_records(payload)
            if isinstance(record, dict)
        ]

    def run_symbol_lookup(self, strategy: Strategy, request: FetchRequest) -> List[Dict[str, Any]]:
        symbols = list(request.symbols)
        if not symbols:
            return []

        max_workers = max(1, min(len(symbols), strategy.params.get("max_workers", len(symbols))))
        records = []
        errors = []

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="symbol-lookup") as executor:
            futures = {executor.submit(self._lookup_symbol, symbol): symbol for symbol in symbols}
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    records.extend(future.result())
                except FetchError as e:
                    errors.append(e)
                    self.logger.debug(f"Per-symbol lookup failed for {symbol}: {str(e)}")

        log_metric("symbol_lookup_complete", len(records), {"symbols": len(symbols), "failed": len(errors)})
        if not records and errors:
            raise errors[-1]
        return records

    def run_filtered_list(self, strategy: Strategy, request: FetchRequest) -> List[Dict[str, Any]]:
        if not request.symbols:
            return []
        wanted = {symbol.upper() for symbol in request.symbols}
        params = {"limit": strategy.params.get("limit", 400), "order": strategy.params.get("order", "market_cap")}
        records = Normalizer.extract_records(self._mobula_get("market/list", params))

        matched = [
            record for record in records
            if isinstance(record, dict) and str(record.get("symbol") or "").strip().upper() in wanted
        ]
        self.logger.info(f"Filtered market/list down to {len(matched)}/{len(wanted)} requested symbols")
        return matched

