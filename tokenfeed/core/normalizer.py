import math
import time
from numbers import Number
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from tokenfeed.core.errors import MalformedPayload
from tokenfeed.core.models import AssetRecord, PriceQuote
from tokenfeed.utils.logger import get_logger, log_metric


FIELD_ALIASES = {
    "id": ("id",),
    "name": ("name",),
    "symbol": ("symbol",),
    "logo": ("logo", "image", "logoUrl"),
    "price": ("price", "current_price"),
    "market_cap": ("market_cap", "marketCap"),
    "change_24h": ("change_24h", "price_change_percentage_24h", "price_change_24h", "change24h"),
    "volume_24h": ("volume_24h", "volume", "total_volume", "volume24h"),
    "rank": ("rank", "market_cap_rank"),
}

NUMERIC_FIELDS = ("price", "market_cap", "change_24h", "volume_24h")
NON_NEGATIVE_FIELDS = ("price", "market_cap", "volume_24h")
RECORD_HINT_KEYS = ("symbol", "name", "id")
MAX_RANK = 2 ** 31 - 1


class Normalizer:
    def __init__(self):
        self.logger = get_logger("Normalizer")

    @staticmethod
    def _pick(raw: Dict[str, Any], field_name: str) -> Any:
        for alias in FIELD_ALIASES[field_name]:
            value = raw.get(alias)
            if value is not None:
                return value
        return None

    @staticmethod
    def _clean_text(value: Any) -> str:
        if value is None or isinstance(value, bool):
            return ""
        if isinstance(value, (str, Number)):
            return str(value).strip()
        return ""

    @staticmethod
    def _numeric_candidate(value: Any) -> Any:
        # to_numeric(errors="coerce") still rejects containers, and bools would coerce to 0/1
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, str):
            return value.strip() or None
        if isinstance(value, Number):
            return value
        return None

    @staticmethod
    def _to_float(value: Any, non_negative: bool = False) -> Optional[float]:
        candidate = Normalizer._numeric_candidate(value)
        if candidate is None:
            return None
        try:
            number = float(candidate)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number) or (non_negative and number < 0):
            return None
        return number

    @staticmethod
    def has_symbol(raw: Any) -> bool:
        return isinstance(raw, dict) and bool(Normalizer._clean_text(Normalizer._pick(raw, "symbol")))

    @staticmethod
    def is_usable(raw: Any) -> bool:
        """True when ``raw`` would survive normalize(): a dict with a non-empty symbol and name."""
        return Normalizer.has_symbol(raw) and bool(Normalizer._clean_text(Normalizer._pick(raw, "name")))

    @staticmethod
    def extract_records(payload: Any) -> List[Dict[str, Any]]:
        """Pull the list of asset-like records out of a provider response body.

        Accepts a top-level array, or an object whose ``data`` is an array, a
        mapping of records (keyed by symbol) or a single record.
        """
        if isinstance(payload, list):
            return payload

        if isinstance(payload, dict) and "data" in payload:
            data = payload["data"]
            if isinstance(data, list):
                return data
            if isinstance(data, dict):
                if any(key in data for key in RECORD_HINT_KEYS):
                    return [data]
                values = list(data.values())
                if values and all(isinstance(v, dict) for v in values):
                    return values
                if not values:
                    return []

        raise MalformedPayload(
            f"Expected an array or an object with a 'data' array, got {type(payload).__name__}"
        )

    def normalize(
        self,
        raw_records: Optional[Iterable[Any]],
        source: str = "mobula",
        limit: Optional[int] = None,
        now: Optional[float] = None,
    ) -> List[AssetRecord]:
        now = time.time() if now is None else now
        rows = []
        skipped = 0

        for index, raw in enumerate(raw_records or []):
            if not isinstance(raw, dict):
                skipped += 1
                self.logger.warning(f"Skipping non-object record at index {index}")
                continue

            symbol = self._clean_text(self._pick(raw, "symbol")).upper()
            name = self._clean_text(self._pick(raw, "name"))
            if not symbol or not name:
                skipped += 1
                self.logger.warning(f"Skipping record without {'symbol' if not symbol else 'name'} at index {index}")
                continue

            # symbol is never empty here, so it always backs a missing id
            row = {
                "id": self._clean_text(self._pick(raw, "id")) or symbol,
                "name": name,
                "symbol": symbol,
                "logo": self._clean_text(self._pick(raw, "logo")),
                "rank": self._numeric_candidate(self._pick(raw, "rank")),
                "position": index,
            }
            for column in NUMERIC_FIELDS:
                row[column] = self._numeric_candidate(self._pick(raw, column))
            rows.append(row)

        if not rows:
            if skipped:
                self.logger.warning(f"Normalized 0 records ({skipped} skipped)")
            return []

        frame = pd.DataFrame(rows)
        for column in NUMERIC_FIELDS + ("rank",):
            frame[column] = pd.to_numeric(frame[column], errors="coerce").astype(float)

        frame[list(NUMERIC_FIELDS)] = (
            frame[list(NUMERIC_FIELDS)].replace([np.inf, -np.inf], np.nan).fillna(0.0)
        )
        for column in NON_NEGATIVE_FIELDS:
            frame.loc[frame[column] < 0, column] = 0.0

        valid_rank = np.isfinite(frame["rank"]) & (frame["rank"] >= 1) & (frame["rank"] <= MAX_RANK)
        frame["rank"] = np.where(valid_rank, np.floor(frame["rank"].fillna(0)), frame["position"] + 1).astype(int)

        before_dedup = len(frame)
        frame = frame.drop_duplicates(subset="id", keep="first")
        duplicates = before_dedup - len(frame)

        frame = frame.sort_values(by=["market_cap", "rank"], ascending=[False, True], kind="mergesort")
        if limit is not None and limit >= 0:
            frame = frame.head(limit)

        records = [
            AssetRecord(
                id=row.id,
                name=row.name,
                symbol=row.symbol,
                price=float(row.price),
                market_cap=float(row.market_cap),
                change_24h=float(row.change_24h),
                volume_24h=float(row.volume_24h),
                rank=int(row.rank),
                logo=row.logo,
                last_updated=now,
            )
            for row in frame.itertuples(index=False)
        ]

        self.logger.info(
            f"Normalized {len(records)} records from {source} "
            f"({skipped} skipped, {duplicates} duplicates)"
        )
        log_metric(
            "normalize_complete",
            len(records),
            {"source": source, "skipped": skipped, "duplicates": duplicates},
        )
        return records

    def extract_quotes(self, raw_records: Optional[Iterable[Any]]) -> Dict[str, PriceQuote]:
        """Build presence-aware price quotes keyed by upper-cased symbol.

        Missing or invalid values stay None so a merge keeps the known value;
        a supplied 0 is kept as real data.
        """
        quotes: Dict[str, PriceQuote] = {}
        for raw in raw_records or []:
            if not isinstance(raw, dict):
                continue
            symbol = self._clean_text(self._pick(raw, "symbol")).upper()
            if not symbol or symbol in quotes:
                continue
            quotes[symbol] = PriceQuote(
                symbol=symbol,
                price=self._to_float(self._pick(raw, "price"), non_negative=True),
                change_24h=self._to_float(self._pick(raw, "change_24h")),
                market_cap=self._to_float(self._pick(raw, "market_cap"), non_negative=True),
                volume_24h=self._to_float(self._pick(raw, "volume_24h"), non_negative=True),
            )
        return quotes
