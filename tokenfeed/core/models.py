from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class AssetRecord:
    id: str
    name: str
    symbol: str
    price: float = 0.0
    market_cap: float = 0.0
    change_24h: float = 0.0
    volume_24h: float = 0.0
    rank: int = 1
    logo: str = ""
    previous_price: Optional[float] = None
    last_updated: float = 0.0

    def sort_key(self) -> Tuple[float, int]:
        return (-self.market_cap, self.rank)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetRecord":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["symbol"]),
            symbol=str(data["symbol"]),
            price=float(data.get("price", 0.0)),
            market_cap=float(data.get("market_cap", 0.0)),
            change_24h=float(data.get("change_24h", 0.0)),
            volume_24h=float(data.get("volume_24h", 0.0)),
            rank=int(data.get("rank", 1)),
            logo=str(data.get("logo") or ""),
            previous_price=(
                float(data["previous_price"]) if data.get("previous_price") is not None else None
            ),
            last_updated=float(data.get("last_updated", 0.0)),
        )


@dataclass(frozen=True)
class PriceQuote:
    """Fresh values for one symbol. None means the provider did not supply a usable value."""

    symbol: str
    price: Optional[float] = None
    change_24h: Optional[float] = None
    market_cap: Optional[float] = None
    volume_24h: Optional[float] = None


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Tuple[AssetRecord, ...]
    stored_at: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_expired(self, ttl: float, now: float) -> bool:
        return self.age(now) > ttl

    def to_json_payload(self) -> list:
        return [record.to_dict() for record in self.payload]


@dataclass(frozen=True)
class CacheHit:
    payload: Tuple[AssetRecord, ...]
    is_fresh: bool
    stored_at: float
    tier: str = field(default="")
