from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from tokenfeed.core.errors import FetchError
from tokenfeed.utils.logger import get_logger, log_metric


class StrategyKind(Enum):
    MARKET_LIST = "market_list"
    PAGED_MARKETS = "paged_markets"
    MULTI_LOOKUP = "multi_lookup"
    SYMBOL_LOOKUP = "symbol_lookup"
    FILTERED_LIST = "filtered_list"


class ResolutionState(Enum):
    TRY_STRATEGY = "try_strategy"
    ACCEPTED = "accepted"
    ALL_FAILED = "all_failed"


@dataclass(frozen=True)
class FetchRequest:
    """What the caller wants: a top-N listing (``limit``) or a symbol set."""

    limit: Optional[int] = None
    symbols: tuple = ()

    @property
    def requested_count(self) -> int:
        if self.symbols:
            return len(self.symbols)
        return self.limit or 0


@dataclass(frozen=True)
class Strategy:
    name: str
    kind: StrategyKind
    params: Dict[str, Any] = field(default_factory=dict)
    min_ratio: Optional[float] = None
    min_results: int = 1

    def threshold_for(self, request: FetchRequest) -> int:
        if self.min_ratio is not None and request.requested_count > 0:
            return max(1, int(request.requested_count * self.min_ratio))
        return max(1, self.min_results)


@dataclass
class StrategyAttempt:
    strategy: str
    outcome: str
    count: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "outcome": self.outcome,
            "count": self.count,
            "status_code": self.status_code,
            "error": self.error,
        }


@dataclass
class ResolveResult:
    state: ResolutionState
    records: List[Dict[str, Any]] = field(default_factory=list)
    accepted_strategy: Optional[str] = None
    partial_strategy: Optional[str] = None
    attempts: List[StrategyAttempt] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.state == ResolutionState.ACCEPTED

    @property
    def last_strategy(self) -> Optional[str]:
        return self.attempts[-1].strategy if self.attempts else None

    @property
    def last_status(self) -> Optional[int]:
        for attempt in reversed(self.attempts):
            if attempt.status_code is not None:
                return attempt.status_code
        return None

    @property
    def last_error(self) -> Optional[str]:
        for attempt in reversed(self.attempts):
            if attempt.error:
                return attempt.error
        return None


StrategyExecutor = Callable[[Strategy, FetchRequest], List[Dict[str, Any]]]


class FallbackResolver:
    """Try strategies in order until one returns enough records.

    ``executors`` maps each StrategyKind to the callable that runs it, so the
    strategy list stays declarative and provider details live in the
    executors. A strategy fails when its executor raises or returns fewer
    records than its acceptance threshold; the resolver then moves to the
    next one. When every strategy fails the largest partial result seen is
    returned with state ALL_FAILED.
    """

    def __init__(self, executors: Dict[StrategyKind, StrategyExecutor]):
        self.logger = get_logger("FallbackResolver")
        self.executors = dict(executors)

    def resolve(
        self,
        request: FetchRequest,
        strategies: Sequence[Strategy],
        usable: Optional[Callable[[Any], bool]] = None,
    ) -> ResolveResult:
        """Run ``strategies`` in order for ``request``.

        When ``usable`` is given, only records it accepts are kept and counted
        against the threshold, so a payload of the right size but the wrong
        shape falls through to the next strategy.
        """
        result = ResolveResult(state=ResolutionState.TRY_STRATEGY)
        best_partial: List[Dict[str, Any]] = []

        for index, strategy in enumerate(strategies):
            threshold = strategy.threshold_for(request)
            self.logger.info(
                f"Trying strategy {index + 1}/{len(strategies)}: {strategy.name} (threshold={threshold})"
            )

            executor = self.executors.get(strategy.kind)
            if executor is None:
                self.logger.error(f"No executor registered for strategy kind {strategy.kind.value}")
                result.attempts.append(
                    StrategyAttempt(strategy.name, "failed", error=f"unsupported kind {strategy.kind.value}")
                )
                continue

            try:
                records = list(executor(strategy, request) or [])
            except FetchError as e:
                self.logger.warning(f"Strategy {strategy.name} failed: {type(e).__name__}: {str(e)}")
                result.attempts.append(
                    StrategyAttempt(strategy.name, "failed", status_code=e.status_code, error=str(e))
                )
                log_metric("strategy_failed", 1, {"strategy": strategy.name, "error": type(e).__name__})
                continue
            except Exception as e:
                self.logger.error(f"Strategy {strategy.name} raised unexpectedly: {str(e)}")
                result.attempts.append(StrategyAttempt(strategy.name, "failed", error=str(e)))
                log_metric("strategy_failed", 1, {"strategy": strategy.name, "error": type(e).__name__})
                continue

            if usable is not None:
                kept = [record for record in records if usable(record)]
                if len(kept) < len(records):
                    self.logger.warning(
                        f"Strategy {strategy.name} returned {len(records) - len(kept)} unusable records"
                    )
                records = kept

            if len(records) >= threshold:
                self.logger.info(f"Strategy {strategy.name} accepted with {len(records)} records")
                result.attempts.append(StrategyAttempt(strategy.name, "accepted", count=len(records)))
                result.state = ResolutionState.ACCEPTED
                result.records = records
                result.accepted_strategy = strategy.name
                log_metric("strategy_accepted", len(records), {"strategy": strategy.name})
                return result

            self.logger.warning(
                f"Strategy {strategy.name} returned {len(records)} records, below threshold {threshold}"
            )
            result.attempts.append(StrategyAttempt(strategy.name, "below_threshold", count=len(records)))
            if len(records) > len(best_partial):
                best_partial = records
                result.partial_strategy = strategy.name

        result.state = ResolutionState.ALL_FAILED
        result.records = best_partial
        self.logger.error(
            f"All {len(strategies)} strategies failed; returning {len(best_partial)} partial records"
        )
        log_metric("strategies_exhausted", 1, {"strategies": len(strategies), "partial": len(best_partial)})
        return result
