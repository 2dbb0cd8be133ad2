import json
import os
import signal
import sys
import threading
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from tokenfeed.core.errors import UpstreamUnavailable
from tokenfeed.core.market_service import MarketDataService
from tokenfeed.core.models import AssetRecord
from tokenfeed.core.refresh_scheduler import RefreshScheduler
from tokenfeed.utils.config_loader import ConfigLoader
from tokenfeed.utils.logger import get_logger, set_correlation_id, shutdown_logger

RUN_ONCE_VALUES = ("1", "true", "yes")


class FeedOrchestrator:
    """Owns the current asset snapshot and keeps it fresh on a schedule.

    The full listing replaces the snapshot; a price refresh merges into it
    unless a newer listing landed while the prices were being fetched.
    """

    def __init__(
        self,
        config_path: str = "config/settings.json",
        service: Optional[MarketDataService] = None,
        scheduler: Optional[RefreshScheduler] = None,
    ):
        self.logger = get_logger("FeedOrchestrator")
        self.correlation_id = str(uuid.uuid4())[:8]
        self.settings = ConfigLoader.load_settings(config_path)

        self._initialize_directories()
        self.service = service or MarketDataService.from_settings(self.settings)
        self.scheduler = scheduler or RefreshScheduler()
        self.shutdown_event = threading.Event()

        self._snapshot: List[AssetRecord] = []
        self._snapshot_version = 0
        self._snapshot_lock = threading.Lock()

        self.logger.info(f"FeedOrchestrator initialized [CID:{self.correlation_id}]")

    def _initialize_directories(self) -> None:
        directories = [self.settings.get("logging", {}).get("log_dir", "logs/")]
        cache_config = self.settings.get("cache", {})
        if cache_config.get("durable_enabled", True):
            directories.append(str(Path(cache_config.get("durable_path", "data/cache/tokenfeed.db")).parent))

        for dir_path in directories:
            path = Path(dir_path)
            if not path.exists():
                path.mkdir(parents=True, exist_ok=True)
                self.logger.info(f"Created directory: {dir_path} [CID:{self.correlation_id}]")

    @property
    def snapshot(self) -> List[AssetRecord]:
        with self._snapshot_lock:
            return list(self._snapshot)

    def refresh_listing(self, force_refresh: bool = False) -> bool:
        limit = self.settings.get("refresh", {}).get("default_limit", 300)
        try:
            records = self.service.fetch_top_assets(limit=limit, force_refresh=force_refresh)
        except UpstreamUnavailable as e:
            self.logger.error(f"Listing refresh failed, keeping previous snapshot [CID:{self.correlation_id}]: {str(e)}")
            return False

        with self._snapshot_lock:
            self._snapshot = list(records)
            self._snapshot_version += 1
        self.logger.info(f"Snapshot replaced with {len(records)} assets [CID:{self.correlation_id}]")
        return True

    def refresh_prices(self) -> bool:
        with self._snapshot_lock:
            current = list(self._snapshot)
            version = self._snapshot_version

        if not current:
            self.logger.debug("No snapshot yet, skipping price refresh")
            return False

        updated = self.service.update_prices(current)

        with self._snapshot_lock:
            if self._snapshot_version != version:
                self.logger.info("Listing changed during price refresh, discarding merged prices")
                return False
            self._snapshot = updated
        return True

    def register_jobs(self) -> None:
        scheduler_config = self.settings.get("scheduler", {})
        self.scheduler.register_job(
            name="full_listing",
            func=self.refresh_listing,
            interval_seconds=scheduler_config.get("full_listing_seconds", 300),
        )
        # First price tick waits one interval so it runs against a loaded listing
        self.scheduler.register_job(
            name="price_refresh",
            func=self.refresh_prices,
            interval_seconds=scheduler_config.get("price_refresh_seconds", 10),
            run_immediately=False,
        )
        self.logger.info(f"Refresh jobs registered [CID:{self.correlation_id}]")

    def summary(self, top: int = 10) -> Dict[str, Any]:
        snapshot = self.snapshot
        return {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "assets": len(snapshot),
            "top": [
                {
                    "rank": asset.rank,
                    "symbol": asset.symbol,
                    "price": asset.price,
                    "previous_price": asset.previous_price,
                    "market_cap": asset.market_cap,
                    "change_24h": asset.change_24h,
                }
                for asset in snapshot[:top]
            ],
            "health": self.service.health_check(),
        }

    def run_once(self) -> bool:
        self.logger.info(f"Running a single listing fetch and price update [CID:{self.correlation_id}]")
        if not self.refresh_listing():
            return False
        self.refresh_prices()
        return True

    def _handle_shutdown_signal(self, signum, frame):
        self.logger.info(f"Shutdown signal received (signal={signum}) [CID:{self.correlation_id}]")
        self.shutdown_event.set()

    def start(self) -> None:
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)

        self.logger.info("=" * 60)
        self.logger.info("tokenfeed market data refresh")
        self.logger.info(f"Start Time: {datetime.now(timezone.utc).isoformat()}")
        self.logger.info(f"Correlation ID: {self.correlation_id}")
        self.logger.info("=" * 60)

        try:
            self.register_jobs()
            self.scheduler.start()
            while not self.shutdown_event.is_set():
                self.shutdown_event.wait(1.0)
        except KeyboardInterrupt:
            self.logger.info(f"Keyboard interrupt received [CID:{self.correlation_id}]")
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.logger.info(f"Initiating graceful shutdown [CID:{self.correlation_id}]...")
        self.service.cancel()
        try:
            self.scheduler.stop()
        except Exception as e:
            self.logger.warning(f"Error stopping scheduler [CID:{self.correlation_id}]: {str(e)}")
        self.service.close()
        self.logger.info(f"Shutdown complete [CID:{self.correlation_id}]")


def main() -> int:
    try:
        config_path = os.environ.get("TOKENFEED_CONFIG", "config/settings.json")
        orchestrator = FeedOrchestrator(config_path)
        set_correlation_id(orchestrator.correlation_id)

        run_once = os.environ.get("TOKENFEED_RUN_ONCE", "").strip().lower() in RUN_ONCE_VALUES
        if run_once or not orchestrator.settings.get("scheduler", {}).get("enabled", True):
            try:
                ok = orchestrator.run_once()
                print(json.dumps(orchestrator.summary(), indent=2, default=str))
            finally:
                orchestrator.service.close()
            return 0 if ok else 1

        orchestrator.start()
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        return 1
    finally:
        shutdown_logger()


if __name__ == "__main__":
    raise SystemExit(main())
