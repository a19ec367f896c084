import argparse
import asyncio
import contextlib
import logging
import signal
from typing import Dict, List, Optional

from aiohttp import web

from . import __version__
from .aggregator import BatchAggregator
from .config import AppConfig, load_config
from .errors import ConfigurationError, LedgerError
from .ledger import LedgerClient
from .logging_config import setup_logging
from .metadata import MetadataReconciler, MetadataService
from .rpc import RPCClient
from .source import EventSource
from .storage import OperationQueue

logger = logging.getLogger(__name__)


class Bridge:
    def __init__(self, cfg: AppConfig):
        self.cfg = cfg
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.rpc_clients: Dict[int, RPCClient] = {
            c.chain_id: RPCClient(
                c.rpc_url,
                max_retries=cfg.max_rpc_retries,
                timeout_sec=cfg.rpc_timeout_sec,
                name=c.name,
            )
            for c in cfg.chains
        }
        self.ledger = LedgerClient.from_config(cfg)
        self.queue = OperationQueue(
            cfg.sqlite_path,
            retry_delay_sec=cfg.queue_retry_delay_sec,
            max_attempts=cfg.queue_max_attempts,
        )
        self.aggregator = BatchAggregator(
            self.ledger.submit_batch,
            batch_size=cfg.batch_size,
            max_wait_sec=cfg.batch_max_wait_ms / 1000.0,
            check_interval_sec=cfg.batch_check_interval_ms / 1000.0,
            max_rejections=cfg.batch_max_rejections,
            on_rejected=self.queue.park,
        )
        self.metadata = MetadataService(
            {c.name: self.rpc_clients[c.chain_id] for c in cfg.chains},
            ipfs_gateway=cfg.ipfs_gateway,
        )
        self.reconciler = MetadataReconciler(
            self.ledger,
            self.metadata,
            page_size=cfg.metadata_page_size,
            item_delay_sec=cfg.metadata_item_delay_sec,
            page_delay_sec=cfg.metadata_page_delay_sec,
            idle_delay_sec=cfg.metadata_idle_delay_sec,
            error_cooldown_sec=cfg.metadata_error_cooldown_sec,
        )
        self.source = EventSource(cfg, self.rpc_clients, self.ledger, self.metadata, self.queue)

    async def __aenter__(self) -> "Bridge":
        for rpc in self.rpc_clients.values():
            await rpc.__aenter__()
        await self.ledger.__aenter__()
        await self.metadata.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        await self.metadata.__aexit__(exc_type, exc, tb)
        await self.ledger.__aexit__(exc_type, exc, tb)
        for rpc in self.rpc_clients.values():
            await rpc.__aexit__(exc_type, exc, tb)
        self.queue.close()

    async def health_handler(self, request: web.Request) -> web.Response:
        watchers = [w.snapshot() for w in self.source.watchers.values()]
        return web.json_response(
            {
                "ok": True,
                "version": __version__,
                "queue": self.queue.get_queue_sizes(),
                "paused_queues": len(self.queue.paused),
                "pending_batch": len(self.aggregator),
                "aggregator": dict(self.aggregator.stats),
                "metadata": dict(self.reconciler.stats),
                "watcher_count": len(watchers),
                "watchers": watchers,
            }
        )

    async def create_api_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health_handler)
        return app

    async def start_source(self) -> None:
        try:
            await self.source.start(self.stop_event)
        except LedgerError as e:
            logger.error(f"Could not load contracts from the ledger, retrying on next discovery: {e}")

    async def run(self) -> None:
        recovered = self.queue.recover_in_progress_operations()
        logger.info(f"Starting bridge with {len(self.cfg.chains)} chains, recovered {recovered} operations")

        self.tasks.append(asyncio.create_task(self.queue.consume(self.aggregator.add, self.stop_event)))
        self.tasks.append(asyncio.create_task(self.aggregator.flush_loop(self.stop_event)))
        self.tasks.append(asyncio.create_task(self.queue.log_sizes_loop(self.stop_event)))
        self.tasks.append(asyncio.create_task(self.reconciler.run(self.stop_event)))
        await self.start_source()
        self.tasks.append(asyncio.create_task(self.source.discovery_loop(self.stop_event)))

        runner: Optional[web.AppRunner] = None
        if self.cfg.enable_api:
            app = await self.create_api_app()
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
            await site.start()
            logger.info(f"Health API listening on {self.cfg.api_host}:{self.cfg.api_port}")

        while not self.stop_event.is_set():
            await asyncio.sleep(1)

        if runner is not None:
            await runner.cleanup()

    async def shutdown(self) -> None:
        logger.info("Shutting down bridge")
        self.stop_event.set()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        await self.source.stop()
        try:
            flushed = await self.aggregator.flush(force=True)
            if flushed:
                logger.info(f"Flushed {flushed} operations on shutdown")
        except Exception as e:
            logger.error(f"Final batch flush failed, {len(self.aggregator)} operations were not published: {e}")


async def main_async(config_path: str) -> None:
    cfg = load_config(config_path)
    setup_logging(cfg.log_level)
    async with Bridge(cfg) as bridge:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(bridge.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()
        await bridge.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description=f"nft-bridge v{__version__} EVM to ledger NFT bridge")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config))
    except KeyboardInterrupt:
        pass
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}") from e


if __name__ == "__main__":
    main()
