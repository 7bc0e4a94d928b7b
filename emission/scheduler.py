"""
Emission Scheduler — runs every engine component in a single AsyncIO event loop.

    ┌───────────────────────────────────────────────┐
    │               AsyncIO Event Loop              │
    │                                               │
    │  ┌──────────────────┐  ┌───────────────────┐  │
    │  │ DueTimeNotifier  │  │ BroadcastWindow-  │  │
    │  │ (poll every 60s) │  │ Scheduler (timers)│  │
    │  └────────┬─────────┘  └─────────┬─────────┘  │
    │           │                      │            │
    │           │            ┌─────────┴─────────┐  │
    │           │            │ BroadcastDispatch │  │
    │           │            │ (render + fan-out)│  │
    │           │            └─────────┬─────────┘  │
    │  ┌────────┴──────────────────────┴─────────┐  │
    │  │ DeliveryRetrier → TelegramChannel       │  │
    │  │ (one aiohttp session, 30 msg/s cap)     │  │
    │  └─────────────────────────────────────────┘  │
    │                                               │
    │  profit midnight loop · heartbeat (5 min)     │
    └───────────────────────────────────────────────┘

Signals:
    SIGTERM / SIGINT → graceful shutdown
    SIGHUP           → reload broadcast settings and re-plan today
"""

import asyncio
import logging
import os
import signal
from typing import List, Optional

import pytz

import config
from database import Heartbeat, ProfitEvent, ensure_indexes, utcnow
from emission.alerts import alert_config_invalid, send_daily_summary
from emission.broadcast_scheduler import BroadcastWindowScheduler
from emission.cards import CardRenderer
from emission.channel import TelegramChannel
from emission.dispatcher import BroadcastDispatcher
from emission.notifier import DueTimeNotifier
from emission.profit_generator import ProfitEventGenerator
from emission.retrier import DeliveryRetrier
from emission.settings import ConfigurationError

logger = logging.getLogger("emission.scheduler")

HEARTBEAT_SECONDS = 300
SHUTDOWN_GRACE_SECONDS = 15
MIN_ROLLOVER_WAIT_SECONDS = 1.0


class EmissionScheduler:
    """
    Main orchestrator.

    Lifecycle:
        scheduler = EmissionScheduler()
        await scheduler.start()   # blocks until SIGTERM/SIGINT
    """

    def __init__(self, channel: TelegramChannel = None, renderer: CardRenderer = None):
        self.tz = pytz.timezone(config.TARGET_TIMEZONE)
        self.channel = channel or TelegramChannel()
        self.retrier = DeliveryRetrier(self.channel)
        self.generator = ProfitEventGenerator()
        self.notifier = DueTimeNotifier(self.retrier)
        self.dispatcher = BroadcastDispatcher(renderer or CardRenderer(), self.retrier)
        self.broadcasts = BroadcastWindowScheduler(self.dispatcher.dispatch)

        self._shutdown = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        logger.info("=" * 60)
        logger.info("Emission Engine — Starting")
        logger.info("=" * 60)
        logger.info(f"Profit day timezone: {config.TARGET_TIMEZONE}")
        logger.info(f"Profit events/day: {config.PROFIT_EVENTS_MIN}-{config.PROFIT_EVENTS_MAX}")
        logger.info(f"Notifier poll: every {config.NOTIFIER_POLL_SECONDS}s")
        logger.info(
            f"Delivery: {config.DELIVERY_MAX_ATTEMPTS} attempts, "
            f"backoff {config.BACKOFF_BASE_SECONDS}-{config.BACKOFF_CEILING_SECONDS}s, "
            f"cap {config.CHANNEL_MAX_PER_SECOND}/s"
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)
        loop.add_signal_handler(signal.SIGHUP, self._handle_reload)

        await self._startup_phase()

        self._tasks = [
            asyncio.create_task(self.notifier.run_periodic(self._shutdown), name="notifier"),
            asyncio.create_task(self.broadcasts.run(self._shutdown), name="broadcast_scheduler"),
            asyncio.create_task(self._profit_midnight_loop(), name="profit_midnight"),
            asyncio.create_task(self._heartbeat_loop(), name="heartbeat"),
        ]
        logger.info(f"Workers launched: {[t.get_name() for t in self._tasks]}")

        await self._shutdown.wait()
        await self._graceful_shutdown()

    async def _startup_phase(self):
        logger.info("── Startup Phase ──")

        await asyncio.to_thread(ensure_indexes)

        released = await asyncio.to_thread(ProfitEvent.release_stale_claims, config.CLAIM_TIMEOUT_MINUTES)
        if released:
            logger.warning(f"Released {released} stale claims from a previous run")

        stats = await asyncio.to_thread(self.generator.generate_for_all)
        logger.info(f"Profit batches for {self.generator.day_key()}: {stats}")

    async def _profit_midnight_loop(self):
        """Generate each new local day's batches right after local midnight."""
        while not self._shutdown.is_set():
            now = utcnow()
            finished_day = self.generator.day_key(now)
            wait = (self.generator.next_midnight(now) - now).total_seconds()
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=max(MIN_ROLLOVER_WAIT_SECONDS, wait))
                break
            except asyncio.TimeoutError:
                pass

            logger.info(f"profit_midnight_rollover: {finished_day} → {self.generator.day_key()}")
            try:
                await asyncio.to_thread(self.generator.generate_for_all)
            except Exception as e:
                logger.error(f"Midnight profit generation failed: {e}", exc_info=True)

            await send_daily_summary(finished_day)

    async def _heartbeat_loop(self):
        """Write heartbeat to MongoDB every 5 minutes for health monitoring."""
        while not self._shutdown.is_set():
            try:
                await asyncio.to_thread(Heartbeat.beat, os.getpid())
            except Exception as e:
                logger.error(f"Heartbeat write failed: {e}")

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=HEARTBEAT_SECONDS)
                break
            except asyncio.TimeoutError:
                continue

    async def reconfigure(self) -> Optional[int]:
        """
        Re-read broadcast settings and re-plan today.
        Returns the number of armed fire times, or None when the settings
        were rejected (the previous plan stays armed).
        """
        try:
            fire_times = self.broadcasts.reschedule()
        except ConfigurationError as e:
            logger.error(f"Reconfiguration rejected: {e}")
            await alert_config_invalid(str(e))
            return None
        except Exception as e:
            logger.error(f"Reconfiguration failed, previous plan kept: {e}", exc_info=True)
            return None
        return len(fire_times)

    def _handle_reload(self):
        logger.info("Received SIGHUP, reloading broadcast settings")
        asyncio.ensure_future(self.reconfigure())

    def _handle_signal(self, sig):
        logger.info(f"Received {sig.name}, initiating graceful shutdown...")
        self._shutdown.set()

    async def _graceful_shutdown(self):
        """
        1. Stop arming and polling
        2. Wait for in-flight sends (max 15s)
        3. Release the HTTP session
        """
        logger.info("── Graceful Shutdown ──")

        self.notifier.request_shutdown()
        self.broadcasts.cancel_all()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.broadcasts.wait_in_flight(timeout=SHUTDOWN_GRACE_SECONDS)
        await self.channel.close()

        try:
            await asyncio.to_thread(Heartbeat.stopped)
        except Exception as e:
            logger.error(f"Final heartbeat failed: {e}")

        logger.info("Shutdown complete")


async def main():
    """Entry point for the emission engine."""
    scheduler = EmissionScheduler()
    await scheduler.start()
