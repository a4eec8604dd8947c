from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass

from loguru import logger
from solders.keypair import Keypair

from dlmm_pilot.agent.fee_claimer import FeeClaimer
from dlmm_pilot.agent.rebalancer import RebalanceOutcome, Rebalancer
from dlmm_pilot.core.chain import ChainQuery, NotificationSink
from dlmm_pilot.core.config import MonitoringSettings, get_monitoring_settings
from dlmm_pilot.core.events import EventBus, EventType
from dlmm_pilot.core.models import PositionStatus
from dlmm_pilot.core.utils.bin_math import is_in_range
from dlmm_pilot.store.db import PositionRecord, PositionStore

OUT_OF_RANGE_NOTIFICATION = "out_of_range"


@dataclass(frozen=True)
class PositionCheck:
    position_id: int
    active_bin_id: int | None = None
    in_range: bool | None = None
    rebalance: RebalanceOutcome | None = None
    notified: bool = False
    fees_claimed: float | None = None
    error: str | None = None


class PositionMonitor:
    """Supervises one polling loop per wallet.

    Each tick loads the wallet's active positions from the store and checks
    them one at a time. A failure or hang in one position's check is logged and
    the tick moves on to the next position.
    """

    def __init__(
        self,
        *,
        store: PositionStore,
        chain: ChainQuery,
        rebalancer: Rebalancer,
        fee_claimer: FeeClaimer,
        events: EventBus,
        notifications: NotificationSink | None = None,
        settings: MonitoringSettings | None = None,
    ) -> None:
        self.store = store
        self.chain = chain
        self.rebalancer = rebalancer
        self.fee_claimer = fee_claimer
        self.events = events
        self.notifications = notifications or store
        self.settings = settings or get_monitoring_settings()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        self._last_alert_at: dict[tuple[str, int], float] = {}
        self.logger = logger.bind(component="monitor")

    # ── lifecycle ──────────────────────────────────────────────────────────

    def is_monitoring(self, wallet_address: str) -> bool:
        task = self._tasks.get(wallet_address)
        return task is not None and not task.done()

    def monitored_wallets(self) -> list[str]:
        return sorted(w for w in self._tasks if self.is_monitoring(w))

    async def start(self, wallet_address: str, signer: Keypair | None = None) -> bool:
        """Start the wallet's loop. Returns False when it is already running."""
        async with self._lock:
            if self.is_monitoring(wallet_address):
                self.logger.info(f"Monitoring already active for {wallet_address}")
                return False
            self.logger.info(
                f"Starting monitoring for {wallet_address} every {self.settings.interval_s}s "
                f"({'auto-rebalance' if signer else 'notify only'})"
            )
            task = asyncio.create_task(
                self._run(wallet_address, signer), name=f"monitor:{wallet_address}"
            )
            task.add_done_callback(
                lambda t, wallet=wallet_address: self._on_loop_done(wallet, t)
            )
            self._tasks[wallet_address] = task
            return True

    def _on_loop_done(self, wallet_address: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(wallet_address) is task:
            del self._tasks[wallet_address]
        self._forget_alerts(wallet_address)
        if not task.cancelled() and task.exception() is not None:
            self.logger.opt(exception=task.exception()).error(
                f"Monitoring loop for {wallet_address} crashed"
            )

    async def stop(self, wallet_address: str) -> bool:
        async with self._lock:
            task = self._tasks.pop(wallet_address, None)
        if task is None:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info(f"Monitoring stopped for {wallet_address}")
        return True

    async def stop_all(self) -> None:
        for wallet in list(self._tasks):
            await self.stop(wallet)

    async def recover(self, signers: Mapping[str, Keypair] | None = None) -> list[str]:
        """Resume loops after a restart for every wallet with active positions."""
        reverted = self.store.revert_stale_rebalancing()
        if reverted:
            self.logger.warning(
                f"Reverted {reverted} position(s) left mid-rebalance by a previous run"
            )
        started: list[str] = []
        for wallet in self.store.list_monitored_wallets():
            signer = (signers or {}).get(wallet)
            if await self.start(wallet, signer):
                started.append(wallet)
        return started

    async def _retire_if_idle(self, wallet_address: str) -> bool:
        """Drop the wallet's loop once it has no active positions left.

        Runs under the start lock so a position recorded concurrently either
        keeps this loop alive or gets a fresh one from ``start``.
        """
        async with self._lock:
            try:
                if self.store.list_active_positions(wallet_address):
                    return False
            except Exception:  # noqa: BLE001
                self.logger.exception(f"Failed to load positions for {wallet_address}")
                return False
            if self._tasks.get(wallet_address) is asyncio.current_task():
                del self._tasks[wallet_address]
        self.logger.info(
            f"No active positions left for {wallet_address}, monitoring stopped"
        )
        return True

    async def _run(self, wallet_address: str, signer: Keypair | None) -> None:
        while not await self._retire_if_idle(wallet_address):
            await self.check_positions(wallet_address, signer)
            await asyncio.sleep(self.settings.interval_s)

    # ── tick ───────────────────────────────────────────────────────────────

    async def check_positions(
        self, wallet_address: str, signer: Keypair | None = None
    ) -> list[PositionCheck]:
        try:
            positions = self.store.list_active_positions(wallet_address)
        except Exception:  # noqa: BLE001
            self.logger.exception(f"Failed to load positions for {wallet_address}")
            return []
        self._forget_alerts(wallet_address, keep={p.id for p in positions})

        results: list[PositionCheck] = []
        for position in positions:
            try:
                results.append(await self._check_position(position, signer))
            except Exception as exc:  # noqa: BLE001
                self.logger.exception(
                    f"Error checking position {position.position_address}"
                )
                results.append(PositionCheck(position_id=position.id, error=str(exc)))
        return results

    async def _check_position(
        self, position: PositionRecord, signer: Keypair | None
    ) -> PositionCheck:
        wallet = position.wallet_address
        try:
            active_bin_id = await asyncio.wait_for(
                self.chain.get_active_bin(position.pool_address),
                timeout=self.settings.position_check_timeout_s,
            )
        except TimeoutError:
            self.logger.warning(
                f"Active bin lookup for {position.pool_name} timed out after "
                f"{self.settings.position_check_timeout_s}s, skipping position {position.id}"
            )
            return PositionCheck(position_id=position.id, error="timeout")

        in_range = is_in_range(active_bin_id, position.min_bin_id, position.max_bin_id)
        self.events.publish(
            wallet,
            EventType.POSITION_CHECK,
            {
                "position_id": position.id,
                "position_address": position.position_address,
                "pool_name": position.pool_name,
                "active_bin_id": active_bin_id,
                "min_bin_id": position.min_bin_id,
                "max_bin_id": position.max_bin_id,
                "in_range": in_range,
            },
        )

        rebalance: RebalanceOutcome | None = None
        notified = False
        if not in_range:
            self.logger.warning(
                f"Position {position.position_address} in {position.pool_name} out of range: "
                f"active bin {active_bin_id}, range {position.min_bin_id}-{position.max_bin_id}"
            )
            self.events.publish(
                wallet,
                EventType.POSITION_OUT_OF_RANGE,
                {
                    "position_id": position.id,
                    "position_address": position.position_address,
                    "pool_name": position.pool_name,
                    "active_bin_id": active_bin_id,
                },
            )
            if signer is not None and self.settings.rebalance_enabled:
                rebalance = await self.rebalancer.rebalance(position, signer)
            else:
                notified = self._notify_out_of_range(position, active_bin_id)

        fees_claimed: float | None = None
        if signer is not None and self._still_active(position.id):
            fees_claimed = await self.fee_claimer.claim_if_above_threshold(
                position, signer
            )

        return PositionCheck(
            position_id=position.id,
            active_bin_id=active_bin_id,
            in_range=in_range,
            rebalance=rebalance,
            notified=notified,
            fees_claimed=fees_claimed,
        )

    def _still_active(self, position_id: int) -> bool:
        try:
            return self.store.get_position(position_id).status == PositionStatus.ACTIVE
        except KeyError:
            return False

    def _forget_alerts(
        self, wallet_address: str, *, keep: set[int] | frozenset[int] = frozenset()
    ) -> None:
        for key in [k for k in self._last_alert_at if k[0] == wallet_address]:
            if key[1] not in keep:
                del self._last_alert_at[key]

    def _recently_alerted(self, position: PositionRecord, now: float) -> bool:
        last = self._last_alert_at.get((position.wallet_address, position.id))
        if last is not None and now - last < self.settings.alert_dedup_s:
            return True
        return self.store.recent_notification_exists(
            wallet_address=position.wallet_address,
            position_id=position.id,
            type=OUT_OF_RANGE_NOTIFICATION,
            within_s=self.settings.alert_dedup_s,
        )

    def _notify_out_of_range(self, position: PositionRecord, active_bin_id: int) -> bool:
        now = time.time()
        if self._recently_alerted(position, now):
            return False
        self.notifications.notify(
            wallet_address=position.wallet_address,
            type=OUT_OF_RANGE_NOTIFICATION,
            title=f"{position.pool_name} out of range",
            message=(
                f"Your position in {position.pool_name} is out of range "
                f"(active bin: {active_bin_id}, your range: {position.min_bin_id}-{position.max_bin_id}). "
                "Consider rebalancing or withdrawing."
            ),
            position_id=position.id,
            action_type="rebalance",
        )
        self._last_alert_at[(position.wallet_address, position.id)] = now
        return True
