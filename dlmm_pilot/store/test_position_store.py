from __future__ import annotations

import time
from pathlib import Path

import pytest

from dlmm_pilot.core.models import (
    AgentMode,
    PositionStatus,
    StrategyConfig,
    StrategyShape,
    TokenSide,
)
from dlmm_pilot.store.db import NewPosition, PositionStore


def _new_position(
    wallet: str = "wallet1",
    *,
    pool: str = "pool1",
    position_address: str = "pos1",
    min_bin_id: int = 101,
    max_bin_id: int = 160,
    rebalance_count: int = 0,
) -> NewPosition:
    return NewPosition(
        wallet_address=wallet,
        pool_address=pool,
        pool_name="SOL-BONK",
        position_address=position_address,
        mode=AgentMode.ASSISTED,
        home_side=TokenSide.X,
        deposit_amount=1.5,
        strategy=StrategyConfig(
            shape=StrategyShape.SPOT, min_bin_id=min_bin_id, max_bin_id=max_bin_id
        ),
        rebalance_count=rebalance_count,
    )


def test_create_and_get_position(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    position_id = store.create_position(_new_position())

    record = store.get_position(position_id)
    assert record.status == PositionStatus.ACTIVE
    assert record.strategy.width == 60
    assert record.home_side == TokenSide.X
    assert record.deposit_amount == 1.5
    assert record.closed_at is None

    ctx = record.rebalance_context()
    assert ctx.prev_min_bin_id == 101
    assert ctx.prev_max_bin_id == 160
    assert ctx.rebalance_count == 0


def test_get_missing_position_raises(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    with pytest.raises(KeyError):
        store.get_position(999)


def test_transition_status_is_compare_and_set(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    position_id = store.create_position(_new_position())

    assert store.transition_status(
        position_id, expected=PositionStatus.ACTIVE, new=PositionStatus.REBALANCING
    )
    # a second claim loses the race
    assert not store.transition_status(
        position_id, expected=PositionStatus.ACTIVE, new=PositionStatus.REBALANCING
    )
    assert store.list_active_positions("wallet1") == []

    assert store.transition_status(
        position_id, expected=PositionStatus.REBALANCING, new=PositionStatus.CLOSED
    )
    record = store.get_position(position_id)
    assert record.status == PositionStatus.CLOSED
    assert record.closed_at is not None


def test_closed_is_terminal(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    position_id = store.create_position(_new_position())
    store.transition_status(
        position_id, expected=PositionStatus.ACTIVE, new=PositionStatus.CLOSED
    )

    assert not store.transition_status(
        position_id, expected=PositionStatus.CLOSED, new=PositionStatus.ACTIVE
    )
    assert store.get_position(position_id).status == PositionStatus.CLOSED


def test_replace_position_links_records(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    old_id = store.create_position(_new_position())
    store.transition_status(
        old_id, expected=PositionStatus.ACTIVE, new=PositionStatus.REBALANCING
    )

    new_id = store.replace_position(
        old_id,
        _new_position(
            pool="pool2", position_address="pos2", min_bin_id=200, max_bin_id=399,
            rebalance_count=1,
        ),
    )

    old = store.get_position(old_id)
    new = store.get_position(new_id)
    assert old.status == PositionStatus.CLOSED
    assert old.rebalance_count == 1
    assert new.status == PositionStatus.ACTIVE
    assert new.rebalance_count == 1
    assert new.pool_address == "pool2"
    assert [p.id for p in store.list_active_positions("wallet1")] == [new_id]


def test_replace_position_requires_rebalancing(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    old_id = store.create_position(_new_position())

    with pytest.raises(KeyError):
        store.replace_position(old_id, _new_position(position_address="pos2"))

    # nothing was inserted
    assert [p.id for p in store.list_positions("wallet1")] == [old_id]
    assert store.get_position(old_id).status == PositionStatus.ACTIVE


def test_list_monitored_wallets_and_stale_recovery(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    a = store.create_position(_new_position("walletA"))
    store.create_position(_new_position("walletB"))
    c = store.create_position(_new_position("walletC"))
    store.transition_status(
        c, expected=PositionStatus.ACTIVE, new=PositionStatus.CLOSED
    )
    store.transition_status(
        a, expected=PositionStatus.ACTIVE, new=PositionStatus.REBALANCING
    )

    assert store.list_monitored_wallets() == ["walletB"]
    assert store.revert_stale_rebalancing() == 1
    assert store.list_monitored_wallets() == ["walletA", "walletB"]


def test_add_earned_fees(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    position_id = store.create_position(_new_position())

    store.add_earned_fees(position_id, 0.02)
    store.add_earned_fees(position_id, 0.03)
    assert store.get_position(position_id).total_fees_earned == pytest.approx(0.05)

    with pytest.raises(KeyError):
        store.add_earned_fees(999, 1.0)


def test_notifications_dedup_window(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    position_id = store.create_position(_new_position())

    assert not store.recent_notification_exists(
        wallet_address="wallet1", position_id=position_id, type="out_of_range",
        within_s=1800,
    )
    store.notify(
        wallet_address="wallet1",
        type="out_of_range",
        title="SOL-BONK out of range",
        message="Consider rebalancing",
        position_id=position_id,
        action_type="rebalance",
    )
    assert store.recent_notification_exists(
        wallet_address="wallet1", position_id=position_id, type="out_of_range",
        within_s=1800,
    )
    later = int(time.time()) + 3600
    assert not store.recent_notification_exists(
        wallet_address="wallet1", position_id=position_id, type="out_of_range",
        within_s=1800, now=later,
    )


def test_list_and_mark_notifications(tmp_path: Path) -> None:
    store = PositionStore(tmp_path / "positions.db")
    first = store.add_notification(
        wallet_address="wallet1", type="info", title="a", message="a"
    )
    store.add_notification(wallet_address="wallet1", type="info", title="b", message="b")
    store.add_notification(wallet_address="wallet2", type="info", title="c", message="c")

    rows = store.list_notifications("wallet1")
    assert [r.title for r in rows] == ["b", "a"]
    assert not any(r.read for r in rows)

    assert store.mark_notifications_read("wallet1", ids=[first]) == 1
    assert [r.title for r in store.list_notifications("wallet1", unread_only=True)] == ["b"]
    assert store.mark_notifications_read("wallet1") == 2
    assert store.list_notifications("wallet1", unread_only=True) == []
