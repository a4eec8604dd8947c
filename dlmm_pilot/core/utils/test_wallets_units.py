from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from solders.keypair import Keypair

from dlmm_pilot.core.utils.units import from_raw_amount, to_lamports, to_raw_amount
from dlmm_pilot.core.utils.wallets import load_keypair, write_keypair


def test_keypair_file_roundtrip(tmp_path: Path) -> None:
    kp = Keypair()
    path = write_keypair(kp, tmp_path / "keys" / "id.json")

    loaded = load_keypair(path)
    assert loaded is not None
    assert loaded.pubkey() == kp.pubkey()


def test_load_keypair_returns_none_for_missing_or_malformed(tmp_path: Path) -> None:
    assert load_keypair(tmp_path / "missing.json") is None

    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2, 3]")
    assert load_keypair(bad) is None

    garbage = tmp_path / "garbage.json"
    garbage.write_text("not json")
    assert load_keypair(garbage) is None


def test_to_lamports_rounds_down() -> None:
    assert to_lamports(1) == 1_000_000_000
    assert to_lamports("0.5") == 500_000_000
    assert to_lamports(0.1234567899) == 123_456_789
    assert to_raw_amount(Decimal("1.5"), 6) == 1_500_000


def test_to_raw_amount_rejects_bad_input() -> None:
    with pytest.raises(ValueError):
        to_raw_amount(-1)
    with pytest.raises(ValueError):
        to_raw_amount("abc")


def test_from_raw_amount() -> None:
    assert from_raw_amount(2_500_000_000) == 2.5
