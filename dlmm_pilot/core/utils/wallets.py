from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from solders.keypair import Keypair


def load_keypair(path: str | Path) -> Keypair | None:
    """Load a Solana CLI keypair file (JSON array of 64 secret-key bytes)."""
    key_path = Path(path).expanduser()
    try:
        secret = json.loads(key_path.read_text())
        return Keypair.from_bytes(bytes(secret))
    except (OSError, ValueError, TypeError) as exc:
        logger.error(f"Failed to load keypair from {key_path}: {exc}")
        return None


def write_keypair(keypair: Keypair, path: str | Path) -> Path:
    key_path = Path(path).expanduser()
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(json.dumps(list(bytes(keypair))))
    return key_path
