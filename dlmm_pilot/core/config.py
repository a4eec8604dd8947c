import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_CONFIG_ENV_KEYS = ("DLMM_PILOT_CONFIG_PATH", "DLMM_PILOT_CONFIG")
_DEFAULT_CONFIG_FILENAME = "config.json"

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_METEORA_API_BASE = "https://dlmm-api.meteora.ag"
DEFAULT_ADVISOR_COMMAND = (
    "claude",
    "-p",
    "--model",
    "haiku",
    "--output-format",
    "text",
    "--no-session-persistence",
)


def _find_project_root(start: Path) -> Path | None:
    cur = start.resolve()
    for parent in [cur, *cur.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return None


def _project_root() -> Path | None:
    return _find_project_root(Path.cwd()) or _find_project_root(Path(__file__).parent)


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser()

    env_path = next(
        (os.getenv(k, "").strip() for k in _CONFIG_ENV_KEYS if os.getenv(k)), ""
    )
    if env_path:
        p = Path(env_path).expanduser()
        if p.is_absolute():
            return p
        root = _project_root()
        return (root / p) if root else p

    root = _project_root()
    return (root / _DEFAULT_CONFIG_FILENAME) if root else Path(_DEFAULT_CONFIG_FILENAME)


def load_config_json(
    path: str | Path | None = None, *, require_exists: bool = False
) -> dict[str, Any]:
    cfg_path = resolve_config_path(path)
    if not cfg_path.exists():
        if require_exists:
            raise FileNotFoundError(f"Config file not found: {cfg_path}")
        return {}
    try:
        return json.loads(cfg_path.read_text())
    except (OSError, ValueError):
        return {}


CONFIG: dict[str, Any] = load_config_json()


def set_config(config: dict[str, Any]) -> None:
    """Replace the global CONFIG dict in-place.

    This allows code that imported CONFIG at module import time to see updates.
    """
    CONFIG.clear()
    CONFIG.update(config)


def load_config(
    path: str | Path | None = None, *, require_exists: bool = False
) -> None:
    """Load config from disk into the global CONFIG dict."""
    set_config(load_config_json(path, require_exists=require_exists))


def _section(name: str) -> dict[str, Any]:
    value = CONFIG.get(name, {})
    return value if isinstance(value, dict) else {}


def _env_float(key: str, default: float) -> float:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key, "").strip().lower()
    if not raw:
        return bool(default)
    return raw not in ("0", "false", "no", "off")


@dataclass(frozen=True)
class MonitoringSettings:
    interval_s: float = 120.0
    fee_claim_threshold: float = 0.01  # home-asset units
    rebalance_enabled: bool = True
    alert_dedup_s: float = 30 * 60
    position_check_timeout_s: float = 90.0


@dataclass(frozen=True)
class AdvisorSettings:
    enabled: bool = True
    timeout_s: float = 15.0
    cache_ttl_s: int = 120
    command: tuple[str, ...] = field(default=DEFAULT_ADVISOR_COMMAND)


@dataclass(frozen=True)
class PoolFilters:
    min_volume_24h: float = 10_000.0
    min_liquidity: float = 50_000.0


def get_monitoring_settings() -> MonitoringSettings:
    cfg = _section("monitoring")
    d = MonitoringSettings()
    return MonitoringSettings(
        interval_s=_env_float("MONITOR_INTERVAL_S", cfg.get("interval_s", d.interval_s)),
        fee_claim_threshold=_env_float(
            "FEE_CLAIM_THRESHOLD_SOL",
            cfg.get("fee_claim_threshold", d.fee_claim_threshold),
        ),
        rebalance_enabled=_env_bool(
            "REBALANCE_ENABLED", cfg.get("rebalance_enabled", d.rebalance_enabled)
        ),
        alert_dedup_s=float(cfg.get("alert_dedup_s", d.alert_dedup_s)),
        position_check_timeout_s=float(
            cfg.get("position_check_timeout_s", d.position_check_timeout_s)
        ),
    )


def get_advisor_settings() -> AdvisorSettings:
    cfg = _section("advisor")
    d = AdvisorSettings()
    command = cfg.get("command")
    return AdvisorSettings(
        enabled=_env_bool("ADVISOR_ENABLED", cfg.get("enabled", d.enabled)),
        timeout_s=_env_float("ADVISOR_TIMEOUT_S", cfg.get("timeout_s", d.timeout_s)),
        cache_ttl_s=int(
            _env_float("ADVISOR_CACHE_S", cfg.get("cache_ttl_s", d.cache_ttl_s))
        ),
        command=tuple(str(c) for c in command) if command else d.command,
    )


def get_pool_filters(*, degen: bool = False) -> PoolFilters:
    cfg = _section("pool_filters")
    key = "degen" if degen else "default"
    overrides = cfg.get(key, {}) if isinstance(cfg.get(key), dict) else {}
    if degen:
        d = PoolFilters(min_volume_24h=5_000.0, min_liquidity=5_000.0)
    else:
        d = PoolFilters()
    return PoolFilters(
        min_volume_24h=float(overrides.get("min_volume_24h", d.min_volume_24h)),
        min_liquidity=float(overrides.get("min_liquidity", d.min_liquidity)),
    )


def get_meteora_api_base() -> str:
    api = _section("system").get("meteora_api_base")
    if api:
        return str(api).strip().rstrip("/")
    return DEFAULT_METEORA_API_BASE


def get_rpc_url() -> str:
    rpc = _section("system").get("rpc_url")
    if rpc:
        return str(rpc).strip()
    return os.environ.get("SOLANA_RPC_URL", DEFAULT_RPC_URL)


def get_keypair_path() -> Path | None:
    value = _section("system").get("keypair_path") or os.environ.get(
        "WALLET_KEYPAIR_PATH"
    )
    if not value:
        return None
    return Path(str(value)).expanduser()


def get_store_path() -> Path:
    value = _section("system").get("db_path")
    if value:
        return Path(str(value)).expanduser()
    root = _project_root() or Path.cwd()
    return root / ".dlmm_pilot" / "positions.db"
