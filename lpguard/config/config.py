"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

from lpguard.core.json_utils import dumps

load_dotenv()

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _list_env(key: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return tuple(default)
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    owner: str = ""
    pools: Tuple[str, ...] = ()
    reference_asset: str = SOL_MINT
    price_api_url: str = "https://api.jup.ag"
    state_dir: str = "state"
    # Loop cadence (seconds)
    risk_interval_sec: float = 900.0
    rebalance_interval_sec: float = 1800.0
    order_poll_interval_sec: float = 60.0
    fee_claim_interval_sec: float = 10800.0
    auto_claim_enabled: bool = False
    auto_compound_enabled: bool = False
    # Circuit breakers
    max_drawdown_pct: float = 0.10  # fraction, 0.10 == 10%
    volume_drop_ratio: float = 0.5
    reduction_bps: int = 5000
    volume_window_sec: float = 21600.0
    # Range geometry
    drift_bins: int = 6
    edge_bins: int = 4
    near_edge_low_pct: float = 30.0
    near_edge_high_pct: float = 70.0
    limit_tolerance_pct: float = 0.01
    single_sided_bin_width: int = 69
    rebalance_cooldown_sec: float = 900.0
    # Remote calls
    retry_attempts: int = 3
    retry_base_delay_sec: float = 0.5
    retry_max_delay_sec: float = 8.0
    http_timeout: float = 10.0
    price_cache_ttl_ms: int = 5000
    stable_assets: Tuple[str, ...] = (USDC_MINT, USDT_MINT)
    fee_history_max: int = 500
    # Observability
    log_file: str = "lpguard.log"
    log_level: str = "INFO"
    metrics_port: int = 0

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return self.__dict__.copy()

    @property
    def positions_path(self) -> str:
        return os.path.join(self.state_dir, "positions.json")

    @property
    def orders_path(self) -> str:
        return os.path.join(self.state_dir, "orders.json")

    @property
    def order_history_path(self) -> str:
        return os.path.join(self.state_dir, "order_history.json")

    @classmethod
    def load(cls) -> "Settings":
        owner = os.getenv("LP_OWNER", "")
        if not owner:
            raise RuntimeError("Missing LP_OWNER")
        cfg = cls(
            owner=owner,
            pools=_list_env("LP_POOLS"),
            reference_asset=os.getenv("LP_REFERENCE_ASSET", SOL_MINT),
            price_api_url=os.getenv("LP_PRICE_API_URL", "https://api.jup.ag"),
            state_dir=os.getenv("LP_STATE_DIR", "state"),
            risk_interval_sec=_float_env("LP_RISK_INTERVAL_SEC", 900),
            rebalance_interval_sec=_float_env("LP_REBALANCE_INTERVAL_SEC", 1800),
            order_poll_interval_sec=_float_env("LP_ORDER_POLL_INTERVAL_SEC", 60),
            fee_claim_interval_sec=_float_env("LP_FEE_CLAIM_INTERVAL_SEC", 10800),
            auto_claim_enabled=env_bool("LP_AUTO_CLAIM_ENABLED", False),
            auto_compound_enabled=env_bool("LP_AUTO_COMPOUND_ENABLED", False),
            max_drawdown_pct=_float_env("LP_MAX_DRAWDOWN_PCT", 0.10),
            volume_drop_ratio=_float_env("LP_VOLUME_DROP_RATIO", 0.5),
            reduction_bps=_int_env("LP_REDUCTION_BPS", 5000),
            volume_window_sec=_float_env("LP_VOLUME_WINDOW_SEC", 21600),
            drift_bins=_int_env("LP_DRIFT_BINS", 6),
            edge_bins=_int_env("LP_EDGE_BINS", 4),
            near_edge_low_pct=_float_env("LP_NEAR_EDGE_LOW_PCT", 30),
            near_edge_high_pct=_float_env("LP_NEAR_EDGE_HIGH_PCT", 70),
            limit_tolerance_pct=_float_env("LP_LIMIT_TOLERANCE_PCT", 0.01),
            single_sided_bin_width=_int_env("LP_SINGLE_SIDED_BIN_WIDTH", 69),
            rebalance_cooldown_sec=_float_env("LP_REBALANCE_COOLDOWN_SEC", 900),
            retry_attempts=_int_env("LP_RETRY_ATTEMPTS", 3),
            retry_base_delay_sec=_float_env("LP_RETRY_BASE_DELAY_SEC", 0.5),
            retry_max_delay_sec=_float_env("LP_RETRY_MAX_DELAY_SEC", 8.0),
            http_timeout=_float_env("LP_HTTP_TIMEOUT", 10.0),
            price_cache_ttl_ms=_int_env("LP_PRICE_CACHE_TTL_MS", 5000),
            stable_assets=_list_env("LP_STABLE_ASSETS", (USDC_MINT, USDT_MINT)),
            fee_history_max=_int_env("LP_FEE_HISTORY_MAX", 500),
            log_file=os.getenv("LP_LOG_FILE", "lpguard.log"),
            log_level=os.getenv("LP_LOG_LEVEL", "INFO").upper(),
            metrics_port=_int_env("LP_METRICS_PORT", 0),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        for name in (
            "risk_interval_sec",
            "rebalance_interval_sec",
            "order_poll_interval_sec",
            "fee_claim_interval_sec",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"LP_{name.upper()} must be > 0")
        if not 0 < self.max_drawdown_pct < 1:
            raise ValueError("LP_MAX_DRAWDOWN_PCT must be a fraction in (0, 1)")
        if not 0 < self.volume_drop_ratio < 1:
            raise ValueError("LP_VOLUME_DROP_RATIO must be in (0, 1)")
        if not 1 <= self.reduction_bps <= 10000:
            raise ValueError("LP_REDUCTION_BPS must be within [1, 10000]")
        if self.drift_bins <= 0 or self.edge_bins < 0:
            raise ValueError("LP_DRIFT_BINS must be > 0 and LP_EDGE_BINS >= 0")
        if not 0 <= self.near_edge_low_pct < self.near_edge_high_pct <= 100:
            raise ValueError("near-edge band must satisfy 0 <= low < high <= 100")
        if self.single_sided_bin_width <= 0:
            raise ValueError("LP_SINGLE_SIDED_BIN_WIDTH must be > 0")
        if self.retry_attempts < 1:
            raise ValueError("LP_RETRY_ATTEMPTS must be >= 1")
        if self.retry_base_delay_sec < 0 or self.retry_max_delay_sec < self.retry_base_delay_sec:
            raise ValueError("retry delays must satisfy 0 <= base <= max")

        log = logging.getLogger("lpguard")
        if not self.pools:
            log.warning("LP_POOLS is empty; volume baseline and chain sync will see no pools")
        if self.reduction_bps == 10000:
            log.warning("LP_REDUCTION_BPS=10000: drawdown breaker will fully close positions")
        if self.auto_compound_enabled and not self.auto_claim_enabled:
            log.warning("LP_AUTO_COMPOUND_ENABLED has no effect without LP_AUTO_CLAIM_ENABLED")


def _sanity_check(cfg: Settings) -> None:
    logging.getLogger("lpguard").info(dumps({"event": "config_loaded", **cfg.dump()}))
