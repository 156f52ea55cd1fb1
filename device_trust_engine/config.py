import math
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")

AUTOMATION_SIGNATURES: Tuple[str, ...] = (
    "bot",
    "crawler",
    "spider",
    "headless",
    "phantomjs",
    "selenium",
    "puppeteer",
    "playwright",
    "curl",
    "wget",
    "python-requests",
    "scrapy",
)

# declared platform prefix -> identifier tokens that confirm it
PLATFORM_TOKENS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("win", ("windows",)),
    ("mac", ("mac",)),
    ("iphone", ("iphone",)),
    ("ipad", ("ipad", "macintosh")),
    ("android", ("android",)),
    ("linux", ("linux", "android", "cros")),
)


@dataclass(slots=True)
class RiskWeights:
    """Additive weights for the per-request risk rules."""

    private_origin: float = 0.1
    weak_identifier: float = 0.3
    automation_signature: float = 0.5
    platform_mismatch: float = 0.2
    cookies_disabled: float = 0.1
    do_not_track: float = 0.0
    headless: float = 0.2
    excessive_cpu: float = 0.1
    excessive_memory: float = 0.1
    rate_exceeded: float = 0.3

    min_identifier_length: int = 20
    min_font_count: int = 5
    max_plausible_cpu: int = 32
    max_plausible_memory: float = 32.0
    automation_signatures: Tuple[str, ...] = AUTOMATION_SIGNATURES
    platform_tokens: Tuple[Tuple[str, Tuple[str, ...]], ...] = PLATFORM_TOKENS


@dataclass(slots=True)
class TrustConfig:
    seed_trust_clean: float = 0.7
    seed_trust_risky: float = 0.3
    seed_risk_cutoff: float = 0.3
    tenure_increment: float = 0.01
    tenure_saturation: timedelta = timedelta(days=30)
    event_penalty: float = 0.005
    max_event_penalty: float = 0.05
    recent_window: timedelta = timedelta(hours=24)
    risk_damping: float = 0.3
    manual_trust_bonus: float = 0.3
    auto_block_trust_floor: Optional[float] = None
    max_events: int = 100
    max_tracked_origins: int = 32
    max_tracked_identifiers: int = 32

    @property
    def min_recovery_requests(self) -> int:
        """Clean requests needed before one maximal-risk request can be undone."""
        if self.tenure_increment <= 0:
            return 0
        return math.floor((self.risk_damping - self.tenure_increment) / self.tenure_increment + 1e-9)


@dataclass(slots=True)
class RateLimitConfig:
    window: timedelta = timedelta(seconds=60)
    ceiling: int = 100
    max_tracked_origins: int = 100_000
    max_owners_per_origin: int = 64


@dataclass(slots=True)
class DecisionThresholds:
    block_risk: float = 0.9
    warn_risk: float = 0.5
    suspicious_trust: float = 0.3
    degraded_trust: float = 0.5


@dataclass(slots=True)
class EngineConfig:
    """Configuration for the device trust engine thresholds and behavior."""

    weights: RiskWeights = field(default_factory=RiskWeights)
    trust: TrustConfig = field(default_factory=TrustConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    thresholds: DecisionThresholds = field(default_factory=DecisionThresholds)
    fingerprint_length: int = 32
    lock_stripes: int = 256

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        config = cls()
        config.rate_limit.ceiling = _read(env, "DEVICE_TRUST_RATE_CEILING", int, config.rate_limit.ceiling)
        config.rate_limit.window = timedelta(
            seconds=_read(env, "DEVICE_TRUST_RATE_WINDOW_SECONDS", float, config.rate_limit.window.total_seconds())
        )
        config.thresholds.block_risk = _read(env, "DEVICE_TRUST_BLOCK_RISK", float, config.thresholds.block_risk)
        config.thresholds.warn_risk = _read(env, "DEVICE_TRUST_WARN_RISK", float, config.thresholds.warn_risk)
        config.thresholds.suspicious_trust = _read(
            env, "DEVICE_TRUST_SUSPICIOUS_TRUST", float, config.thresholds.suspicious_trust
        )
        config.trust.risk_damping = _read(env, "DEVICE_TRUST_RISK_DAMPING", float, config.trust.risk_damping)
        config.trust.tenure_increment = _read(
            env, "DEVICE_TRUST_TENURE_INCREMENT", float, config.trust.tenure_increment
        )
        floor = env.get("DEVICE_TRUST_AUTO_BLOCK_FLOOR")
        if floor:
            config.trust.auto_block_trust_floor = float(floor)
        return config


def _read(env: Mapping[str, str], name: str, cast: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return cast(raw)
