"""Runtime configuration read from environment variables.

`main.py` calls `load_dotenv()` before building the config, so values may
also come from a `.env` file next to the application.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from utils.exceptions import ConfigurationError

REENTRY_POLICIES = ("calendar_day", "rolling", "off")


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name}={raw!r} is not an integer") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    # Only the literal "false" switches a flag off.
    return (env.get(name) or "").strip().lower() != "false"


@dataclass(frozen=True)
class QCConfig:
    """Recognised options for the inspection core.

    Attributes:
        max_parallel_items: Active items allowed per session at once.
        step_timeout_minutes: Age after which an active item is logged as overdue.
        scan_cooldown_ms: Window during which an accepted code is ignored.
        immediate_repeat_ms: Window for repeats of the last processed code.
        max_scans_per_minute: Per-session sliding window cap.
        require_both_scans: When False an entry scan completes the item at once.
        allow_rework: Flag defective items for rework and allow their re-entry.
        enable_audit_log: Write audit events for every transition.
        auto_abort_on_session_end: Abort open items when a session ends.
        default_priority: Priority (1-3) for new items.
        reentry_policy: One of `calendar_day`, `rolling` or `off`.
        reentry_window_hours: Window length for the `rolling` policy.
        session_timer_seconds: Tick interval of per-session timers.
    """

    max_parallel_items: int = 10
    step_timeout_minutes: int = 120
    scan_cooldown_ms: int = 3000
    immediate_repeat_ms: int = 2000
    max_scans_per_minute: int = 30
    require_both_scans: bool = True
    allow_rework: bool = True
    enable_audit_log: bool = True
    auto_abort_on_session_end: bool = True
    default_priority: int = 1
    reentry_policy: str = "calendar_day"
    reentry_window_hours: int = 24
    session_timer_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_parallel_items < 1:
            raise ConfigurationError("max_parallel_items must be at least 1")
        if not 1 <= self.default_priority <= 3:
            raise ConfigurationError("default_priority must be between 1 and 3")
        if self.reentry_policy not in REENTRY_POLICIES:
            raise ConfigurationError(
                f"Unknown re-entry policy {self.reentry_policy!r}; expected one of {', '.join(REENTRY_POLICIES)}"
            )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "QCConfig":
        """Build a config from `env` (defaults to `os.environ`)."""
        env = os.environ if env is None else env
        policy = (env.get("QC_REENTRY_POLICY") or "calendar_day").strip().lower()
        return cls(
            max_parallel_items=_env_int(env, "QC_MAX_PARALLEL_STEPS_PER_SESSION", 10, minimum=1),
            step_timeout_minutes=_env_int(env, "QC_STEP_TIMEOUT_MINUTES", 120, minimum=1),
            scan_cooldown_ms=_env_int(env, "QC_SCAN_COOLDOWN_MS", 3000),
            immediate_repeat_ms=_env_int(env, "QC_IMMEDIATE_REPEAT_MS", 2000),
            max_scans_per_minute=_env_int(env, "QC_MAX_SCANS_PER_MINUTE", 30, minimum=1),
            require_both_scans=_env_flag(env, "QC_REQUIRE_BOTH_SCANS"),
            allow_rework=_env_flag(env, "QC_ALLOW_REWORK"),
            enable_audit_log=_env_flag(env, "QC_ENABLE_AUDIT_LOG"),
            auto_abort_on_session_end=_env_flag(env, "QC_AUTO_ABORT_ON_SESSION_END"),
            default_priority=_env_int(env, "QC_DEFAULT_PRIORITY", 1, minimum=1),
            reentry_policy=policy,
            reentry_window_hours=_env_int(env, "QC_REENTRY_WINDOW_HOURS", 24, minimum=1),
            session_timer_seconds=float(_env_int(env, "QC_SESSION_TIMER_SECONDS", 30, minimum=1)),
        )

    def limits(self) -> dict:
        """Return the limits section used in session overviews."""
        return {
            "max_parallel_items": self.max_parallel_items,
            "step_timeout_minutes": self.step_timeout_minutes,
            "max_scans_per_minute": self.max_scans_per_minute,
        }
