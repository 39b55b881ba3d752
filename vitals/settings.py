import os


def get_env(name: str, default: str | None = None) -> str:
    v = os.getenv(name, default)
    if v is None:
        raise RuntimeError(f"Missing required env var: {name}")
    return v


def get_float(name: str, default: float) -> float:
    raw = get_env(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid number for env var {name}: {raw}") from exc


def get_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes", "y")


# Per-kind timeout for one adapter sub-query
REFRESH_TIMEOUT_SEC = get_float("REFRESH_TIMEOUT_SEC", 10.0)

# Periodic refresh cadences (lightweight / full)
LIGHT_REFRESH_SEC = get_float("LIGHT_REFRESH_SEC", 60.0)
FULL_REFRESH_SEC = get_float("FULL_REFRESH_SEC", 300.0)

# Timers only run while a viewer is attached; this switch disables them entirely.
TIMERS_ENABLED = get_bool("TIMERS_ENABLED", True)

LOG_LEVEL = get_env("LOG_LEVEL", "INFO").upper()
