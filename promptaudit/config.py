"""Config loading for PromptAudit.

Reads `.promptaudit/config.yaml` (or `~/.promptaudit/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field or malformed
sections. If no config file is found, returns default values (safe to run
without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. PROMPTAUDIT_CONFIG environment variable (if set)
  3. `.promptaudit/config.yaml` (working directory — for development)
  4. `~/.promptaudit/config.yaml` (home directory — for deployments)

Environment variable overrides:
  PROMPTAUDIT_PORT    — overrides server.port
  PROMPTAUDIT_CONFIG  — sets an explicit config file path to try first
  PROMPTAUDIT_DB_PATH — overrides store.path (applied by the store factory)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from promptaudit.constants import (
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_STORE_TIMEOUT_S,
    MAX_LOOKBACK_DAYS,
    PROMPT_PREVIEW_CHARS,
)
from promptaudit.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".promptaudit/config.yaml",
    os.path.expanduser("~/.promptaudit/config.yaml"),
]

DEFAULT_DB_PATH = "~/.promptaudit/promptaudit.db"

_CUSTOM_DETECTOR_FIELDS: tuple[str, ...] = ("category", "pattern", "severity", "label")


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding and CORS configuration.

    cors_origins defaults to any origin: captures are posted by a browser
    extension running on third-party AI tool pages.
    """

    host: str = "127.0.0.1"
    port: int = 3000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class StoreConfig:
    """Persistent store configuration."""

    path: str = DEFAULT_DB_PATH
    timeout_s: float = DEFAULT_STORE_TIMEOUT_S


@dataclass
class CaptureConfig:
    """Capture pipeline configuration."""

    preview_chars: int = PROMPT_PREVIEW_CHARS


@dataclass
class DashboardConfig:
    """Dashboard query defaults."""

    default_days: int = DEFAULT_LOOKBACK_DAYS


@dataclass
class CustomDetectorConfig:
    """One operator-defined detector, appended after the built-in ones.

    The pattern is compiled (and validated) by build_registry() at startup.
    """

    category: str
    pattern: str
    severity: str
    label: str


@dataclass
class DetectorsConfig:
    """Detector registry extensions."""

    custom: list[CustomDetectorConfig] = field(default_factory=list)


@dataclass
class Config:
    """Root configuration object populated from .promptaudit/config.yaml.

    All fields have safe defaults — PromptAudit can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    detectors: DetectorsConfig = field(default_factory=DetectorsConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are ignored.

        Raises:
            SystemExit(1): On a malformed section (see _fail()).
        """
        # ── Server ────────────────────────────────────────────────────────────
        server_raw = _section(raw, "server")
        cors_origins = server_raw.get("cors_origins", ["*"])
        if not isinstance(cors_origins, list) or not all(
            isinstance(o, str) for o in cors_origins
        ):
            _fail("server.cors_origins must be a list of strings.")
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=_int_field(server_raw, "server.port", "port", 3000, minimum=1),
            cors_origins=cors_origins,
        )

        # ── Store ─────────────────────────────────────────────────────────────
        store_raw = _section(raw, "store")
        timeout_s = store_raw.get("timeout_s", DEFAULT_STORE_TIMEOUT_S)
        if isinstance(timeout_s, bool) or not isinstance(timeout_s, (int, float)) or timeout_s <= 0:
            _fail(f"store.timeout_s must be a positive number, got {timeout_s!r}.")
        store = StoreConfig(
            path=store_raw.get("path", DEFAULT_DB_PATH),
            timeout_s=float(timeout_s),
        )

        # ── Capture ───────────────────────────────────────────────────────────
        capture_raw = _section(raw, "capture")
        capture = CaptureConfig(
            preview_chars=_int_field(
                capture_raw, "capture.preview_chars", "preview_chars",
                PROMPT_PREVIEW_CHARS, minimum=1,
            ),
        )

        # ── Dashboard ─────────────────────────────────────────────────────────
        dashboard_raw = _section(raw, "dashboard")
        default_days = _int_field(
            dashboard_raw, "dashboard.default_days", "default_days",
            DEFAULT_LOOKBACK_DAYS, minimum=1,
        )
        if default_days > MAX_LOOKBACK_DAYS:
            _fail(
                f"dashboard.default_days must be at most {MAX_LOOKBACK_DAYS}, "
                f"got {default_days}."
            )
        dashboard = DashboardConfig(default_days=default_days)

        # ── Detectors ─────────────────────────────────────────────────────────
        detectors_raw = _section(raw, "detectors")
        custom_raw = detectors_raw.get("custom", []) or []
        if not isinstance(custom_raw, list):
            _fail("detectors.custom must be a list of detector mappings.")
        custom: list[CustomDetectorConfig] = []
        for index, entry in enumerate(custom_raw):
            if not isinstance(entry, dict):
                _fail(f"detectors.custom[{index}] must be a mapping.")
            missing = [
                name for name in _CUSTOM_DETECTOR_FIELDS
                if not isinstance(entry.get(name), str) or not entry.get(name)
            ]
            if missing:
                _fail(
                    f"detectors.custom[{index}] is missing string field(s): "
                    f"{', '.join(missing)}."
                )
            custom.append(
                CustomDetectorConfig(
                    category=entry["category"],
                    pattern=entry["pattern"],
                    severity=entry["severity"],
                    label=entry["label"],
                )
            )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            store=store,
            capture=capture,
            dashboard=dashboard,
            detectors=DetectorsConfig(custom=custom),
            path=path,
        )


# ─── Parsing helpers ──────────────────────────────────────────────────────────


def _fail(message: str) -> None:
    """Report a config error on stderr and refuse to start."""
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        _fail(f"'{name}' must be a mapping.")
    return value


def _int_field(
    section: dict, dotted: str, key: str, default: int, minimum: int
) -> int:
    value: Any = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        _fail(f"{dotted} must be an integer >= {minimum}, got {value!r}.")
    return value


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate PromptAudit configuration.

    If no file is found at any search path, returns default Config (not an
    error). If a file is found but invalid, writes the error to stderr and
    raises SystemExit(1).

    ``PROMPTAUDIT_PORT`` is applied as an override to ``config.server.port``
    regardless of whether a config file was found.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field,
                       unsupported version, malformed section, or invalid
                       ``PROMPTAUDIT_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("PROMPTAUDIT_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"Failed to parse {found_path}: {exc}\n"
            "PromptAudit refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _fail(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0" and config.server.cors_origins == ["*"]:
        logger.warning(
            "PromptAudit is bound to all interfaces with CORS open to any origin. "
            "Restrict server.cors_origins unless captures come from a browser extension."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        custom_detectors=len(config.detectors.custom),
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Currently handles:
      PROMPTAUDIT_PORT — overrides config.server.port (SystemExit(1) if invalid)
    """
    env_port = os.environ.get("PROMPTAUDIT_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _fail(
                "PROMPTAUDIT_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )
