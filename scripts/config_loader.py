"""
Configuration Loader for the Finding Synthesis Engine.

Implements a layered configuration system:
    hardcoded defaults < profile YAML < .synthesis.yml < env vars < CLI args

Usage:
    from config_loader import build_unified_config, load_profile
    config = build_unified_config(profile="default", cli_args=args)
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from exceptions import ConfigError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Project root detection
# ---------------------------------------------------------------------------

def _find_project_root() -> Path:
    """Find the project root by looking for the profiles directory."""
    current = Path(__file__).resolve().parent
    for ancestor in [current, *current.parents]:
        if (ancestor / "profiles").is_dir() and (ancestor / "scripts").is_dir():
            return ancestor
    return current.parent


PROJECT_ROOT = _find_project_root()

PROJECT_FILE = ".synthesis.yml"
ENV_PREFIX = "SYNTHESIS_"

# ---------------------------------------------------------------------------
# Default configuration
# ---------------------------------------------------------------------------

def get_default_config() -> Dict[str, Any]:
    """Return all configuration parameters with their defaults.

    This is the lowest-priority layer.  Every configurable key must appear
    here so that downstream code never needs to guard against missing keys.
    """
    return {
        # -- Filter --
        "confidence_threshold": 80,

        # -- Analyzers --
        "analyzer_timeout": "120s",
        "analyzer_timeouts": {},          # analyzer id -> duration
        "analyzer_workers": 0,            # 0 = one thread per analyzer
        "precheck_commands": {},          # analyzer id -> command line

        # -- Tracker --
        "tracker_backend": "beads",       # beads, file
        "tracker_max_attempts": 3,
        "tracker_backoff_seconds": 1.0,
        "tracker_backoff_max_seconds": 30.0,
        "tracker_workers": 4,
        "tracker_labels": "code-review",  # comma-separated

        # -- Output --
        "submission_store_path": ".synthesis/submissions.json",
        "transcript_path": ".synthesis/transcript.json",
        "log_level": "INFO",
    }

# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """Convert ``45``, ``"45s"``, ``"2m"``, ``"1h"`` or ``"500ms"`` to seconds.

    Raises
    ------
    ConfigError
        If *value* is not a recognisable duration.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            amount, unit = match.groups()
            return float(amount) * _DURATION_UNITS[(unit or "s").lower()]
    raise ConfigError(f"Invalid duration: {value!r}")

# ---------------------------------------------------------------------------
# Profile loading
# ---------------------------------------------------------------------------

def _profile_search_paths(profile_name: str) -> List[Path]:
    """Return candidate YAML paths for *profile_name*, in priority order."""
    return [
        PROJECT_ROOT / "profiles" / f"{profile_name}.yml",               # built-in
        Path.home() / ".synthesis" / "profiles" / f"{profile_name}.yml",  # user
        Path(".synthesis") / "profiles" / f"{profile_name}.yml",          # project-local
    ]


def _load_raw_profile(profile_name: str, _chain: Optional[List[str]] = None) -> dict:
    """Load raw YAML dict for *profile_name*, resolving ``_extends``.

    Raises
    ------
    FileNotFoundError
        If the profile YAML cannot be found in any search path.
    ValueError
        If a circular ``_extends`` chain is detected.
    """
    if _chain is None:
        _chain = []

    if profile_name in _chain:
        raise ValueError(
            f"Circular profile inheritance detected: "
            f"{' -> '.join(_chain)} -> {profile_name}"
        )
    _chain.append(profile_name)

    loaded_path: Optional[Path] = None
    for candidate in _profile_search_paths(profile_name):
        if candidate.is_file():
            loaded_path = candidate
            break

    if loaded_path is None:
        raise FileNotFoundError(
            f"Profile '{profile_name}' not found.  Searched: "
            + ", ".join(str(p) for p in _profile_search_paths(profile_name))
        )

    logger.info("Loading profile '%s' from %s", profile_name, loaded_path)
    with open(loaded_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    parent_name = raw.pop("_extends", None)
    if parent_name:
        parent = _load_raw_profile(parent_name, _chain=_chain)
        raw = _deep_merge_nested(parent, raw)

    return raw


def _deep_merge_nested(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (nested dicts)."""
    merged = dict(base)
    for key, value in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = _deep_merge_nested(merged[key], value)
        else:
            merged[key] = value
    return merged

# ---------------------------------------------------------------------------
# Flatten nested YAML -> flat config dict
# ---------------------------------------------------------------------------

# section -> {yaml key: config key}
_SECTION_KEYS: Dict[str, Dict[str, str]] = {
    "filter": {
        "confidence_threshold": "confidence_threshold",
        "threshold": "confidence_threshold",
    },
    "analyzers": {
        "timeout": "analyzer_timeout",
        "timeouts": "analyzer_timeouts",
        "workers": "analyzer_workers",
        "precheck_commands": "precheck_commands",
    },
    "tracker": {
        "backend": "tracker_backend",
        "max_attempts": "tracker_max_attempts",
        "backoff_seconds": "tracker_backoff_seconds",
        "backoff_max_seconds": "tracker_backoff_max_seconds",
        "workers": "tracker_workers",
        "labels": "tracker_labels",
    },
    "output": {
        "submission_store_path": "submission_store_path",
        "transcript_path": "transcript_path",
        "log_level": "log_level",
    },
}


def flatten_profile(nested: dict) -> Dict[str, Any]:
    """Convert a nested profile YAML dict to a flat config dict.

    Mapping rules:
    - ``nested["filter"]["threshold"]``    -> ``confidence_threshold``
    - ``nested["analyzers"]["timeout"]``   -> ``analyzer_timeout``
    - ``nested["tracker"][key]``           -> ``tracker_{key}``
    - ``nested["output"][key]``            -> key (directly)
    - Top-level keys that already are config keys pass through as-is.

    Unknown keys are logged and dropped.  Only non-None values are included.
    """
    flat: Dict[str, Any] = {}
    known = set(get_default_config())

    for section, key_map in _SECTION_KEYS.items():
        block = nested.get(section)
        if not isinstance(block, dict):
            continue
        for key, value in block.items():
            if value is None:
                continue
            config_key = key_map.get(key)
            if config_key is None:
                logger.warning("Ignoring unknown key '%s.%s'", section, key)
                continue
            flat[config_key] = value

    for key, value in nested.items():
        if key in _SECTION_KEYS or key in ("name", "description", "profile"):
            continue
        if key in known and value is not None:
            flat[key] = value

    # YAML lists are accepted for labels
    labels = flat.get("tracker_labels")
    if isinstance(labels, (list, tuple)):
        flat["tracker_labels"] = ",".join(str(label) for label in labels)

    return flat


def load_profile(profile_name: str) -> Dict[str, Any]:
    """Load a profile by name and return a flat config dict.

    Search order (first match wins per path):
      1. ``{PROJECT_ROOT}/profiles/{name}.yml``      (built-in)
      2. ``~/.synthesis/profiles/{name}.yml``         (user)
      3. ``.synthesis/profiles/{name}.yml``           (project-local)
    """
    raw = _load_raw_profile(profile_name)
    return flatten_profile(raw)

# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

# Mapping: (env_var_name, ...) -> (config_key, type)
# Types: "str", "int", "float"
_ENV_MAPPINGS: List[tuple] = [
    (("SYNTHESIS_CONFIDENCE_THRESHOLD",),       "confidence_threshold",        "int"),
    (("SYNTHESIS_ANALYZER_TIMEOUT",),           "analyzer_timeout",            "str"),
    (("SYNTHESIS_ANALYZER_WORKERS",),           "analyzer_workers",            "int"),
    (("SYNTHESIS_TRACKER_BACKEND",),            "tracker_backend",             "str"),
    (("SYNTHESIS_TRACKER_MAX_ATTEMPTS",),       "tracker_max_attempts",        "int"),
    (("SYNTHESIS_TRACKER_BACKOFF_SECONDS",),    "tracker_backoff_seconds",     "float"),
    (("SYNTHESIS_TRACKER_BACKOFF_MAX_SECONDS",), "tracker_backoff_max_seconds", "float"),
    (("SYNTHESIS_TRACKER_WORKERS",),            "tracker_workers",             "int"),
    (("SYNTHESIS_TRACKER_LABELS",),             "tracker_labels",              "str"),
    (("SYNTHESIS_SUBMISSION_STORE_PATH",),      "submission_store_path",       "str"),
    (("SYNTHESIS_TRANSCRIPT_PATH",),            "transcript_path",             "str"),
    (("SYNTHESIS_LOG_LEVEL", "LOG_LEVEL"),      "log_level",                   "str"),
]


def _coerce(raw: str, type_tag: str) -> Any:
    """Convert a raw env-var string to the appropriate Python type."""
    if type_tag == "int":
        return int(raw)
    if type_tag == "float":
        return float(raw)
    return raw


def load_env_overrides() -> Dict[str, Any]:
    """Load configuration values from explicitly-set environment variables.

    Only variables that are **present** in ``os.environ`` are returned.
    Values that cannot be converted are logged and ignored.
    """
    overrides: Dict[str, Any] = {}

    for env_names, config_key, type_tag in _ENV_MAPPINGS:
        for env_name in env_names:
            if env_name in os.environ:
                try:
                    overrides[config_key] = _coerce(os.environ[env_name], type_tag)
                except (ValueError, TypeError) as exc:
                    logger.warning(
                        "Ignoring env var %s: could not convert %r to %s (%s)",
                        env_name, os.environ[env_name], type_tag, exc,
                    )
                break  # first match wins

    return overrides

# ---------------------------------------------------------------------------
# CLI argument extraction
# ---------------------------------------------------------------------------

# Mapping: argparse attribute -> config key
_CLI_ATTR_MAP: Dict[str, str] = {
    "threshold": "confidence_threshold",
    "confidence_threshold": "confidence_threshold",
    "analyzer_timeout": "analyzer_timeout",
    "analyzer_workers": "analyzer_workers",
    "tracker": "tracker_backend",
    "tracker_backend": "tracker_backend",
    "max_attempts": "tracker_max_attempts",
    "tracker_max_attempts": "tracker_max_attempts",
    "backoff": "tracker_backoff_seconds",
    "tracker_workers": "tracker_workers",
    "labels": "tracker_labels",
    "store": "submission_store_path",
    "transcript": "transcript_path",
    "log_level": "log_level",
    "profile": "_profile",  # handled separately in build_unified_config
}


def extract_cli_overrides(args: Any) -> Dict[str, Any]:
    """Extract explicitly-set CLI arguments into a flat config dict.

    Only attributes whose value is not ``None`` are included, so that
    argparse defaults do not shadow earlier layers.
    """
    if args is None:
        return {}

    overrides: Dict[str, Any] = {}
    for attr, config_key in _CLI_ATTR_MAP.items():
        value = getattr(args, attr, None)
        if value is not None:
            overrides[config_key] = value
    return overrides

# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Merge *override* into *base*.  Only non-None override values win.

    Flat merge, except that the per-analyzer maps are merged key by key.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged

# ---------------------------------------------------------------------------
# .synthesis.yml loader
# ---------------------------------------------------------------------------

def _load_project_yml(repo_path: str) -> Dict[str, Any]:
    """Load ``.synthesis.yml`` from *repo_path*; empty dict when absent."""
    yml_path = Path(repo_path) / PROJECT_FILE
    if not yml_path.is_file():
        return {}

    logger.info("Loading %s from %s", PROJECT_FILE, yml_path)
    with open(yml_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{yml_path} must contain a mapping")
    return flatten_profile(raw)


def _project_profile(repo_path: str) -> Optional[str]:
    yml_path = Path(repo_path) / PROJECT_FILE
    if not yml_path.is_file():
        return None
    with open(yml_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    return raw.get("profile") if isinstance(raw, dict) else None

# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def build_unified_config(
    profile: Optional[str] = None,
    cli_args: Any = None,
    repo_path: str = ".",
) -> Dict[str, Any]:
    """Build a fully-merged configuration dict.

    Layer precedence (last wins):
        1. Hard-coded defaults          (``get_default_config()``)
        2. Profile YAML                 (``load_profile()``)
        3. ``.synthesis.yml``           (project-level overrides)
        4. Environment variables        (``load_env_overrides()``)
        5. CLI arguments                (``extract_cli_overrides()``)

    The profile name comes from *profile*, then ``cli_args.profile``, then
    ``SYNTHESIS_PROFILE``, then a ``profile`` key in ``.synthesis.yml``.
    """
    # -- Layer 1: defaults --
    config = get_default_config()

    # -- Determine profile name --
    profile_name = profile
    if profile_name is None and cli_args is not None:
        profile_name = getattr(cli_args, "profile", None)
    if profile_name is None:
        profile_name = os.environ.get(f"{ENV_PREFIX}PROFILE")
    if profile_name is None:
        profile_name = _project_profile(repo_path)

    # -- Layer 2: profile --
    if profile_name:
        try:
            config = deep_merge(config, load_profile(profile_name))
            logger.info("Applied profile '%s'", profile_name)
        except FileNotFoundError:
            logger.warning("Profile '%s' not found; skipping", profile_name)

    # -- Layer 3: .synthesis.yml --
    project_values = _load_project_yml(repo_path)
    if project_values:
        config = deep_merge(config, project_values)
        logger.info("Applied %s overrides (%d keys)", PROJECT_FILE, len(project_values))

    # -- Layer 4: env vars --
    env_overrides = load_env_overrides()
    if env_overrides:
        config = deep_merge(config, env_overrides)
        logger.debug("Applied %d env-var overrides", len(env_overrides))

    # -- Layer 5: CLI args --
    cli_overrides = extract_cli_overrides(cli_args)
    cli_overrides.pop("_profile", None)
    if cli_overrides:
        config = deep_merge(config, cli_overrides)
        logger.debug("Applied %d CLI overrides", len(cli_overrides))

    return config

# ---------------------------------------------------------------------------
# Profile discovery
# ---------------------------------------------------------------------------

def list_available_profiles() -> List[str]:
    """Return the names of all available profiles."""
    names: set = set()

    search_dirs = [
        PROJECT_ROOT / "profiles",
        Path.home() / ".synthesis" / "profiles",
        Path(".synthesis") / "profiles",
    ]
    for directory in search_dirs:
        if directory.is_dir():
            for yml_file in directory.glob("*.yml"):
                names.add(yml_file.stem)

    return sorted(names)

# ---------------------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------------------

def split_labels(value: Any) -> List[str]:
    """``"a, b"`` or ``["a", "b"]`` -> ``["a", "b"]``."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(label).strip() for label in value if str(label).strip()]


def analyzer_timeout_for(config: Dict[str, Any], analyzer_id: str) -> float:
    """Timeout in seconds for *analyzer_id*, honouring per-analyzer overrides."""
    overrides = config.get("analyzer_timeouts") or {}
    if analyzer_id in overrides:
        return parse_duration(overrides[analyzer_id])
    return parse_duration(config.get("analyzer_timeout", "120s"))

# ---------------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------------

_VALID_TRACKER_BACKENDS = {"beads", "file"}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate a configuration dict and return a list of warnings/errors.

    Returns
    -------
    list[str]
        Human-readable messages.  An empty list means the config is valid.
    """
    issues: List[str] = []

    threshold = config.get("confidence_threshold", 80)
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        issues.append(f"ERROR: confidence_threshold must be an integer, got {threshold!r}.")
    elif not 0 <= threshold <= 100:
        issues.append("ERROR: confidence_threshold must be between 0 and 100.")

    try:
        if parse_duration(config.get("analyzer_timeout", "120s")) <= 0:
            issues.append("ERROR: analyzer_timeout must be positive.")
    except ConfigError as exc:
        issues.append(f"ERROR: analyzer_timeout: {exc}")

    for analyzer_id, value in (config.get("analyzer_timeouts") or {}).items():
        try:
            if parse_duration(value) <= 0:
                issues.append(f"ERROR: timeout for analyzer '{analyzer_id}' must be positive.")
        except ConfigError as exc:
            issues.append(f"ERROR: timeout for analyzer '{analyzer_id}': {exc}")

    for key in ("tracker_max_attempts", "tracker_workers"):
        value = config.get(key, 1)
        if not isinstance(value, int) or value < 1:
            issues.append(f"ERROR: {key} must be an integer >= 1.")

    workers = config.get("analyzer_workers", 0)
    if not isinstance(workers, int) or workers < 0:
        issues.append("ERROR: analyzer_workers must be an integer >= 0.")

    for key in ("tracker_backoff_seconds", "tracker_backoff_max_seconds"):
        value = config.get(key, 0)
        if not isinstance(value, (int, float)) or value < 0:
            issues.append(f"ERROR: {key} must be >= 0.")

    backend = config.get("tracker_backend", "beads")
    if backend not in _VALID_TRACKER_BACKENDS:
        issues.append(
            f"ERROR: Invalid tracker_backend '{backend}'. "
            f"Must be one of: {', '.join(sorted(_VALID_TRACKER_BACKENDS))}"
        )

    level = str(config.get("log_level", "INFO")).upper()
    if level not in _VALID_LOG_LEVELS:
        issues.append(f"WARNING: Unknown log_level '{level}'; INFO will be used.")

    if not split_labels(config.get("tracker_labels")):
        issues.append("WARNING: tracker_labels is empty; tasks will only carry generated labels.")

    return issues
