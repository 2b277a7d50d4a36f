import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path

CONFIG_FILENAME = ".mountkeeperconfig"
HOME_DIR = Path(os.environ.get("MOUNTKEEPER_HOME") or Path.home() / ".mountkeeper")
GLOBAL_CONFIG_FILE = HOME_DIR / "config.json"

DEFAULT_CONFIG = {
    "use_sandboxfs": False,
    "sandboxfs_path": None,
    "sandboxfs_name": "sandboxfs",
    "sandbox_debug": False,
    "handshake_timeout": 10.0,
    "terminate_timeout": 5.0,
    # Optional: "output_base": "/path/to/output", "cloudwatch_log_group": "/mountkeeper/x"
}

_TIMEOUT_KEYS = ("handshake_timeout", "terminate_timeout")


@dataclass(frozen=True)
class Configuration:
    """Sandbox settings for a single build. Changes are only seen across builds."""

    enabled: bool = False
    explicit_executable_path: str | None = None
    debug_mode: bool = False
    executable_name: str = "sandboxfs"
    handshake_timeout: float = 10.0
    terminate_timeout: float = 5.0

    def reusable_with(self, other):
        """True if a sandbox started under `other` can serve this configuration."""
        return (
            other is not None
            and self.explicit_executable_path == other.explicit_executable_path
            and self.executable_name == other.executable_name
            and self.debug_mode == other.debug_mode
        )


def load_global_config():
    """Load ~/.mountkeeper/config.json, the per-user defaults."""
    if GLOBAL_CONFIG_FILE.exists():
        try:
            return json.loads(GLOBAL_CONFIG_FILE.read_text())
        except (json.JSONDecodeError, OSError):
            pass
    return {}


def save_global_config(updates):
    """Merge updates into ~/.mountkeeper/config.json."""
    existing = load_global_config()
    existing.update(updates)
    GLOBAL_CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    GLOBAL_CONFIG_FILE.write_text(json.dumps(existing, indent=2) + "\n")
    return GLOBAL_CONFIG_FILE


def find_config(start=None):
    """Walk up from `start` (default cwd) to find .mountkeeperconfig."""
    current = Path(start) if start else Path.cwd()
    for parent in [current, *current.parents]:
        config_path = parent / CONFIG_FILENAME
        if config_path.exists():
            return config_path
    return None


def load_config(start=None):
    # Merge order: defaults → global config → project .mountkeeperconfig
    config = {**DEFAULT_CONFIG, **load_global_config()}

    config_path = find_config(start)
    if config_path:
        try:
            raw = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_path}: {e}")
        if not isinstance(raw, dict):
            raise ValueError(f"{config_path} must contain a JSON object")
        config.update(raw)

    for key in _TIMEOUT_KEYS:
        config[key] = _positive_float(key, config.get(key))

    return config


def init_config(path=None, **overrides):
    """Create a .mountkeeperconfig in the given directory."""
    target = Path(path) if path else Path.cwd()
    config_path = target / CONFIG_FILENAME
    init = {
        "use_sandboxfs": True,
        "sandbox_debug": False,
    }
    init.update({k: v for k, v in overrides.items() if v is not None})
    config_path.write_text(json.dumps(init, indent=2) + "\n")
    return config_path


def configuration_from(config, **options):
    """Build the per-build Configuration from merged config plus CLI options.

    Options left as None fall back to the config file values.
    """
    merged = dict(config)
    for key, value in options.items():
        if value is not None:
            merged[key] = value

    explicit = merged.get("sandboxfs_path") or None
    return Configuration(
        enabled=bool(merged.get("use_sandboxfs")),
        explicit_executable_path=str(explicit) if explicit else None,
        debug_mode=bool(merged.get("sandbox_debug")),
        executable_name=merged.get("sandboxfs_name") or "sandboxfs",
        handshake_timeout=_positive_float("handshake_timeout", merged.get("handshake_timeout")),
        terminate_timeout=_positive_float("terminate_timeout", merged.get("terminate_timeout")),
    )


def default_output_base(workspace=None):
    """Per-workspace output directory, keyed like ~/.mountkeeper/output/<slug>."""
    workspace = Path(workspace) if workspace else Path.cwd()
    slug = hashlib.md5(str(workspace.resolve()).encode()).hexdigest()[:12]
    return HOME_DIR / "output" / slug


def _positive_float(key, value):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number, got {value!r}")
    if number <= 0:
        raise ValueError(f"{key} must be positive, got {number}")
    return number
