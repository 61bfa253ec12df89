"""Configuration loading and validation."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""


SECTION_NAMES = (
    "raised_by_me",
    "mentioned",
    "participated",
    "requested_to_me",
    "recently_merged",
)

NOTIFICATION_NAMES = (
    "new_pr",
    "newly_requested",
    "rerequested",
    "queue",
    "queue_raised_by_me",
    "queue_participated",
    "merged",
    "new_comment",
    "approval_dismissed",
    "mentioned",
)

DEFAULT_MARKS = {
    "approval_dismissed": "⚪",
    "approval": "✅",
    "approved_by_me": "🟢",
    "changes_requested": "⛔",
    "comment": "💬",
    "draft": "▪️",
    "not_participated": "🔅",
    "queue": "🟠",
    "queue_left": "",
    "rerequested": "🔄",
    "unread": "🔺",
}

DEFAULT_HEADER_STYLE = {
    "color": "#0A3069",
    "font": "Helvetica-Bold",
    "size": "13",
}

VALID_SORT_BY = ("number", "activity")
VALID_SORT_DIRECTIONS = ("asc", "desc")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class Config:
    """Application configuration."""

    github_token: str
    watched_repos: list[str] = field(default_factory=list)
    priority_repos: list[str] = field(default_factory=list)
    requested_to_teams: list[str] = field(default_factory=list)
    raised_by_teams: list[str] = field(default_factory=list)
    sections: dict[str, bool] = field(default_factory=lambda: dict.fromkeys(SECTION_NAMES, True))
    notifications: dict[str, bool] = field(
        default_factory=lambda: dict.fromkeys(NOTIFICATION_NAMES, True)
    )
    recently_merged_days: int = 7
    sort_by: str = "number"
    sort_direction: str = "desc"
    concurrency: int = 6
    raised_by_concurrency: int = 12
    team_members_cache_ttl: int = 86400
    marks: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MARKS))
    header_style: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADER_STYLE))
    cache_dir: Path = field(default_factory=lambda: get_default_cache_dir())
    log_level: str = "ERROR"
    refresh_interval: int = 60
    request_timeout: int = 15

    def section_enabled(self, name: str) -> bool:
        return self.sections.get(name, True)

    def notification_enabled(self, name: str) -> bool:
        return self.notifications.get(name, True)


def get_config_dir() -> Path:
    """Return the default configuration directory."""
    return Path.home() / ".config" / "prbar"


def get_config_path() -> Path:
    """Return the configuration file path (``PRBAR_CONFIG`` wins over the default)."""
    override = os.environ.get("PRBAR_CONFIG")
    if override:
        return Path(override).expanduser()
    return get_config_dir() / "config.yaml"


def get_default_cache_dir() -> Path:
    """Return the directory for persisted state, caches and logs.

    SwiftBar exports ``SWIFTBAR_PLUGIN_CACHE_PATH`` for each plugin; outside
    SwiftBar the user's cache directory is used.
    """
    swiftbar = os.environ.get("SWIFTBAR_PLUGIN_CACHE_PATH")
    if swiftbar:
        return Path(swiftbar).expanduser()
    return Path.home() / "Library" / "Caches" / "prbar"


def _string_list(data: dict, name: str) -> list[str]:
    value = data.get(name, [])
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{name} must be a list")
    items = [str(item).strip() for item in value]
    return [item for item in items if item]


def _team_list(data: dict, name: str) -> list[str]:
    teams = _string_list(data, name)
    for team in teams:
        org, _, slug = team.partition("/")
        if not org or not slug:
            raise ConfigError(f"{name} entries must look like org/team-slug (got: {team})")
    return teams


def _flag_map(data: dict, name: str, known: tuple[str, ...]) -> dict[str, bool]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")

    unknown = sorted(set(value) - set(known))
    if unknown:
        raise ConfigError(f"Unknown {name} keys: {', '.join(unknown)}")

    flags = dict.fromkeys(known, True)
    for key, enabled in value.items():
        if not isinstance(enabled, bool):
            raise ConfigError(f"{name}.{key} must be true or false")
        flags[key] = enabled
    return flags


def _positive_int(data: dict, name: str, default: int) -> int:
    value = data.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{name} must be a positive integer (got: {value})")
    return value


def _choice(data: dict, name: str, default: str, valid: tuple[str, ...]) -> str:
    value = data.get(name, default)
    if value not in valid:
        raise ConfigError(f"{name} must be one of: {', '.join(valid)} (got: {value})")
    return value


def load_config(config_path: Path) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the config.yaml file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If config file is missing or invalid.
    """
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}")

    if not isinstance(data, dict):
        raise ConfigError("Config must be a YAML mapping")

    # Required fields
    token = data.get("github_token")
    if not token:
        raise ConfigError("Missing required field: github_token")

    marks = dict(DEFAULT_MARKS)
    custom_marks = data.get("marks") or {}
    if not isinstance(custom_marks, dict):
        raise ConfigError("marks must be a mapping")
    marks.update({key: str(value) for key, value in custom_marks.items()})

    header_style = dict(DEFAULT_HEADER_STYLE)
    custom_style = data.get("header_style") or {}
    if not isinstance(custom_style, dict):
        raise ConfigError("header_style must be a mapping")
    header_style.update({key: str(value) for key, value in custom_style.items()})

    recently_merged_days = data.get("recently_merged_days", 7)
    if isinstance(recently_merged_days, bool) or not isinstance(recently_merged_days, int):
        raise ConfigError("recently_merged_days must be an integer")
    if recently_merged_days < 0:
        raise ConfigError("recently_merged_days must not be negative")

    cache_dir = data.get("cache_dir")
    log_level = os.environ.get("PRBAR_LOG_LEVEL") or data.get("log_level", "ERROR")
    log_level = str(log_level).upper()
    if log_level == "WARN":
        log_level = "WARNING"
    if log_level not in VALID_LOG_LEVELS:
        raise ConfigError(
            f"log_level must be one of: {', '.join(VALID_LOG_LEVELS)} (got: {log_level})"
        )

    return Config(
        github_token=str(token),
        watched_repos=_string_list(data, "watched_repos"),
        priority_repos=_string_list(data, "priority_repos"),
        requested_to_teams=_team_list(data, "requested_to_teams"),
        raised_by_teams=_team_list(data, "raised_by_teams"),
        sections=_flag_map(data, "sections", SECTION_NAMES),
        notifications=_flag_map(data, "notifications", NOTIFICATION_NAMES),
        recently_merged_days=recently_merged_days,
        sort_by=_choice(data, "sort_by", "number", VALID_SORT_BY),
        sort_direction=_choice(data, "sort_direction", "desc", VALID_SORT_DIRECTIONS),
        concurrency=_positive_int(data, "concurrency", 6),
        raised_by_concurrency=_positive_int(data, "raised_by_concurrency", 12),
        team_members_cache_ttl=_positive_int(data, "team_members_cache_ttl", 86400),
        marks=marks,
        header_style=header_style,
        cache_dir=Path(cache_dir).expanduser() if cache_dir else get_default_cache_dir(),
        log_level=log_level,
        refresh_interval=_positive_int(data, "refresh_interval", 60),
        request_timeout=_positive_int(data, "request_timeout", 15),
    )
