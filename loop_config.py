#!/usr/bin/env python3
"""
Configuration for the Review/Fix Loop

Builds a single immutable LoopConfig from three layers, lowest priority first:
    1. Built-in defaults
    2. An optional YAML file (see config.yaml.defaults for the layout)
    3. Environment variables (MAX_LOOPS, REVIEW_PRESET, ...)

The config is constructed once at startup and passed to every component.
Nothing else in the project reads os.environ for settings.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)


DEFAULT_MAX_LOOPS = 10
DEFAULT_AI_SUMMARY_MAX_BYTES = 100000
DEFAULT_APPLY_FIX_PROMPT = "Apply the fixes suggested above"
DEFAULT_CODEX_BIN = "codex"
DEFAULT_CODEX_MODEL = "gpt-5-codex-high"

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


class ReviewFixError(Exception):
    """Base exception for fatal review/fix loop errors."""
    pass


class ConfigurationError(ReviewFixError):
    """Raised for invalid or missing configuration before the loop starts."""
    pass


@dataclass(frozen=True)
class LoopConfig:
    """Immutable run configuration shared by every component."""
    repo_root: Path
    max_loops: int = DEFAULT_MAX_LOOPS
    include_untracked: bool = False

    # Review scope selection
    review_preset: str = ""
    review_base_branch: str = ""
    review_commit_sha: str = ""
    review_custom_instructions: str = ""
    review_custom_instructions_file: str = ""

    # Commit message resolution
    commit_message: str = ""
    commit_rules_doc: str = ""
    disable_ai_summary: bool = False
    ai_summary_max_bytes: int = DEFAULT_AI_SUMMARY_MAX_BYTES

    # Deletion policy
    auto_approve_deletions: bool = False

    # Agent invocation
    apply_fix_prompt: str = DEFAULT_APPLY_FIX_PROMPT
    codex_bin: str = DEFAULT_CODEX_BIN
    codex_model: str = DEFAULT_CODEX_MODEL

    ops_log_dir: Optional[Path] = None

    # Snapshot of the environment the run was started with. Components that
    # need ambient facts (CI detection) read them from here.
    environ: Mapping[str, str] = field(default_factory=dict, repr=False, compare=False)

    def resolve_path(self, path_str: str) -> Path:
        """Resolve a configured path relative to the repository root."""
        path = Path(path_str).expanduser()
        if not path.is_absolute():
            path = self.repo_root / path
        return path


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration file."""
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    with open(config_path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at the top level")
    return data


def parse_bool(name: str, value: Any) -> bool:
    """Parse a boolean setting from YAML or an environment string."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean (true/false), got '{value}'")


def parse_positive_int(name: str, value: Any) -> int:
    """Parse a strictly positive integer setting."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a positive integer, got '{value}'")
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a positive integer, got '{value}'")
    if number <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got '{value}'")
    return number


# (env var, yaml section, yaml key, LoopConfig field)
_SETTINGS = [
    ("MAX_LOOPS", "loop", "max_loops", "max_loops"),
    ("INCLUDE_UNTRACKED", "loop", "include_untracked", "include_untracked"),
    ("REVIEW_PRESET", "review", "preset", "review_preset"),
    ("REVIEW_BASE_BRANCH", "review", "base_branch", "review_base_branch"),
    ("REVIEW_COMMIT_SHA", "review", "commit_sha", "review_commit_sha"),
    ("REVIEW_CUSTOM_INSTRUCTIONS", "review", "custom_instructions", "review_custom_instructions"),
    ("REVIEW_CUSTOM_INSTRUCTIONS_FILE", "review", "custom_instructions_file", "review_custom_instructions_file"),
    ("AUTOFIX_COMMIT_MESSAGE", "commit", "message", "commit_message"),
    ("COMMIT_RULES_DOC", "commit", "rules_doc", "commit_rules_doc"),
    ("DISABLE_AI_SUMMARY", "commit", "disable_ai_summary", "disable_ai_summary"),
    ("AI_SUMMARY_MAX_BYTES", "commit", "ai_summary_max_bytes", "ai_summary_max_bytes"),
    ("AUTO_APPROVE_DELETIONS", "deletions", "auto_approve", "auto_approve_deletions"),
    ("APPLY_FIX_PROMPT", "codex", "apply_fix_prompt", "apply_fix_prompt"),
    ("CODEX_BIN", "codex", "binary", "codex_bin"),
    ("CODEX_MODEL", "codex", "model", "codex_model"),
    ("REVIEW_FIX_LOG_DIR", "ops_logging", "log_dir", "ops_log_dir"),
]

_BOOL_FIELDS = {"include_untracked", "disable_ai_summary", "auto_approve_deletions"}
_INT_FIELDS = {"max_loops", "ai_summary_max_bytes"}


def load_config(
    environ: Mapping[str, str],
    repo_root: Path,
    config_path: Optional[Path] = None,
) -> LoopConfig:
    """
    Build the run configuration.

    Args:
        environ: Environment mapping (normally os.environ)
        repo_root: Root of the repository the loop operates on
        config_path: Optional YAML configuration file

    Returns:
        Validated LoopConfig

    Raises:
        ConfigurationError: on unreadable files or invalid values
    """
    file_config: Dict[str, Any] = {}
    if config_path is not None:
        logger.info(f"Loading configuration from {config_path}")
        file_config = load_yaml_config(config_path)

    values: Dict[str, Any] = {}
    for env_name, section, key, field_name in _SETTINGS:
        raw: Any = None
        source = f"{section}.{key} in {config_path}"
        section_config = file_config.get(section) or {}
        if not isinstance(section_config, dict):
            raise ConfigurationError(f"Section '{section}' in {config_path} must be a mapping")
        if section_config.get(key) is not None:
            raw = section_config[key]

        # Environment wins over the file; an empty variable means "unset",
        # matching the ${VAR:-default} convention of shell callers.
        env_value = environ.get(env_name)
        if env_value is not None and env_value != "":
            raw = env_value
            source = env_name
        if raw is None:
            continue

        if field_name in _BOOL_FIELDS:
            values[field_name] = parse_bool(source, raw)
        elif field_name in _INT_FIELDS:
            values[field_name] = parse_positive_int(source, raw)
        elif field_name == "ops_log_dir":
            log_dir = Path(str(raw)).expanduser()
            values[field_name] = log_dir if log_dir.is_absolute() else repo_root / log_dir
        else:
            values[field_name] = str(raw)

    config = LoopConfig(repo_root=repo_root, environ=dict(environ), **values)
    logger.debug(f"Resolved configuration: {config}")
    return config
