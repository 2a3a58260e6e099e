"""
Pair-mode configuration.

Loads pairloop.yaml from the project directory. Any key left out of the file
keeps its default, and a missing or unreadable file yields the defaults.

Example pairloop.yaml:

    max_look_ahead: 2
    review_timeout_ms: 60000
    consensus_timeout_ms: 180000
    executor_model: claude-sonnet-4
    reviewer_provider: openai
    unreviewed_policy: record_note
"""

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "pairloop.yaml"

# What the executor does to a task it proceeds on without a reviewer verdict
UNREVIEWED_POLICIES = ("proceed", "record_note")


@dataclass
class PairConfig:
    """Settings for a paired executor/reviewer run."""
    executor_provider: str = "anthropic"
    executor_model: str = "claude-sonnet-4"
    reviewer_provider: str = "openai"
    reviewer_model: str = "gpt-4.1"
    max_look_ahead: int = 3                 # Reviewer lead over the executor, in steps
    review_timeout_ms: int = 120000         # Executor wait for a verdict
    consensus_timeout_ms: int = 300000      # Whole negotiation session
    max_consensus_rounds: int = 2           # Rounds before executor tie-break
    web_search_enabled: bool = True
    show_cost_warnings: bool = True
    unreviewed_policy: str = "proceed"      # proceed | record_note
    autosave_debounce_ms: int = 500


def load_pair_config(project_dir: Optional[Path]) -> PairConfig:
    """Load pairloop.yaml and return PairConfig.

    If project_dir is None or the file doesn't exist, returns defaults.
    """
    if project_dir is None:
        return PairConfig()

    config_path = project_dir / CONFIG_FILENAME
    if not config_path.exists():
        return PairConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return PairConfig()

    if not data:
        return PairConfig()
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {config_path}: expected a mapping, got {type(data).__name__}")
        return PairConfig()

    known = {f.name for f in fields(PairConfig)}
    overrides = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Unknown key '{key}' in {config_path}, ignoring")
            continue
        overrides[key] = value

    config = replace(PairConfig(), **overrides)

    if config.unreviewed_policy not in UNREVIEWED_POLICIES:
        logger.warning(
            f"Unknown unreviewed_policy '{config.unreviewed_policy}' in {config_path}, "
            f"using 'proceed'"
        )
        config.unreviewed_policy = "proceed"

    return config
