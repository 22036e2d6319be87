"""
System prompt resolution for outbound sales calls.

The prompt comes from SYSTEM_PROMPT, else SYSTEM_PROMPT_FILE, else the built-in
sales prompt. Placeholders are filled from the config (agent/company) and, per
call, from the customer profile (manager, venue, last product).
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import structlog

from src.sales_agent.config import Config
from src.sales_agent.session import CustomerProfile

logger = structlog.get_logger(__name__)

MAX_PROMPT_CHARS = 40_000


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def load_prompt_file(path: str, *, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Prompt text from `path` (relative to the repo root), or "" if unusable."""
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        raw = file_path.read_bytes()
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except OSError as e:
        logger.warning("Prompt file read failed", path=str(file_path), error=str(e))
        return ""

    try:
        content = raw.decode("utf-8-sig").strip()
    except UnicodeDecodeError:
        logger.warning("Prompt file is not UTF-8, ignoring it", path=str(file_path))
        return ""

    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]
    return content


def prompt_placeholders(config: Config, profile: Optional[CustomerProfile] = None) -> Dict[str, str]:
    profile = profile or CustomerProfile()
    values = {
        "AGENT_NAME": config.agent_name,
        "COMPANY_NAME": config.company_name,
        "MANAGER_NAME": profile.manager_name or "the manager",
        "VENUE_NAME": profile.venue_name or "your hotel",
        "LAST_PRODUCT": profile.last_product or "your usual items",
    }
    # Both {AGENT_NAME} and {agent_name} spellings are accepted.
    placeholders = {}
    for key, value in values.items():
        placeholders["{" + key + "}"] = value
        placeholders["{" + key.lower() + "}"] = value
    return placeholders


def fill_placeholders(prompt: str, config: Config, profile: Optional[CustomerProfile] = None) -> str:
    for key, value in prompt_placeholders(config, profile).items():
        prompt = prompt.replace(key, value)
    return prompt


def resolve_system_prompt(
    config: Config,
    *,
    default: str,
    profile: Optional[CustomerProfile] = None,
) -> str:
    prompt = (config.system_prompt or "").strip()
    if not prompt:
        prompt = load_prompt_file(config.system_prompt_file)
    if not prompt:
        prompt = default
    return fill_placeholders(prompt, config, profile)
