"""Prompt registry: load versioned prompt templates from files (append-only, one YAML file per version)."""
import logging
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# Directory containing prompt name/version folders (app/prompts/)
_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


def _load_prompt_file(name: str, version: str) -> Optional[dict]:
    """Load a single prompt YAML file. Returns None if not found."""
    path = _PROMPTS_DIR / name / f"{version}.yaml"
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else None
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load prompt %s/%s: %s", name, version, e)
        return None


def get_prompt(name: str, version: str) -> Optional[str]:
    """
    Get prompt template body by name and version.
    Returns the template string with {var} placeholders, or None if not found.
    """
    data = _load_prompt_file(name, version)
    if not data:
        return None
    body = data.get("body")
    return body.strip() if isinstance(body, str) else None

