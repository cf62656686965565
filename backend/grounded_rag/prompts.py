"""
Prompt Loading

Prompt templates live as text files in ``system_prompts/``. Each is read
lazily on first use; a missing file falls back to the inline default so a
bare checkout still runs.
"""

import logging
from typing import Dict

from .config import SYSTEM_PROMPTS_DIR

logger = logging.getLogger(__name__)

_prompt_cache: Dict[str, str] = {}


def load_prompt(file_name: str, default: str) -> str:
    if file_name in _prompt_cache:
        return _prompt_cache[file_name]
    prompt_path = SYSTEM_PROMPTS_DIR / file_name
    if prompt_path.exists():
        prompt = prompt_path.read_text(encoding="utf-8").strip()
    else:
        logger.debug("Prompt file %s not found, using inline default", prompt_path)
        prompt = default
    _prompt_cache[file_name] = prompt
    return prompt
