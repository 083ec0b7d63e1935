"""
Prompt Management Module

Loads LLM prompt templates from the text files next to this module, so the
wording can be tuned without touching the backend code.
"""

from __future__ import annotations

import re
from pathlib import Path

PROMPTS_DIR = Path(__file__).parent

MAX_MESSAGE_CHARS = 4000


class PromptLoader:
    """Load and cache prompt templates from files"""

    def __init__(self, prompts_dir: Path = PROMPTS_DIR):
        self.prompts_dir = prompts_dir
        self._cache: dict[str, str] = {}

    def load_prompt(self, prompt_name: str) -> str:
        """
        Load a prompt template from file.

        Args:
            prompt_name: Name of the prompt file (without .txt extension)

        Returns:
            Prompt template string

        Raises:
            FileNotFoundError: If no such template exists
        """
        if prompt_name not in self._cache:
            prompt_path = self.prompts_dir / f"{prompt_name}.txt"

            if not prompt_path.exists():
                raise FileNotFoundError(f"Prompt file not found: {prompt_path}")

            self._cache[prompt_name] = prompt_path.read_text(encoding="utf-8").strip()

        return self._cache[prompt_name]

    def render(self, prompt_name: str, **kwargs: str) -> str:
        return self.load_prompt(prompt_name).format(**kwargs)

    def reload(self) -> None:
        """Clear cache and reload prompts from disk"""
        self._cache.clear()


def sanitize_message(text: str, max_length: int = MAX_MESSAGE_CHARS) -> str:
    """Neutralize role markers and quote breaks in user text before it enters a prompt."""
    if not text:
        return ""
    text = re.sub(r"(?i)\b(system|assistant)\s*:", "", text)
    text = text.replace('"', "'")
    return text[:max_length]


_loader = PromptLoader()


def get_prompt_loader() -> PromptLoader:
    return _loader
