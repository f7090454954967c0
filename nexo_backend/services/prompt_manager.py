"""
Prompt Manager Service

Loads the analysis, matching and reflection prompt templates from
prompts.json and renders them with variable substitution. The file is
re-read when its mtime changes so prompts can be tuned without a restart.
"""

import json
from pathlib import Path
from string import Template
from typing import Any, Dict, Optional

DEFAULT_PROMPTS_FILE = Path(__file__).resolve().parent.parent / "prompts.json"


class PromptManager:
    """
    Centralized manager for LLM prompts

    Features:
    - Load prompts from prompts.json
    - Render templates with variable substitution
    - Hot-reload on file changes
    """

    def __init__(self, prompts_file: Path = DEFAULT_PROMPTS_FILE):
        self.prompts_file = Path(prompts_file)
        self._prompts_cache: Dict[str, Any] = {}
        self._file_mtime: Optional[float] = None

        self.reload()

    def reload(self) -> None:
        """Reload prompts from file (hot-reload support)"""
        if not self.prompts_file.exists():
            raise FileNotFoundError(f"Prompts file not found: {self.prompts_file}")

        with open(self.prompts_file, "r", encoding="utf-8") as f:
            self._prompts_cache = json.load(f)

        self._file_mtime = self.prompts_file.stat().st_mtime

    def _check_reload(self) -> None:
        if self.prompts_file.exists():
            current_mtime = self.prompts_file.stat().st_mtime
            if current_mtime != self._file_mtime:
                self.reload()

    def get_prompt(self, prompt_name: str) -> Dict[str, Any]:
        """
        Get a specific prompt configuration

        Raises:
            KeyError: If prompt not found
        """
        self._check_reload()

        if prompt_name not in self._prompts_cache.get("prompts", {}):
            raise KeyError(f"Prompt not found: {prompt_name}")

        return self._prompts_cache["prompts"][prompt_name].copy()

    def render_prompt(self, prompt_name: str, variables: Optional[Dict[str, Any]] = None) -> str:
        """
        Render a prompt template with variable substitution

        Templates use ``$variable`` / ``${variable}`` placeholders.

        Example:
            >>> pm = PromptManager()
            >>> rendered = pm.render_prompt("reflection_question", {
            ...     "issues_summary": "Housing affordability: supports rent control",
            ... })
        """
        prompt_config = self.get_prompt(prompt_name)
        template = Template(prompt_config.get("template", ""))

        try:
            return template.substitute(variables or {})
        except KeyError as e:
            missing_var = str(e).strip("'")
            raise ValueError(
                f"Missing required variable '{missing_var}' for prompt '{prompt_name}'"
            )

    def get_prompt_metadata(self, prompt_name: str) -> Dict[str, Any]:
        """Get prompt metadata (max_tokens, temperature) without the template."""
        prompt_config = self.get_prompt(prompt_name)
        defaults = self._prompts_cache.get("defaults", {})

        return {
            "description": prompt_config.get("description", ""),
            "temperature": prompt_config.get("temperature", defaults.get("default_temperature", 0.3)),
            "max_tokens": prompt_config.get("max_tokens", defaults.get("default_max_tokens", 1024)),
        }


_prompt_manager_instance: Optional[PromptManager] = None


def get_prompt_manager() -> PromptManager:
    """Get global PromptManager singleton"""
    global _prompt_manager_instance

    if _prompt_manager_instance is None:
        _prompt_manager_instance = PromptManager()

    return _prompt_manager_instance
