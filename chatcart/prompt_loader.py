from __future__ import annotations

from pathlib import Path
from typing import Dict

PROMPTS_DIR = (Path(__file__).resolve().parent / "prompts").resolve()


def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt file as UTF-8 text and strip BOM if present.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: None; reads the filesystem.
    Dependencies: Uses Path.read_text/read_bytes; used by the oracle.
    Failure Modes: UnicodeDecodeError triggers a tolerant decode that drops invalid
        bytes; a missing file raises FileNotFoundError.
    If Removed: The oracle has no instructions to send to the model.
    Testing Notes: Validate BOM stripping on a temp file.
    """
    try:
        return prompt_path.read_text(encoding="utf-8").lstrip("\ufeff")
    except UnicodeDecodeError:
        raw = prompt_path.read_bytes()
        return raw.decode("utf-8", errors="ignore").lstrip("\ufeff")


class PromptLibrary:
    """Caches prompt templates by name and fills the {message} placeholder."""

    def __init__(self, prompts_dir: Path = PROMPTS_DIR) -> None:
        self._dir = prompts_dir
        self._cache: Dict[str, str] = {}

    def get(self, name: str) -> str:
        if name not in self._cache:
            self._cache[name] = load_prompt(self._dir / f"{name}.txt")
        return self._cache[name]

    def render(self, name: str, message: str) -> str:
        # str.replace keeps literal JSON braces in the templates intact.
        return self.get(name).replace("{message}", message)
