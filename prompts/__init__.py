"""Utilities for loading the prompt templates used by the AI features."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from string import Template
from typing import Any, Dict, Iterable, Mapping, Tuple

_PROMPT_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class PromptTemplate:
    """One fixed prompt with ``$field`` placeholders."""

    id: str
    prompt_version: str
    label: str
    description: str
    fields: Tuple[str, ...]
    template: str

    def render(self, **values: Any) -> str:
        missing = [name for name in self.fields if name not in values]
        if missing:
            raise ValueError(f"Prompt {self.id} missing values: {', '.join(missing)}")
        return Template(self.template).substitute({k: "" if v is None else str(v) for k, v in values.items()})


def _load_prompt(path: Path) -> PromptTemplate:
    payload = json.loads(path.read_text(encoding="utf-8"))
    required = {"id", "prompt_version", "label", "description", "fields", "template"}
    missing = sorted(required - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    return PromptTemplate(
        id=str(payload["id"]),
        prompt_version=str(payload["prompt_version"]),
        label=str(payload["label"]),
        description=str(payload["description"]),
        fields=tuple(str(name) for name in payload["fields"]),
        template=str(payload["template"]),
    )


def _iter_prompt_files(directory: Path) -> Iterable[Path]:
    for path in sorted(directory.glob("*.json")):
        if path.is_file():
            yield path


def default_prompt_dir() -> Path:
    configured = os.getenv("PROMPT_DIR")
    return Path(configured) if configured else _PROMPT_DIR


@lru_cache(maxsize=4)
def load_prompts(directory: Path | None = None) -> Mapping[str, PromptTemplate]:
    base_dir = Path(directory) if directory else default_prompt_dir()
    prompts: Dict[str, PromptTemplate] = {}
    for file_path in _iter_prompt_files(base_dir):
        prompt = _load_prompt(file_path)
        if prompt.id in prompts:
            raise ValueError(f"Duplicate prompt id detected: {prompt.id}")
        prompts[prompt.id] = prompt
    if not prompts:
        raise RuntimeError(f"No prompt definitions found in {base_dir}")
    return prompts


def get_prompt(prompt_id: str) -> PromptTemplate:
    prompts = load_prompts()
    if prompt_id not in prompts:
        raise KeyError(f"Unknown prompt '{prompt_id}'. Available: {', '.join(sorted(prompts))}")
    return prompts[prompt_id]


__all__ = ["PromptTemplate", "default_prompt_dir", "load_prompts", "get_prompt"]
