"""Load prompt text from files in this folder."""
from __future__ import annotations

from pathlib import Path

# Versioned extraction templates per document kind; bump the suffix when a template changes
EXTRACTION_PROMPTS = {
    "invoice": "invoice_extraction_v1",
    "identity": "identity_extraction_v1",
}


def get_prompts_dir() -> Path:
    """Return the prompts directory (same as this package)."""
    return Path(__file__).resolve().parent


def load_prompt(filename: str) -> str:
    """Load and return prompt text from prompts/<filename>. Raises FileNotFoundError if missing."""
    path = get_prompts_dir() / filename
    if not path.exists():
        raise FileNotFoundError(f"Prompt file not found: {path}")
    return path.read_text(encoding="utf-8").strip()


def render_prompt(filename: str, **values: str) -> str:
    """
    Load a template and substitute {name} placeholders.
    Plain replacement, not str.format: templates contain literal JSON braces.
    """
    text = load_prompt(filename)
    for key, value in values.items():
        text = text.replace("{" + key + "}", value)
    return text
