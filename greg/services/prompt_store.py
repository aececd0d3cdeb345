from __future__ import annotations

from pathlib import Path

from greg.config import settings

DEFAULT_INSTRUCTIONS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "DEFAULT_GREG_INSTRUCTIONS.md"
MODEL_NAME_PLACEHOLDER = "{{MODEL_NAME}}"

_instructions_cache: dict[Path, tuple[int, str]] = {}


def instructions_path() -> Path:
    configured = (settings.instructions_file or "").strip()
    return Path(configured) if configured else DEFAULT_INSTRUCTIONS_PATH


def load_instructions(path: Path | None = None) -> str:
    """Base instructions file, re-read only when its mtime changes. Missing file gives ""."""
    path = path or instructions_path()
    try:
        mtime_ns = path.stat().st_mtime_ns
    except OSError:
        return ""
    cached = _instructions_cache.get(path)
    if cached is not None and cached[0] == mtime_ns:
        return cached[1]
    text = path.read_text(encoding="utf-8")
    _instructions_cache[path] = (mtime_ns, text)
    return text


def render_instructions(model: str, path: Path | None = None) -> str:
    return load_instructions(path).replace(MODEL_NAME_PLACEHOLDER, model).strip()


def clear_prompt_cache() -> None:
    _instructions_cache.clear()
