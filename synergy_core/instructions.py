"""Prompt templates for the orchestrator and the result normalizer.

Templates are resolved against an ordered search path:

1. ``$SYNERGY_INSTRUCTIONS_DIR`` when set
2. ``~/.synergy/instructions/``
3. the ``instructions/`` directory shipped with the package

The first directory holding a file with the requested name wins, so a
single prompt can be overridden without copying the rest.
"""

import os
from pathlib import Path
from typing import Sequence

PACKAGED_DIR = Path(__file__).resolve().parent / "instructions"
PERSONAL_DIR = Path("~/.synergy/instructions").expanduser()


def default_search_dirs() -> list[Path]:
    dirs: list[Path] = []
    env_dir = os.getenv("SYNERGY_INSTRUCTIONS_DIR")
    if env_dir:
        dirs.append(Path(env_dir).expanduser())
    dirs.append(PERSONAL_DIR)
    dirs.append(PACKAGED_DIR)
    return dirs


class _KeepMissing(dict[str, str]):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Find, cache and render prompt templates."""

    def __init__(self, search_dirs: Sequence[Path | str] | None = None):
        if search_dirs is None:
            search_dirs = default_search_dirs()
        self.search_dirs = [Path(d).expanduser() for d in search_dirs]
        self._cache: dict[str, str] = {}

    def find(self, name: str) -> Path:
        """Return the path of the first template called ``name``.

        Raises:
            FileNotFoundError if no search directory holds it
        """
        for directory in self.search_dirs:
            candidate = directory / name
            if candidate.is_file():
                return candidate
        searched = ", ".join(str(d) for d in self.search_dirs)
        raise FileNotFoundError(f"Instruction template not found: {name} (searched {searched})")

    def load(self, name: str) -> str:
        if name not in self._cache:
            self._cache[name] = self.find(name).read_text(encoding="utf-8").strip()
        return self._cache[name]

    def render(self, name: str, **variables: object) -> str:
        """Fill ``{placeholder}`` fields; placeholders without a value stay as written."""
        values = _KeepMissing({key: str(value) for key, value in variables.items()})
        return self.load(name).format_map(values)

    def clear_cache(self) -> None:
        self._cache.clear()
