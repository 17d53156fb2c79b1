"""!
@brief Version metadata for App Janitor.
@details Keeps the version string in the packaged ``VERSION`` file so the
command-line interface, log headers, and packaging metadata agree.
"""
from __future__ import annotations

from importlib import resources
from typing import Dict

__all__ = ["__version__", "__build__", "build_info"]


def _load_version() -> str:
    """!
    @brief Read the version string from the packaged ``VERSION`` file.
    @returns Semantic version string, or ``0.0.0`` when the file is absent.
    """

    version_path = resources.files(__package__).joinpath("VERSION")
    try:
        return version_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:  # pragma: no cover - source checkouts ship the file
        return "0.0.0"


__version__ = _load_version()
__build__ = "dev"


def build_info() -> Dict[str, str]:
    """!
    @brief Provide a mapping with the current version metadata.
    @returns Dictionary containing ``version`` and ``build`` keys.
    """

    return {"version": __version__, "build": __build__}
