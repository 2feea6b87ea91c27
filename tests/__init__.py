"""Test package configuration for entrypoint."""

from __future__ import annotations

import sys
from pathlib import Path

# Make src/ importable without an editable install.
_SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if _SRC_PATH.is_dir():
    src_str = str(_SRC_PATH)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)
