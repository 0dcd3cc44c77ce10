from __future__ import annotations

import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    src_str = str(src)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)

    # Shared fakes live next to the unit tests.
    helpers_root = Path(__file__).resolve().parent / "unit"
    helpers_root_str = str(helpers_root)
    if helpers_root.is_dir() and helpers_root_str not in sys.path:
        sys.path.insert(0, helpers_root_str)


_ensure_src_on_path()
