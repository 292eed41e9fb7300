from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

COUNCIL_DIR = ".council"


def council_home() -> Path:
    env = os.environ.get("COUNCIL_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.cwd() / COUNCIL_DIR).resolve()


def project_root(home: Optional[Path] = None) -> Path:
    """Directory that relative repo paths in registry.yaml are resolved against."""
    return (home or council_home()).parent


def threads_dir(home: Optional[Path] = None) -> Path:
    return (home or council_home()) / "threads"


def registry_path(home: Optional[Path] = None) -> Path:
    return (home or council_home()) / "registry.yaml"
