from __future__ import annotations

from pathlib import Path
from typing import Optional

from ..paths import council_home, registry_path, threads_dir
from ..util.fs import atomic_write_text

DEFAULT_REGISTRY = """# Council Registry
# Configure your repos and council settings here

repos:
  # Example repo configuration:
  # "my-app":
  #   path: "../my-app"
  #   tech_hints: ["typescript", "web"]
  #   quick_commands:
  #     dev: "pnpm dev"
  #     test: "pnpm test"
  #
  # "my-server":
  #   path: "../my-server"
  #   tech_hints: ["python", "server"]
  #   logs:
  #     kind: "cloudwatch"
  #     group: "/ecs/my-service"
  #     region: "us-east-1"

council:
  parallelism: 3
  max_turns: 14
  stop_when:
    - "resolution_confirmed"
    - "action_plan_ready"
    - "blocked_missing_evidence"
"""


def workspace_exists(home: Optional[Path] = None) -> bool:
    return (home or council_home()).is_dir()


def init_workspace(home: Optional[Path] = None) -> Path:
    """Create the workspace tree; an existing registry.yaml is left untouched."""
    h = home or council_home()
    for d in (h, threads_dir(h), h / "scans", h / "runs"):
        d.mkdir(parents=True, exist_ok=True)
    reg = registry_path(h)
    if not reg.exists():
        atomic_write_text(reg, DEFAULT_REGISTRY)
    return h
