# buildpipe/strategies.py
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from buildpipe.errors import BuildStepFailure

# A project-level script always wins over detection.
BUILD_SCRIPT = "build.sh"

# First match wins.
NODE_LOCKFILES: Tuple[Tuple[str, str], ...] = (
    ("pnpm-lock.yaml", "pnpm"),
    ("package-lock.json", "npm"),
    ("yarn.lock", "yarn"),
)
DEFAULT_NODE_PM = "npm"

PROJECT_MARKERS: Tuple[Tuple[str, str], ...] = (
    ("package.json", "node"),
    ("go.mod", "go"),
)


@dataclass(frozen=True)
class Step:
    name: str
    args: List[str]


@dataclass(frozen=True)
class Strategy:
    name: str
    steps: List[Step]
    notes: List[str] = field(default_factory=list)


def detect_project_type(root: Path) -> Optional[str]:
    for marker, kind in PROJECT_MARKERS:
        if (root / marker).is_file():
            return kind
    return None


def detect_package_manager(root: Path) -> str:
    for lockfile, pm in NODE_LOCKFILES:
        if (root / lockfile).is_file():
            return pm
    return DEFAULT_NODE_PM


def node_strategy(root: Path) -> Strategy:
    pm = detect_package_manager(root)
    return Strategy(
        name="node",
        steps=[Step(f"{pm} install", [pm, "install"]),
               Step(f"{pm} run build", [pm, "run", "build"])],
        notes=["Detected Node.js project", f"Using package manager: {pm}"],
    )


def go_strategy(root: Path) -> Strategy:
    return Strategy(
        name="go",
        steps=[Step("go build", ["go", "build", "-o", "app"])],
        notes=["Detected Go project"],
    )


def script_strategy(root: Path) -> Strategy:
    return Strategy(
        name="script",
        steps=[Step("build script", ["/bin/sh", BUILD_SCRIPT])],
        notes=[f"Found {BUILD_SCRIPT}; skipping project detection"],
    )


_BY_TYPE = {
    "node": node_strategy,
    "go": go_strategy,
}


def resolve_strategy(root: Path) -> Strategy:
    if (root / BUILD_SCRIPT).is_file():
        return script_strategy(root)
    kind = detect_project_type(root)
    if kind is None:
        raise BuildStepFailure("detect", "no recognized build strategy (no build.sh, package.json or go.mod)")
    return _BY_TYPE[kind](root)
