"""Guard against GUI imports in core modules.

Run this script in CI or locally to ensure the correlation, state and cache
modules stay importable without matplotlib or a Qt binding.
"""

from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]

CORE_MODULES = [
    "src/ortho_viewer/views.py",
    "src/ortho_viewer/errors.py",
    "src/ortho_viewer/config.py",
    "src/ortho_viewer/coordinates.py",
    "src/ortho_viewer/correlation.py",
    "src/ortho_viewer/view_sync.py",
    "src/ortho_viewer/assets.py",
    "src/ortho_viewer/fetch.py",
    "src/ortho_viewer/prefetch.py",
    "src/ortho_viewer/asset_cache.py",
    "src/ortho_viewer/session.py",
]

FORBIDDEN = ("matplotlib", "PyQt", "PySide", "QtCore", "QtWidgets")


def main(root: Path = ROOT) -> int:
    bad = []
    for rel in CORE_MODULES:
        path = root / rel
        if not path.exists():
            bad.append(f"{rel} is missing")
            continue
        text = path.read_text(encoding="utf-8", errors="ignore")
        for token in FORBIDDEN:
            if token in text:
                bad.append(f"{rel} contains '{token}'")
                break
    if bad:
        sys.stderr.write("Headless import guard failed:\n")
        sys.stderr.write("\n".join(bad))
        sys.stderr.write("\n")
        return 2
    print("Headless import guard passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
