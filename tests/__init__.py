"""Test package bootstrap for local src layouts."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
PACKAGE_SRC = ROOT / "src"

text = str(PACKAGE_SRC)
if PACKAGE_SRC.exists() and text not in sys.path:
    sys.path.insert(0, text)
