"""Pytest configuration.

`pytest` may be executed without the package installed, which breaks
imports like `import feed_recorder...`. This file ensures the repository
root is importable.
"""

from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
