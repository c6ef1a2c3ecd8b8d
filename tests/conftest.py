"""Pytest configuration ensuring project root is importable.

Adds repository root and src/ to sys.path explicitly to avoid
interpreter/path quirks.
"""
from __future__ import annotations

import sys
from pathlib import Path
import os
import pytest


ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def _isolate_global_state():  # noqa: D401
    """Ensure config/metrics/listener side effects do not leak.

    - Clear aggregated config cache between tests
    - Restore RELAY_CONFIG_DIR to its previous value
    - Reset metrics counters and event listeners
    """
    from core import metrics
    from core.config import clear_config_cache
    from core.events import reset_listeners_for_tests

    prev = os.environ.get("RELAY_CONFIG_DIR")
    clear_config_cache()
    metrics.reset_for_tests()
    reset_listeners_for_tests()
    try:
        yield
    finally:
        clear_config_cache()
        reset_listeners_for_tests()
        if prev is None:
            os.environ.pop("RELAY_CONFIG_DIR", None)
        else:
            os.environ["RELAY_CONFIG_DIR"] = prev
