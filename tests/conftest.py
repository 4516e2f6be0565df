"""
Pytest configuration file for Order Assembly Tool tests.

This file sets up the Python path so tests can import the modules in 'src',
forces the headless Qt platform, and provides shared fixtures.
"""

import os
import sys
from pathlib import Path

import pytest

# Qt timers and signals run without a display
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

# Get the repository root directory (parent of tests directory)
repo_root = Path(__file__).parent.parent

# Add src directory to sys.path (for src modules)
src_dir = repo_root / 'src'
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))


from checklist_model import BoxSettings, make_product  # noqa: E402


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float):
        self.now += ms / 1000


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def box_m():
    """Medium box: 10 portions, 0.20 kg."""
    return BoxSettings(name="Box M", marking="M", barcode="BOX-M", capacity=10, min_portions=4,
                       overflow=2, own_weight=0.20)


@pytest.fixture
def item_a():
    """Two portions of A, 0.66 kg."""
    return make_product("1", "Item A", 2, 0.66, sku="SKU-A")


def make_items(*specs):
    """Build products from (name, quantity, weight, sku) tuples, ids "1", "2", ..."""
    return [make_product(str(i + 1), name, qty, weight, sku=sku) for i, (name, qty, weight, sku) in enumerate(specs)]
