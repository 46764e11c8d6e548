import sys, pytest
from pathlib import Path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path: sys.path.insert(0, str(ROOT))
from .kernel_utils import fake_kernel


@pytest.fixture
def kernel():
    with fake_kernel() as (k, conn, corr): yield k, conn, corr
