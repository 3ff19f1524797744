from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from elp_bridge.timeouts import TIMEOUT_ENV_KEYS
from tests.lsp_helpers import env_scope


@pytest.fixture(autouse=True)
def _clean_timeout_env():
    with env_scope({key: None for key in TIMEOUT_ENV_KEYS}):
        yield


@pytest.fixture
def install_root(tmp_path: Path) -> Path:
    root = tmp_path / "install"
    (root / "bin").mkdir(parents=True)
    return root


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root
