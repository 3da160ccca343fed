"""Pytest configuration for profile_preflight tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from profile_preflight.inmemory import InMemoryHost

MDM_PACKAGE = 'com.acme.mdm'


@pytest.fixture
def host():
    """Encrypted single-user host with the MDM package installed."""
    return InMemoryHost(installed_packages={MDM_PACKAGE})


@pytest.fixture
def state_dir(tmp_path):
    """Create a temporary directory for JSON workflow snapshots."""
    directory = tmp_path / 'preflight-state'
    directory.mkdir()
    return directory
