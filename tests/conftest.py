import sys
from pathlib import Path
import pytest

# Add project root to sys.path
# This ensures that 'oauth_runner' is importable as a top-level module during tests
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def temp_config_dirs(tmp_path):
    from oauth_runner.config import config

    old_data_dir = config.SYSTEM.DATA_DIR
    old_auth_dir = config.OAUTH.AUTH_DIR

    config.defrost()
    config.SYSTEM.DATA_DIR = str(tmp_path / "data")
    config.OAUTH.AUTH_DIR = str(tmp_path / "mcp-auth")
    config.freeze()

    try:
        yield tmp_path
    finally:
        config.defrost()
        config.SYSTEM.DATA_DIR = old_data_dir
        config.OAUTH.AUTH_DIR = old_auth_dir
        config.freeze()
