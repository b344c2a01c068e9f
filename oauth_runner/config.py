"""
Configuration Loader.

This module initializes the global configuration object (`config`) used throughout
the application. It leverages `yacs` to provide a hierarchical, dot-accessible
configuration structure defined in `oauth_runner.core_config`.

Usage:
    from oauth_runner.config import config
    print(config.OAUTH.SESSION_TTL_SEC)
"""

import os
import logging
from oauth_runner.core_config import get_cfg_defaults

logger = logging.getLogger(__name__)

# Load default configuration
config = get_cfg_defaults()

# Optional YAML overrides for deployments
user_config_path = os.environ.get("OAUTH_RUNNER_CONFIG_FILE", "")
if user_config_path and os.path.exists(user_config_path):
    config.merge_from_file(user_config_path)
    logger.info("Loaded configuration overrides from %s", user_config_path)

# Freeze config to prevent accidental changes during runtime.
config.freeze()
