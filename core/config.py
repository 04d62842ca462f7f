# =============================================================================
# core/config.py  —  Settings from the Environment
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Reads the three required kintone settings (plus an optional log level)
#   from the process environment.  main.py calls load_dotenv() first, so
#   a local .env file works the same as exported variables.
#
# REQUIRED:
#   KINTONE_DOMAIN    — tenant host, e.g. "example.cybozu.com"
#   KINTONE_USERNAME  — login name
#   KINTONE_PASSWORD  — password
#
# OPTIONAL:
#   KINTONE_LOG_LEVEL — logging level name (default: INFO)
#
# A missing required value is a STARTUP failure, not a per-call one:
# load_credentials() raises ConfigurationError naming exactly the missing
# variables, and nothing here ever opens a network connection.
# =============================================================================

import logging
import os
from collections.abc import Mapping

from core.errors import ConfigurationError
from core.models import KintoneCredentials

REQUIRED_ENV_VARS = ("KINTONE_DOMAIN", "KINTONE_USERNAME", "KINTONE_PASSWORD")
LOG_LEVEL_ENV_VAR = "KINTONE_LOG_LEVEL"


def load_credentials(environ: Mapping[str, str] | None = None) -> KintoneCredentials:
    """Build KintoneCredentials from environment variables.

    Args:
        environ: Mapping to read from.  Defaults to os.environ.

    Returns:
        Credentials with the auth token already derived.

    Raises:
        ConfigurationError: If any of KINTONE_DOMAIN, KINTONE_USERNAME or
            KINTONE_PASSWORD is unset or empty.
    """
    env = os.environ if environ is None else environ
    missing = [name for name in REQUIRED_ENV_VARS if not env.get(name)]
    if missing:
        raise ConfigurationError(missing)
    return KintoneCredentials(
        domain=env["KINTONE_DOMAIN"],
        username=env["KINTONE_USERNAME"],
        password=env["KINTONE_PASSWORD"],
    )


def log_level(environ: Mapping[str, str] | None = None) -> int:
    """Resolve KINTONE_LOG_LEVEL to a logging level, falling back to INFO."""
    env = os.environ if environ is None else environ
    name = env.get(LOG_LEVEL_ENV_VAR, "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO
