# =============================================================================
# main.py  —  Entry Point for the kintone MCP Server
# =============================================================================
#
# HOW TO RUN:
#   uv run python main.py
#
# WHAT HAPPENS:
#   1. Loads KINTONE_* settings from the environment (and a .env file)
#   2. Sends all logging to STDERR (STDOUT belongs to the MCP transport)
#   3. Validates the three required settings; a missing one stops the
#      process with exit status 1 before anything is served
#   4. Builds the KintoneRepository and hands it to the tool server
#   5. Serves the tools over stdio until the client disconnects or Ctrl-C
#
# CONNECTING A CLIENT:
#   Point any MCP client at this command with stdio transport, e.g.
#     {"command": "uv", "args": ["run", "python", "/path/to/main.py"],
#      "env": {"KINTONE_DOMAIN": "...", "KINTONE_USERNAME": "...",
#              "KINTONE_PASSWORD": "..."}}
# =============================================================================

import logging
import sys

from dotenv import load_dotenv

# Load environment variables from .env file (KINTONE_DOMAIN, etc.)
# This must happen BEFORE the settings are read below.
load_dotenv()

from core.config import load_credentials, log_level
from core.errors import ConfigurationError
from core.repository import KintoneRepository
from tools.mcp_server import configure, mcp

logger = logging.getLogger("kintone_mcp")


def setup_logging() -> None:
    logging.basicConfig(
        level=log_level(),
        format="%(asctime)s [MCP] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def main() -> int:
    """Validate configuration, then serve the kintone tools over stdio.

    Returns:
        The process exit status.
    """
    setup_logging()

    try:
        credentials = load_credentials()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    configure(KintoneRepository(credentials))
    logger.info(f"kintone MCP server running on stdio (domain: {credentials.domain})")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


# =============================================================================
# Script entry point
# =============================================================================
if __name__ == "__main__":
    sys.exit(main())
