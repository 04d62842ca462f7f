# =============================================================================
# tools/__init__.py
# =============================================================================
# This package contains the FastMCP tool wrappers.
#
# ARCHITECTURAL ROLE:
#   tools/ is the "translation layer" between MCP and the kintone
#   repository in core/.  Each tool:
#     1. Receives arguments that FastMCP has already type-checked
#     2. Calls exactly ONE KintoneRepository method
#     3. Converts the result (dataclasses, bytes) into a JSON-friendly dict
#     4. Turns any KintoneError into a ToolError with the same message
#
# WHAT TOOLS DO NOT DO:
#   - They do NOT build HTTP requests (that's core/repository.py)
#   - They do NOT page, chunk or retry (also core/, and it never retries)
#   - They do NOT interpret record fields; kintone's field maps pass
#     through unchanged
# =============================================================================
