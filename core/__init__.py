# =============================================================================
# core/__init__.py
# =============================================================================
# This package contains everything that talks to kintone.
#
# ARCHITECTURAL RULE:
#   Nothing in this package imports FastMCP or any other MCP framework.
#   The repository takes plain Python values and returns plain Python
#   values (dataclasses, dicts, lists, bytes), so it can be driven from a
#   REPL, a test, or the tools/ layer alike.
#
# MODULES:
#   models.py      — Credentials, Record, SearchResult (the "nouns")
#   errors.py      — ErrorKind + the typed exceptions every operation raises
#   config.py      — Reads KINTONE_* settings from the environment
#   batching.py    — Fixed-size chunking used by the batch operations
#   repository.py  — KintoneRepository: one method per kintone operation
# =============================================================================
