"""Version information for doc-updates-sync.

Single source of truth for version number.
Follows PEP 440 and semantic versioning principles.
"""

__version__ = "0.3.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 0.3.0 - Per-repository watermarks, run budget, cap deferral
# 0.2.0 - Incremental sync via commit history, background trigger
# 0.1.0 - Initial release (full-tree sync, FTS search)
