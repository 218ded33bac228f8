"""Release packaging and reconciliation for module repositories.

Reads a module manifest, bundles the declared files into a deterministic
archive and reconciles "latest" / versioned release channels against a
release store (GitHub Releases, a local directory, or memory).
"""

from __future__ import annotations

__all__ = ["__version__"]
__version__ = "0.1.0"
