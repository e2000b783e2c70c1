"""
incident-diagnosis: package root.

Combines a structured issue report with a pre-indexed codebase snapshot, fits the
most relevant code into a token budget, and drives a generative-model analysis
collaborator through a multi-stage diagnosis session.

Importing the package has no side effects: no config loading and no logging setup.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
