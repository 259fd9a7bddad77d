"""
pytest configuration - adds the repository root to PYTHONPATH
so the lorawatch package imports without an editable install.
"""
import sys
import os

# Resolve repo root absolute path regardless of where pytest is invoked from
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)
