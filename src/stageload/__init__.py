"""
Stageload: batch file-to-table ingestion pipeline.

This package stages raw delimited and JSON files, loads them into typed
tables under an explicit error policy, derives cleaned views and tables,
and answers analytic queries over the result.
"""

from importlib.metadata import version

__version__ = version("stageload")

__all__ = ["__version__"]
