"""
Top-level package for the deadline_dao project.

The stake redistribution core lives under `deadline_dao.redistribution`.
"""

__all__: list[str] = []
