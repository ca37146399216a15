# services/assessment/__init__.py
"""Assessment service package: attempt lifecycle, grading, proctoring and analytics."""

__all__ = ["analytics", "anti_cheat", "app", "container", "errors", "lifecycle", "repo", "scorer"]
