"""Unit-of-work sessions and entity instances.

Usage:
    from db_mapper.session import Instance, LifecycleState, Session
"""

from db_mapper.session.instance import Instance, LifecycleState
from db_mapper.session.unit_of_work import CommitResult, Session

__all__ = ["Instance", "LifecycleState", "CommitResult", "Session"]
