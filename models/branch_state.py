"""Branch override model: the active child chosen at each fork point."""
from sqlalchemy import Column, String, ForeignKey
from .threads import Base

# Key used for the sibling group of root messages (parent_id is null)
ROOT_KEY = "root"


class BranchOverride(Base):
    """
    SQLAlchemy model for a thread's branch overrides.
    
    One row per (thread_id, parent_key); absence of a row means the latest
    child of that parent is active.
    """
    __tablename__ = "branch_overrides"
    
    thread_id = Column(String(40), ForeignKey("threads.id", ondelete="CASCADE"), primary_key=True)
    parent_key = Column(String(40), primary_key=True)
    active_child_id = Column(String(40), nullable=False)
