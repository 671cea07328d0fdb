# Models package
# Importing modules here ensures they are registered with SQLAlchemy Base
from . import resume

from .resume import ResumeRecord

__all__ = [
    "ResumeRecord",
]
