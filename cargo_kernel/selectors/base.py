"""
Module: cargo_kernel.selectors.base
Responsibility: Shared constructor for read-side queries over documents
    and their state history.
Architecture position: Kernel > Selectors.  Imports models/ only.

Selectors never add, delete or flush, and hand back DTOs rather than
ORM rows so callers cannot mutate history through a query result.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from cargo_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    def __init__(self, session: Session):
        self.session = session
