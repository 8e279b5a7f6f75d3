"""
BaseService -- common constructor for the document services.

Services write through the caller's ``Session`` and only ever flush.  The
unit of work (``WorkflowRuntime.transaction``) owns commit and rollback, so
a coordination create, its master waybill assignment and the history rows
they produce land or vanish together.  Multi-step mutations run inside
``session.begin_nested()`` so a failure half way leaves no partial rows
even when the caller decides to continue.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from cargo_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """Parameterised by the document model the service is primarily about."""

    def __init__(self, session: Session):
        self.session = session
