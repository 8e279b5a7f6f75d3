"""Database layer - engine, base classes, types and append-only guards."""

from cargo_kernel.db.base import Base, TrackedBase, UUIDString
from cargo_kernel.db.engine import (
    build_engine,
    build_session_factory,
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
)
from cargo_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "register_immutability_listeners",
    "unregister_immutability_listeners",
]
