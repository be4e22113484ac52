from .inmemory_mongo import InMemBucket, InMemClient, InMemCollection, InMemDatabase
from .mocks import async_context, executed_sql, find_call

__all__ = [
    "InMemBucket",
    "InMemClient",
    "InMemCollection",
    "InMemDatabase",
    "async_context",
    "executed_sql",
    "find_call",
]
