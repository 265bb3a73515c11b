"""
Deliberator Package
===================
Multi-responder deliberation: pose one question to several AI responders,
let them debate, and return a single adjudicated answer.
"""

from deliberator.direct_handler import DirectQueryHandler
from deliberator.orchestrator import DeliberationOrchestrator
from deliberator.query_router import QueryRouter
from deliberator.schemas import Query, QueryMode, SessionResult

__all__ = [
    "DeliberationOrchestrator",
    "DirectQueryHandler",
    "Query",
    "QueryMode",
    "QueryRouter",
    "SessionResult",
]
