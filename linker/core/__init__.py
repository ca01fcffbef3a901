"""
Core Module - Domain model shared by every other layer.

Components:
- models: KnowledgePoint, CompositeKnowledgePointID, Origin
- identity: Effective ID resolution (the only place IDs are branched on)
- mastery: Mastery tiers, severity penalties and review scheduling
- errors: Error taxonomy
"""

from linker.core.errors import (
    ActionRequiresSync,
    GuestLimitReached,
    IdentityUnresolvable,
    KnowledgePointNotFound,
    LinkerError,
    LocalPersistenceFailure,
    RemoteError,
    RemoteRejected,
    RemoteUnreachable,
)
from linker.core.identity import effective_id
from linker.core.mastery import MasteryEngine, MasteryTier, Outcome, Severity
from linker.core.models import CompositeKnowledgePointID, KnowledgePoint, Origin

__all__ = [
    # Models
    "CompositeKnowledgePointID",
    "KnowledgePoint",
    "Origin",
    "effective_id",
    # Mastery
    "MasteryEngine",
    "MasteryTier",
    "Outcome",
    "Severity",
    # Errors
    "ActionRequiresSync",
    "GuestLimitReached",
    "IdentityUnresolvable",
    "KnowledgePointNotFound",
    "LinkerError",
    "LocalPersistenceFailure",
    "RemoteError",
    "RemoteRejected",
    "RemoteUnreachable",
]
