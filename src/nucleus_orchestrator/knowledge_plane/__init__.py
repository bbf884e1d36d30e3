"""Knowledge-plane public API: decision ledger, context packets and internal scope."""

from nucleus_orchestrator.knowledge_plane.context_packet import (
    CONTEXT_REF_PREFIX,
    Augmentation,
    ContextBuilder,
    ContextPacket,
    ContextPacketError,
    ContextSource,
    verify_context_packet,
)
from nucleus_orchestrator.knowledge_plane.internal_scope import (
    ArtifactNotFoundError,
    InternalArtifact,
    InternalContextScope,
)
from nucleus_orchestrator.knowledge_plane.ledger import (
    Ledger,
    LedgerAppend,
    LedgerEntry,
    LedgerEntryType,
    LedgerError,
    LedgerIntegrityError,
    LedgerListener,
)

__all__ = [
    "CONTEXT_REF_PREFIX",
    "ArtifactNotFoundError",
    "Augmentation",
    "ContextBuilder",
    "ContextPacket",
    "ContextPacketError",
    "ContextSource",
    "InternalArtifact",
    "InternalContextScope",
    "Ledger",
    "LedgerAppend",
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerError",
    "LedgerIntegrityError",
    "LedgerListener",
    "verify_context_packet",
]
