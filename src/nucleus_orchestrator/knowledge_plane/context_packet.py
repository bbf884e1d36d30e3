"""
nucleus-orchestrator — immutable context packets

File: src/nucleus_orchestrator/knowledge_plane/context_packet.py
Last updated: 2026-10-19

Purpose
- Assemble the facts, sources, assumptions and augmentations a plan runs
  against into one immutable, content-addressed packet.

Functional requirements
- The packet id is ``sha256-<hex>`` over the normalized content; provenance is
  excluded and construction order never changes the id.
- Duplicate fact keys resolve last-write-wins inside the builder.
- ``compute_context_ref`` verifies any packet independently of a builder.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

from nucleus_orchestrator.utils.hashing import canonical_json, sha256_json

if TYPE_CHECKING:
    from nucleus_orchestrator.knowledge_plane.internal_scope import InternalContextScope

CONTEXT_REF_PREFIX: Final[str] = "sha256-"


class ContextPacketError(ValueError):
    """Raised when a packet fails validation or verification."""


@dataclass(frozen=True, slots=True)
class ContextSource:
    uri: str
    digest: str | None = None
    type: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.uri, str) or not self.uri.strip():
            raise ContextPacketError("ContextSource.uri: must be a non-empty string")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"uri": self.uri}
        if self.digest is not None:
            out["digest"] = self.digest
        if self.type is not None:
            out["type"] = self.type
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ContextSource:
        return cls(uri=data["uri"], digest=data.get("digest"), type=data.get("type"))


@dataclass(frozen=True, slots=True)
class Augmentation:
    type: str
    artifact: Any

    def __post_init__(self) -> None:
        if not isinstance(self.type, str) or not self.type.strip():
            raise ContextPacketError("Augmentation.type: must be a non-empty string")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "artifact": copy.deepcopy(self.artifact)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Augmentation:
        return cls(type=data["type"], artifact=copy.deepcopy(data.get("artifact")))


@dataclass(frozen=True, slots=True)
class ContextPacket:
    """Immutable, content-addressed bundle of facts; build one with ``ContextBuilder``."""

    id: str
    version: str
    sources: tuple[ContextSource, ...] = ()
    facts: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    assumptions: tuple[Any, ...] = ()
    augmentations: tuple[Augmentation, ...] = ()
    provenance: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.facts, MappingProxyType):
            object.__setattr__(self, "facts", MappingProxyType(copy.deepcopy(dict(self.facts))))
        if not isinstance(self.provenance, MappingProxyType):
            object.__setattr__(
                self, "provenance", MappingProxyType(copy.deepcopy(dict(self.provenance)))
            )
        object.__setattr__(self, "sources", tuple(self.sources))
        object.__setattr__(self, "assumptions", tuple(self.assumptions))
        object.__setattr__(self, "augmentations", tuple(self.augmentations))

    @property
    def has_facts(self) -> bool:
        return len(self.facts) > 0

    def content(self) -> dict[str, Any]:
        """Hashable content: everything except ``id``, ``version`` and ``provenance``."""
        return {
            "sources": [source.to_dict() for source in self.sources],
            "facts": copy.deepcopy(dict(self.facts)),
            "assumptions": copy.deepcopy(list(self.assumptions)),
            "augmentations": [item.to_dict() for item in self.augmentations],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            **self.content(),
            "provenance": copy.deepcopy(dict(self.provenance)),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, verify: bool = True) -> ContextPacket:
        packet = cls(
            id=str(data["id"]),
            version=str(data.get("version", "1")),
            sources=tuple(ContextSource.from_dict(item) for item in data.get("sources", ())),
            facts=dict(data.get("facts", {})),
            assumptions=tuple(copy.deepcopy(list(data.get("assumptions", ())))),
            augmentations=tuple(
                Augmentation.from_dict(item) for item in data.get("augmentations", ())
            ),
            provenance=dict(data.get("provenance", {})),
        )
        if verify:
            verify_context_packet(packet)
        return packet


def _normalize_content(
    sources: list[dict[str, Any]],
    facts: Mapping[str, Any],
    assumptions: list[Any],
    augmentations: list[dict[str, Any]],
) -> dict[str, Any]:
    # Lists are sorted by their canonical JSON text so order carries no meaning.
    return {
        "sources": sorted(sources, key=canonical_json),
        "facts": dict(facts),
        "assumptions": sorted(assumptions, key=canonical_json),
        "augmentations": sorted(augmentations, key=canonical_json),
    }


class ContextBuilder:
    """Fluent builder producing content-addressed ``ContextPacket`` objects."""

    def __init__(self) -> None:
        self._sources: list[ContextSource] = []
        self._facts: dict[str, Any] = {}
        self._assumptions: list[Any] = []
        self._augmentations: list[Augmentation] = []
        self._provenance: dict[str, Any] = {}

    @classmethod
    def from_packet(cls, packet: ContextPacket) -> ContextBuilder:
        """Seed a builder with an existing packet's content, e.g. for its next version."""
        builder = cls()
        builder._sources = list(packet.sources)
        builder._facts = copy.deepcopy(dict(packet.facts))
        builder._assumptions = copy.deepcopy(list(packet.assumptions))
        builder._augmentations = list(packet.augmentations)
        builder._provenance = copy.deepcopy(dict(packet.provenance))
        return builder

    def add_source(
        self, uri: str, *, digest: str | None = None, type: str | None = None
    ) -> ContextBuilder:
        self._sources.append(ContextSource(uri=uri, digest=digest, type=type))
        return self

    def add_fact(self, key: str, value: Any) -> ContextBuilder:
        if not isinstance(key, str) or not key:
            raise ContextPacketError("fact key must be a non-empty string")
        # Last write wins.
        self._facts[key] = copy.deepcopy(value)
        return self

    def add_facts(self, facts: Mapping[str, Any]) -> ContextBuilder:
        for key, value in facts.items():
            self.add_fact(key, value)
        return self

    def add_assumption(self, assumption: Any) -> ContextBuilder:
        self._assumptions.append(copy.deepcopy(assumption))
        return self

    def add_augmentation(self, type: str, artifact: Any) -> ContextBuilder:
        self._augmentations.append(Augmentation(type=type, artifact=copy.deepcopy(artifact)))
        return self

    def add_promoted(self, scope: InternalContextScope) -> ContextBuilder:
        """Fold every promoted artifact of ``scope`` in as an augmentation."""
        for artifact in scope.promoted_artifacts():
            self.add_augmentation(
                artifact.type,
                {
                    "artifact_id": artifact.id,
                    "digest": artifact.digest,
                    "content": copy.deepcopy(artifact.content),
                    "provenance": copy.deepcopy(dict(artifact.provenance)),
                },
            )
        return self

    def set_provenance(self, provenance: Mapping[str, Any]) -> ContextBuilder:
        self._provenance = copy.deepcopy(dict(provenance))
        return self

    def build(self, version: str = "1") -> ContextPacket:
        content = _normalize_content(
            [source.to_dict() for source in self._sources],
            self._facts,
            list(self._assumptions),
            [item.to_dict() for item in self._augmentations],
        )
        return ContextPacket(
            id=CONTEXT_REF_PREFIX + sha256_json(content),
            version=version,
            sources=tuple(self._sources),
            facts=self._facts,
            assumptions=tuple(self._assumptions),
            augmentations=tuple(self._augmentations),
            provenance=self._provenance,
        )

    @staticmethod
    def compute_context_ref(packet: ContextPacket) -> str:
        content = packet.content()
        normalized = _normalize_content(
            content["sources"], content["facts"], content["assumptions"], content["augmentations"]
        )
        return CONTEXT_REF_PREFIX + sha256_json(normalized)


def verify_context_packet(packet: ContextPacket) -> None:
    """Raise ``ContextPacketError`` when ``packet.id`` does not match its content."""
    expected = ContextBuilder.compute_context_ref(packet)
    if packet.id != expected:
        raise ContextPacketError(
            f"context packet id mismatch: recorded {packet.id}, computed {expected}"
        )


__all__ = [
    "CONTEXT_REF_PREFIX",
    "Augmentation",
    "ContextBuilder",
    "ContextPacket",
    "ContextPacketError",
    "ContextSource",
    "verify_context_packet",
]
