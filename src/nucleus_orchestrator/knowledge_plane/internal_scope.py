"""Per-task store for context retrieved during a Nucleus invocation."""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

import structlog

from nucleus_orchestrator.domain.ids import generate_artifact_id
from nucleus_orchestrator.knowledge_plane.ledger import LedgerAppend, LedgerEntryType
from nucleus_orchestrator.utils.hashing import canonical_json, sha256_text


class ArtifactNotFoundError(KeyError):
    """Raised when an artifact id is not present in the scope."""

    def __init__(self, artifact_id: str) -> None:
        self.artifact_id = artifact_id
        super().__init__(f"artifact not found: {artifact_id}")

    def __str__(self) -> str:
        return f"artifact not found: {self.artifact_id}"


@dataclass(frozen=True, slots=True)
class InternalArtifact:
    id: str
    type: str
    content: Any
    digest: str
    size_bytes: int
    provenance: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def catalog_entry(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "size_bytes": self.size_bytes}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "content": copy.deepcopy(self.content),
            "digest": self.digest,
            "size_bytes": self.size_bytes,
            "provenance": copy.deepcopy(dict(self.provenance)),
        }


def serialize_artifact_content(content: Any) -> str:
    """Strings are stored as-is; everything else is measured as canonical JSON."""
    if isinstance(content, str):
        return content
    return canonical_json(content)


class InternalContextScope:
    """
    Artifacts fetched on behalf of one task, bound to one Nucleus.

    Every add and promote is recorded as a ``CONTEXT_INTERNALIZED`` ledger entry.
    Promotion is idempotent per artifact id.
    """

    def __init__(
        self,
        ledger_append: LedgerAppend | None = None,
        *,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._ledger_append = ledger_append
        self._id_factory = id_factory or generate_artifact_id
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._artifacts: dict[str, InternalArtifact] = {}
        self._promoted: list[str] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def __len__(self) -> int:
        return len(self._artifacts)

    def __contains__(self, artifact_id: object) -> bool:
        return artifact_id in self._artifacts

    @property
    def artifacts(self) -> tuple[InternalArtifact, ...]:
        return tuple(self._artifacts.values())

    @property
    def promoted_ids(self) -> tuple[str, ...]:
        return tuple(self._promoted)

    def add_artifact(
        self,
        type: str,
        content: Any,
        provenance: Mapping[str, Any] | None = None,
    ) -> str:
        if not isinstance(type, str) or not type.strip():
            raise ValueError("artifact type must be a non-empty string")
        serialized = serialize_artifact_content(content)
        artifact_provenance: dict[str, Any] = {
            "retrieved_at": self._clock().astimezone(UTC).isoformat().replace("+00:00", "Z")
        }
        if provenance:
            artifact_provenance.update(copy.deepcopy(dict(provenance)))

        artifact = InternalArtifact(
            id=self._id_factory(),
            type=type,
            content=copy.deepcopy(content),
            digest=sha256_text(serialized),
            size_bytes=len(serialized.encode("utf-8")),
            provenance=MappingProxyType(artifact_provenance),
        )
        self._artifacts[artifact.id] = artifact
        self._record(
            {
                "action": "add",
                "artifact_id": artifact.id,
                "type": artifact.type,
                "digest": artifact.digest,
                "size_bytes": artifact.size_bytes,
                "provenance": dict(artifact.provenance),
            }
        )
        self._logger.debug(
            "internal_scope_artifact_added",
            artifact_id=artifact.id,
            artifact_type=artifact.type,
            size_bytes=artifact.size_bytes,
        )
        return artifact.id

    def promote(self, artifact_id: str) -> None:
        artifact = self._require(artifact_id)
        if artifact_id in self._promoted:
            return
        self._promoted.append(artifact_id)
        self._record({"action": "promote", "artifact_id": artifact_id, "digest": artifact.digest})

    def get_artifact(self, artifact_id: str) -> Any:
        """Return the raw content of ``artifact_id``."""
        return copy.deepcopy(self._require(artifact_id).content)

    def get(self, artifact_id: str) -> InternalArtifact:
        return self._require(artifact_id)

    def promoted_artifacts(self) -> tuple[InternalArtifact, ...]:
        return tuple(self._artifacts[artifact_id] for artifact_id in self._promoted)

    def catalog(self) -> list[dict[str, Any]]:
        return [artifact.catalog_entry() for artifact in self._artifacts.values()]

    def _require(self, artifact_id: str) -> InternalArtifact:
        artifact = self._artifacts.get(artifact_id)
        if artifact is None:
            raise ArtifactNotFoundError(artifact_id)
        return artifact

    def _record(self, details: dict[str, Any]) -> None:
        if self._ledger_append is not None:
            self._ledger_append(LedgerEntryType.CONTEXT_INTERNALIZED, details)


__all__ = [
    "ArtifactNotFoundError",
    "InternalArtifact",
    "InternalContextScope",
    "serialize_artifact_content",
]
