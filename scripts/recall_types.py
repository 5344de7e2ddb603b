"""Value types shared by the recall pipeline.

Candidates are frozen so a cached result list can be handed to several
readers without copying each item; lists themselves are always copied on
the way in and out of a cache.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any

__all__ = [
    "Candidate",
    "ExecuteStatus",
    "Keyword",
    "KeywordType",
    "PipelineResult",
    "RankedCandidate",
    "SourceKind",
]


class SourceKind(str, Enum):
    """Where a candidate came from."""

    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    CORPUS = "corpus"
    MEMORY = "memory"


class KeywordType(str, Enum):
    PERSON = "person"
    LOCATION = "location"
    EVENT = "event"
    EMOTION = "emotion"
    OBJECT = "object"
    DEFAULT = "default"


@dataclass(frozen=True)
class Keyword:
    """An extracted keyword; weight is frequency times importance multiplier."""

    text: str
    weight: float
    type: KeywordType = KeywordType.DEFAULT


@dataclass(frozen=True)
class Candidate:
    """One retrieved text fragment with a backend-local relevance score."""

    text: str
    score: float
    source: SourceKind
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_source(self, source: SourceKind) -> "Candidate":
        return replace(self, source=source)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["source"] = self.source.value
        return data


@dataclass(frozen=True)
class RankedCandidate(Candidate):
    """A candidate re-scored by the rerank model.

    ``original_index`` is the position in the list that was submitted for
    reranking.
    """

    rerank_score: float = 0.0
    original_index: int = -1

    @classmethod
    def from_candidate(cls, candidate: Candidate, rerank_score: float,
                       original_index: int) -> "RankedCandidate":
        return cls(
            text=candidate.text,
            score=candidate.score,
            source=candidate.source,
            metadata=candidate.metadata,
            rerank_score=rerank_score,
            original_index=original_index,
        )


class ExecuteStatus(str, Enum):
    COMPLETED = "completed"
    CACHED = "cached"
    PREFETCHED = "prefetched"
    SKIPPED = "skipped"
    DISABLED = "disabled"


@dataclass
class PipelineResult:
    """Outcome of one ``RecallEngine.execute`` call.

    ``diagnostics`` carries what used to be broadcast as events: per-source
    counts, dedup size, rerank outcome and elapsed time. Callers may publish
    it however they like.
    """

    status: ExecuteStatus
    query: str
    results: list[Candidate] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.status is ExecuteStatus.SKIPPED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "query": self.query,
            "results": [c.to_dict() for c in self.results],
            "diagnostics": dict(self.diagnostics),
        }
