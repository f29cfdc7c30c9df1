from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional


@dataclass(frozen=True)
class TranscriptAlternative:
    """
    One transcription hypothesis.

    Attributes:
        text: The transcribed text.
        confidence: Backend confidence in [0, 1], None if the backend does not report it.
        metadata: Backend specific extras (word timings, stability, ...). Stored read-only.
    """
    text: str
    confidence: Optional[float] = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class TranscriptResult:
    """
    A single result from a backend: ordered alternatives (best first) and finality.

    ``alternatives`` is never empty. A backend that has nothing usable still
    produces a result, with a single empty-text alternative substituted.
    ``is_final=True`` marks a hypothesis the backend will not revise.
    """
    alternatives: tuple[TranscriptAlternative, ...]
    is_final: bool

    def __post_init__(self) -> None:
        alternatives = tuple(self.alternatives)
        if not alternatives:
            alternatives = (TranscriptAlternative(text=""),)
        object.__setattr__(self, "alternatives", alternatives)

    @classmethod
    def from_text(cls, text: str, is_final: bool, confidence: Optional[float] = None) -> "TranscriptResult":
        return cls(alternatives=(TranscriptAlternative(text=text, confidence=confidence),), is_final=is_final)

    @classmethod
    def from_alternatives(cls, alternatives: Iterable[TranscriptAlternative], is_final: bool) -> "TranscriptResult":
        return cls(alternatives=tuple(alternatives), is_final=is_final)

    @property
    def text(self) -> str:
        """Text of the best (first) alternative."""
        return self.alternatives[0].text

    def as_final(self) -> "TranscriptResult":
        """Same result, marked final."""
        if self.is_final:
            return self
        return replace(self, is_final=True)
