"""Data types describing builds, artifacts and analysis results."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path

from binsize.demangle import SymbolData


class ArtifactKind(enum.Enum):
    BINARY = "binary"
    LIBRARY = "library"
    DYNLIB = "dynlib"


@dataclass
class Artifact:
    kind: ArtifactKind
    name: str
    path: Path


@dataclass
class AnalysisConfig:
    symbols_section: str | None = None
    split_std: bool = False

    def section(self) -> str:
        """The section whose symbols are analysed, `.text` by default."""
        return self.symbols_section or ".text"


@dataclass
class AnalysisResult:
    file_size: int
    text_size: int
    symbols: list[SymbolData] = field(default_factory=list)
    section_name: str | None = None


@dataclass
class BuildContext:
    target_triple: str
    artifacts: list[Artifact] = field(default_factory=list)
    std_crates: list[str] = field(default_factory=list)
    dep_crates: list[str] = field(default_factory=list)
    deps_symbols: dict[str, list[str]] = field(default_factory=dict)