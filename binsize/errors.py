"""Exceptions raised while collecting build data and analysing binaries."""

from __future__ import annotations

from pathlib import Path


class BloatError(Exception):
    """Base class for every analysis error."""


class StdDirNotFound(BloatError):
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(
            f"failed to find a dir with std libraries. Expected location: {self.path}"
        )


class RustcFailed(BloatError):
    def __init__(self) -> None:
        super().__init__("failed to execute 'rustc'. It should be in the PATH")


class CargoError(BloatError):
    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class CargoMetadataFailed(BloatError):
    def __init__(self) -> None:
        super().__init__("failed to execute 'cargo'. It should be in the PATH")


class CargoBuildFailed(BloatError):
    def __init__(self) -> None:
        super().__init__("failed to execute 'cargo build'. Probably a build error")


class UnsupportedCrateType(BloatError):
    def __init__(self) -> None:
        super().__init__("only 'bin', 'dylib' and 'cdylib' crate types are supported")


class OpenFailed(BloatError):
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(f"failed to open a file '{self.path}'")


class InvalidCargoOutput(BloatError):
    def __init__(self) -> None:
        super().__init__("failed to parse 'cargo' output")


class NoArtifacts(BloatError):
    def __init__(self) -> None:
        super().__init__("'cargo' does not produce any build artifacts")


class UnsupportedFileFormat(BloatError):
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(f"'{self.path}' has an unsupported file format")


class ParsingError(BloatError):
    def __init__(self, cause: object) -> None:
        self.cause = cause
        super().__init__(f"parsing failed cause '{cause}'")


class PdbError(BloatError):
    def __init__(self, cause: object) -> None:
        self.cause = cause
        super().__init__(f"error parsing pdb file cause '{cause}'")


class TargetDetectionFailed(BloatError):
    def __init__(self) -> None:
        super().__init__("failed to detect target triple")