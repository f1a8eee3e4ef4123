"""Collection of build metadata and size data for compiled binaries."""

from __future__ import annotations

import json
import os
import struct
import subprocess
from bisect import bisect_left
from collections.abc import Iterable, Iterator
from itertools import groupby
from pathlib import Path

from binsize.demangle import Kind, SymbolData, SymbolName, demangle
from binsize.errors import (
    InvalidCargoOutput,
    NoArtifacts,
    OpenFailed,
    PdbError,
    RustcFailed,
    StdDirNotFound,
    UnsupportedFileFormat,
)
from binsize.models import (
    AnalysisConfig,
    AnalysisResult,
    Artifact,
    ArtifactKind,
    BuildContext,
)
from binsize.objfile import (
    Format,
    detect_format,
    parse_ar_symbols,
    parse_elf_symbols,
    parse_macho_symbols,
    parse_pe_symbols,
)

_CRATE_KINDS = {
    "bin": ArtifactKind.BINARY,
    "lib": ArtifactKind.LIBRARY,
    "rlib": ArtifactKind.LIBRARY,
    "dylib": ArtifactKind.DYNLIB,
    "cdylib": ArtifactKind.DYNLIB,
}


class BloatAnalyzer:
    """Entry points for gathering build context and analysing binaries."""

    @staticmethod
    def from_cargo_metadata(
        json_messages: Iterable[str],
        target_dir: Path | str | None = None,
        target_triple: str | None = None,
    ) -> BuildContext:
        """Build a context from the JSON messages printed by a cargo build."""
        triple = target_triple if target_triple is not None else get_default_target()

        artifacts = parse_artifacts(json_messages)
        if not artifacts:
            raise NoArtifacts()

        rlib_paths = [
            (artifact.name, artifact.path)
            for artifact in artifacts
            if artifact.kind is ArtifactKind.LIBRARY
        ]
        # Only adjacent duplicates are dropped, before sorting.
        dep_crates = sorted(name for name, _ in groupby(a.name for a in artifacts))

        std_paths = collect_rlib_paths(stdlibs_dir(triple))
        std_crates = sorted(name for name, _ in std_paths)
        rlib_paths.extend(std_paths)

        # Std crates that were pulled in explicitly count as dependencies.
        for crate in dep_crates:
            if crate in std_crates:
                std_crates.remove(crate)

        return BuildContext(
            target_triple=triple,
            artifacts=artifacts,
            std_crates=std_crates,
            dep_crates=dep_crates,
            deps_symbols=collect_deps_symbols(rlib_paths),
        )

    @staticmethod
    def analyze_binary(
        binary_path: Path | str,
        context: BuildContext,
        config: AnalysisConfig,
    ) -> AnalysisResult:
        """Collect the symbols and section size of a binary."""
        return collect_self_data(Path(binary_path), config.section())


def _field(obj: object, key: str) -> object:
    return obj.get(key) if isinstance(obj, dict) else None


def parse_artifacts(json_messages: Iterable[str]) -> list[Artifact]:
    """Extract the build artifacts listed in cargo's JSON messages."""
    artifacts = []
    for line in json_messages:
        try:
            build = json.loads(line)
        except (ValueError, TypeError):
            raise InvalidCargoOutput() from None
        target = _field(build, "target")
        target_name = _field(target, "name")
        if not isinstance(target_name, str):
            continue
        filenames = _field(build, "filenames")
        if filenames is None:
            continue
        crate_types = _field(target, "crate_types")
        paths = filenames if isinstance(filenames, list) else []
        types = crate_types if isinstance(crate_types, list) else []
        for path, crate_type in zip(paths, types):
            if not isinstance(crate_type, str) or not isinstance(path, str):
                raise InvalidCargoOutput()
            kind = _CRATE_KINDS.get(crate_type)
            if kind is None:
                continue
            artifacts.append(Artifact(kind, target_name.replace("-", "_"), Path(path)))
    return artifacts


def _read_file(path: Path | str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError:
        raise OpenFailed(path) from None


def collect_self_data(path: Path | str, section_name: str) -> AnalysisResult:
    """Read a binary and return its symbols, sorted and unique by address."""
    path = Path(path)
    data = _read_file(path)

    fmt = detect_format(data)
    if fmt in (Format.ELF32, Format.ELF64):
        result = _collect_elf_data(path, data, section_name)
    elif fmt is Format.MACHO:
        symbols, text_size = parse_macho_symbols(data)
        result = AnalysisResult(0, text_size, symbols, None)
    elif fmt is Format.PE:
        result = _collect_pe_data(path, data)
    else:
        raise UnsupportedFileFormat(path)

    # Several symbols may share an address; keep the first of each.
    ordered = sorted(result.symbols, key=lambda symbol: symbol.address)
    result.symbols = [next(group) for _, group in groupby(ordered, key=lambda s: s.address)]

    try:
        result.file_size = path.stat().st_size
    except OSError:
        raise OpenFailed(path) from None
    return result


def _collect_elf_data(path: Path, data: bytes, section_name: str) -> AnalysisResult:
    if len(data) < 6 or data[4] not in (1, 2) or data[5] not in (1, 2):
        raise UnsupportedFileFormat(path)
    symbols, text_size = parse_elf_symbols(data, section_name)
    return AnalysisResult(0, text_size, symbols, section_name)


def _collect_pe_data(path: Path, data: bytes) -> AnalysisResult:
    symbols, text_size = parse_pe_symbols(data)
    if symbols:
        return AnalysisResult(0, text_size, symbols, None)
    # MSVC builds keep their symbols in a separate PDB file.
    if not path.name:
        raise OpenFailed(path)
    pdb_path = path.with_name(path.name.replace("-", "_")).with_suffix(".pdb")
    return _collect_pdb_data(pdb_path, text_size)


_MSF_MAGIC = b"Microsoft C/C++ MSF 7.00\r\n\x1aDS\x00\x00\x00"
_NO_STREAM = 0xFFFF
_DBI_STREAM = 3
_DBI_HEADER = "<iIIHHHHHHiiiiiIiiHHI"
_DBI_HEADER_SIZE = 64
_MODULE_INFO_SIZE = 64
_SECTION_HEADER_SLOT = 5
_SECTION_HEADER_SIZE = 40
_S_PUB32 = 0x110E
_PROCEDURE_KINDS = frozenset({0x110F, 0x1110, 0x1146, 0x1147})
_PUBLIC_CODE_OR_FUNCTION = 0x3


def _pdb_unpack(fmt: str, data: bytes, offset: int) -> tuple:
    size = struct.calcsize(fmt)
    if offset < 0 or offset + size > len(data):
        raise PdbError("unexpected end of file")
    return struct.unpack_from(fmt, data, offset)


class _Msf:
    """Stream access to a multi-stream (MSF 7.00) container."""

    def __init__(self, data: bytes) -> None:
        if data[: len(_MSF_MAGIC)] != _MSF_MAGIC:
            raise PdbError("unrecognized file format")
        self._data = data
        block_size, _fpm, _count, dir_bytes, _unused, map_addr = _pdb_unpack(
            "<6I", data, len(_MSF_MAGIC)
        )
        if block_size == 0:
            raise PdbError("invalid block size")
        self._block_size = block_size

        dir_blocks = _pdb_unpack(
            f"<{self._blocks_for(dir_bytes)}I", data, map_addr * block_size
        )
        directory = self._read(dir_blocks, dir_bytes)
        (stream_count,) = _pdb_unpack("<I", directory, 0)
        sizes = _pdb_unpack(f"<{stream_count}I", directory, 4)
        pos = 4 + 4 * stream_count
        self._streams: list[tuple[int, tuple[int, ...]]] = []
        for size in sizes:
            if size == 0xFFFFFFFF:
                size = 0
            count = self._blocks_for(size)
            blocks = _pdb_unpack(f"<{count}I", directory, pos)
            pos += 4 * count
            self._streams.append((size, blocks))

    def _blocks_for(self, size: int) -> int:
        return -(-size // self._block_size)

    def _read(self, blocks: Iterable[int], size: int) -> bytes:
        chunks = []
        for block in blocks:
            start = block * self._block_size
            if start >= len(self._data):
                raise PdbError("block out of range")
            chunks.append(self._data[start:start + self._block_size])
        joined = b"".join(chunks)
        if len(joined) < size:
            raise PdbError("unexpected end of file")
        return joined[:size]

    def stream(self, index: int) -> bytes:
        if index == _NO_STREAM or index >= len(self._streams):
            raise PdbError(f"stream {index} not found")
        size, blocks = self._streams[index]
        return self._read(blocks, size)


def _records(buf: bytes, start: int, end: int) -> Iterator[tuple[int, bytes]]:
    pos = start
    end = min(end, len(buf))
    while pos + 4 <= end:
        length, kind = struct.unpack_from("<HH", buf, pos)
        if length < 2:
            return
        yield kind, buf[pos + 4:pos + 2 + length]
        pos += 2 + length


def _record_name(body: bytes, start: int) -> str:
    stop = body.find(b"\0", start)
    if stop == -1:
        stop = len(body)
    return body[start:stop].decode("utf-8", "replace")


def _dbi_modules(dbi: bytes, start: int, end: int) -> Iterator[tuple[int, int]]:
    pos = start
    while pos + _MODULE_INFO_SIZE <= end:
        stream, sym_bytes = _pdb_unpack("<HI", dbi, pos + 34)
        cursor = pos + _MODULE_INFO_SIZE
        for _ in range(2):  # module name, object file name
            stop = dbi.find(b"\0", cursor, end)
            if stop == -1:
                raise PdbError("truncated module info")
            cursor = stop + 1
        pos = (cursor + 3) & ~3
        yield stream, sym_bytes


def _collect_pdb_data(pdb_path: Path, text_size: int) -> AnalysisResult:
    msf = _Msf(_read_file(pdb_path))
    dbi = msf.stream(_DBI_STREAM)
    (
        _sig, _ver, _age, _gsi, _build, _psi, _dll, sym_records, _rbld,
        mod_info, sec_contr, sec_map, src_info, ts_map, _mfc, opt_dbg, ec,
        _flags, _machine, _pad,
    ) = _pdb_unpack(_DBI_HEADER, dbi, 0)

    modules = list(
        _dbi_modules(dbi, _DBI_HEADER_SIZE, _DBI_HEADER_SIZE + mod_info)
    )

    opt_start = _DBI_HEADER_SIZE + mod_info + sec_contr + sec_map + src_info + ts_map + ec
    slots = _pdb_unpack(f"<{max(opt_dbg, 0) // 2}H", dbi, opt_start)
    section_addresses: list[int] = []
    if len(slots) > _SECTION_HEADER_SLOT and slots[_SECTION_HEADER_SLOT] != _NO_STREAM:
        headers = msf.stream(slots[_SECTION_HEADER_SLOT])
        section_addresses = [
            struct.unpack_from("<I", headers, offset + 12)[0]
            for offset in range(0, len(headers) - _SECTION_HEADER_SIZE + 1, _SECTION_HEADER_SIZE)
        ]

    global_stream = msf.stream(sym_records)
    module_streams = [
        (msf.stream(stream), sym_bytes)
        for stream, sym_bytes in modules
        if stream != _NO_STREAM
    ]

    def all_records() -> Iterator[tuple[int, bytes]]:
        yield from _records(global_stream, 0, len(global_stream))
        for buf, sym_bytes in module_streams:
            yield from _records(buf, 4, sym_bytes)

    publics = []
    for kind, body in all_records():
        if kind == _S_PUB32 and len(body) >= 10:
            flags, offset, segment = struct.unpack_from("<IIH", body, 0)
            if flags & _PUBLIC_CODE_OR_FUNCTION:
                publics.append(((segment, offset), _record_name(body, 10)))
    publics.sort(key=lambda public: public[0])
    keys = [key for key, _ in publics]

    symbols = []
    for kind, body in all_records():
        if kind not in _PROCEDURE_KINDS or len(body) < 35:
            continue
        (length,) = struct.unpack_from("<I", body, 12)
        offset, segment = struct.unpack_from("<IH", body, 28)
        index = bisect_left(keys, (segment, offset))
        mangled = (
            publics[index][1]
            if index < len(keys) and keys[index] <= (segment, offset + length)
            else None
        )
        if not 1 <= segment <= len(section_addresses):
            continue
        address = section_addresses[segment - 1] + offset
        if mangled is not None:
            name = demangle(mangled)
        else:
            # PDB procedure names are already unmangled; assume legacy formatting.
            plain = _record_name(body, 35)
            name = SymbolName(plain, plain, None, Kind.LEGACY)
        symbols.append(SymbolData(name, address, length))

    return AnalysisResult(0, text_size, symbols, None)


def collect_deps_symbols(libs: Iterable[tuple[str, Path | str]]) -> dict[str, list[str]]:
    """Map every symbol exported by the given libraries to the crates defining it."""
    mapping: dict[str, list[str]] = {}
    for name, path in libs:
        for symbol in parse_ar_symbols(_read_file(path)):
            mapping.setdefault(symbol, []).append(name)
    return {
        symbol: [name for name, _ in groupby(names)]
        for symbol, names in mapping.items()
    }


def collect_rlib_paths(deps_dir: Path | str) -> list[tuple[str, Path]]:
    """List the `.rlib` files of a directory with the crate names they hold."""
    try:
        entries = list(Path(deps_dir).iterdir())
    except OSError:
        return []
    rlibs = []
    for path in entries:
        if path.suffix != ".rlib":
            continue
        stem = path.stem.split("-", 1)[0]
        rlibs.append((stem[3:], path))  # drop the 'lib' prefix
    rlibs.sort(key=lambda entry: entry[0])
    return rlibs


def stdlibs_dir(target_triple: str) -> Path:
    """Locate the directory holding the standard library rlibs for a target."""
    # RUSTFLAGS are applied the way cargo applies them, so custom sysroots work.
    flags = [flag.strip() for flag in os.environ.get("RUSTFLAGS", "").split(" ")]
    try:
        output = subprocess.run(
            ["rustc", *(flag for flag in flags if flag), "--print=sysroot"],
            capture_output=True,
            check=False,
        )
    except OSError:
        raise RustcFailed() from None
    sysroot = output.stdout.decode("utf-8", "replace").strip()
    rustlib = Path(sysroot) / "lib" / "rustlib" / target_triple / "lib"
    if not rustlib.exists():
        raise StdDirNotFound(rustlib)
    return rustlib


def get_default_target() -> str:
    """Return the host target triple reported by the compiler."""
    try:
        output = subprocess.run(["rustc", "-Vv"], capture_output=True, check=False)
    except OSError:
        raise RustcFailed() from None
    for line in output.stdout.decode("utf-8", "replace").splitlines():
        if line.startswith("host:"):
            return line[6:]
    raise RustcFailed()