import json
import struct
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from binsize.analyzer import (
    BloatAnalyzer,
    collect_deps_symbols,
    collect_rlib_paths,
    collect_self_data,
    get_default_target,
    parse_artifacts,
    stdlibs_dir,
)
from binsize.demangle import Kind, SymbolName, demangle
from binsize.errors import (
    InvalidCargoOutput,
    NoArtifacts,
    OpenFailed,
    ParsingError,
    PdbError,
    RustcFailed,
    StdDirNotFound,
    UnsupportedFileFormat,
)
from binsize.models import AnalysisConfig, ArtifactKind, BuildContext

TRIPLE = "x86_64-unknown-linux-gnu"
MANGLED = "_ZN3foo3bar17h0123456789abcdefE"
MSF_MAGIC = b"Microsoft C/C++ MSF 7.00\r\n\x1aDS\x00\x00\x00"


def _completed(stdout):
    return subprocess.CompletedProcess(["rustc"], 0, stdout, b"")


def _ar(symbols):
    count = len(symbols)
    names = b"".join(s.encode() + b"\0" for s in symbols)
    body = struct.pack(">I", count) + struct.pack(f">{count}I", *([0] * count)) + names
    header = f"{'/':<16}{'0':<12}{'0':<6}{'0':<6}{'0':<8}{len(body):<10}`\n".encode()
    return b"!<arch>\n" + header + body


def _elf64(symbols, byte_order=1, text_size=0x100):
    shstr = b"\0.text\0.symtab\0.strtab\0.shstrtab\0"
    strtab = b"\0"
    symtab = bytes(24)
    for name, value, size in symbols:
        offset = len(strtab)
        strtab += name.encode() + b"\0"
        symtab += struct.pack("<IBBHQQ", offset, 0x12, 0, 1, value, size)
    text = b"\x90" * text_size
    text_off = 64
    symtab_off = text_off + len(text)
    strtab_off = symtab_off + len(symtab)
    shstr_off = strtab_off + len(strtab)
    shoff = shstr_off + len(shstr)
    fmt = "<IIQQQQIIQQ"
    headers = bytes(64)
    headers += struct.pack(fmt, shstr.index(b".text"), 1, 6, 0x1000, text_off, len(text), 0, 0, 16, 0)
    headers += struct.pack(fmt, shstr.index(b".symtab"), 2, 0, 0, symtab_off, len(symtab), 3, 1, 8, 24)
    headers += struct.pack(fmt, shstr.index(b".strtab"), 3, 0, 0, strtab_off, len(strtab), 0, 0, 1, 0)
    headers += struct.pack(fmt, shstr.index(b".shstrtab"), 3, 0, 0, shstr_off, len(shstr), 0, 0, 1, 0)
    header = bytearray(64)
    header[:4] = b"\x7fELF"
    header[4] = 2
    header[5] = byte_order
    header[6] = 1
    struct.pack_into("<Q", header, 0x28, shoff)
    struct.pack_into("<HHH", header, 0x3A, 64, 5, 4)
    return bytes(header) + text + symtab + strtab + shstr + headers


def _pe(text_vsize=0x200):
    data = bytearray(0x200)
    data[:2] = b"MZ"
    struct.pack_into("<I", data, 0x3C, 0x80)
    data[0x80:0x84] = b"PE\0\0"
    struct.pack_into("<HHIIIHH", data, 0x84, 0x8664, 1, 0, 0, 0, 0, 0)
    struct.pack_into("<8sIIII", data, 0x98, b".text", text_vsize, 0x1000, 0x200, 0x200)
    return bytes(data)


def _msf(streams, block_size=512):
    blocks = {}
    next_block = 3

    def alloc(data):
        nonlocal next_block
        count = -(-len(data) // block_size)
        indices = list(range(next_block, next_block + count))
        for n, index in enumerate(indices):
            blocks[index] = data[n * block_size:(n + 1) * block_size]
        next_block += count
        return indices

    stream_blocks = [alloc(s) for s in streams]
    directory = (
        struct.pack("<I", len(streams))
        + b"".join(struct.pack("<I", len(s)) for s in streams)
        + b"".join(struct.pack(f"<{len(b)}I", *b) for b in stream_blocks)
    )
    dir_blocks = alloc(directory)
    (map_block,) = alloc(struct.pack(f"<{len(dir_blocks)}I", *dir_blocks))
    blocks[0] = MSF_MAGIC + struct.pack("<6I", block_size, 1, next_block, len(directory), 0, map_block)
    return b"".join(blocks.get(i, b"").ljust(block_size, b"\0") for i in range(next_block))


def _record(kind, body):
    return struct.pack("<HH", len(body) + 2, kind) + body


def _proc(offset, size, name):
    body = struct.pack("<IIIIIIIIHB", 0, 0, 0, size, 0, 0, 0, offset, 1, 0)
    return _record(0x1110, body + name.encode() + b"\0")


def _pdb():
    public = _record(0x110E, struct.pack("<IIH", 1, 0x10, 1) + MANGLED.encode() + b"\0")
    module_stream = struct.pack("<I", 4) + _proc(0x10, 0x20, "foo::bar") + _proc(0x40, 8, "baz::qux")
    modinfo = bytearray(64)
    struct.pack_into("<HI", modinfo, 34, 6, len(module_stream))
    modinfo = bytes(modinfo) + b"mod\0obj\0"
    optional = struct.pack("<6H", 0xFFFF, 0xFFFF, 0xFFFF, 0xFFFF, 0xFFFF, 5)
    header = struct.pack(
        "<iIIHHHHHHiiiiiIiiHHI",
        -1, 19990903, 1, 0xFFFF, 0, 0xFFFF, 0, 4, 0,
        len(modinfo), 0, 0, 0, 0, 0, len(optional), 0, 0, 0x8664, 0,
    )
    dbi = header + modinfo + optional
    sections = struct.pack("<8sIIIIIIHHI", b".text", 0x200, 0x1000, 0x200, 0x400, 0, 0, 0, 0, 0x60000020)
    return _msf([b"", b"", b"", dbi, public, sections, module_stream])


@pytest.fixture(autouse=True)
def _no_rustflags(monkeypatch):
    monkeypatch.delenv("RUSTFLAGS", raising=False)


def _line(name, crate_types, filenames):
    return json.dumps({"target": {"name": name, "crate_types": crate_types}, "filenames": filenames})


def test_parse_artifacts_kinds_and_names():
    lines = [
        _line("my-app", ["bin"], ["/t/my-app"]),
        _line("dep", ["lib"], ["/t/libdep.rlib"]),
        _line("plugin", ["cdylib"], ["/t/libplugin.so"]),
        _line("proc", ["proc-macro"], ["/t/libproc.so"]),
        json.dumps({"reason": "build-finished", "success": True}),
    ]
    artifacts = parse_artifacts(lines)
    assert [(a.kind, a.name, a.path) for a in artifacts] == [
        (ArtifactKind.BINARY, "my_app", Path("/t/my-app")),
        (ArtifactKind.LIBRARY, "dep", Path("/t/libdep.rlib")),
        (ArtifactKind.DYNLIB, "plugin", Path("/t/libplugin.so")),
    ]


def test_parse_artifacts_skips_messages_without_filenames():
    line = json.dumps({"target": {"name": "x", "crate_types": ["bin"]}})
    assert parse_artifacts([line]) == []


def test_parse_artifacts_rejects_invalid_json():
    with pytest.raises(InvalidCargoOutput):
        parse_artifacts(["{not json"])


def test_from_cargo_metadata_without_artifacts():
    line = json.dumps({"reason": "build-finished"})
    with pytest.raises(NoArtifacts):
        BloatAnalyzer.from_cargo_metadata([line], "target", TRIPLE)


def test_from_cargo_metadata_builds_context(tmp_path):
    std_dir = tmp_path / "sysroot" / "lib" / "rustlib" / TRIPLE / "lib"
    std_dir.mkdir(parents=True)
    (std_dir / "libstd-abc.rlib").write_bytes(_ar(["shared", "std_only"]))
    (std_dir / "libcore-def.rlib").write_bytes(_ar(["core_only"]))
    (std_dir / "libfoo-123.rlib").write_bytes(_ar(["foo_only"]))
    dep = tmp_path / "libfoo.rlib"
    dep.write_bytes(_ar(["shared", "foo_only"]))
    lines = [
        _line("foo", ["lib"], [str(dep)]),
        _line("my-app", ["bin"], [str(tmp_path / "my-app")]),
    ]
    stdout = str(tmp_path / "sysroot").encode() + b"\n"
    with patch("binsize.analyzer.subprocess.run", return_value=_completed(stdout)) as run:
        context = BloatAnalyzer.from_cargo_metadata(lines, tmp_path, TRIPLE)
    assert run.call_args.args[0] == ["rustc", "--print=sysroot"]
    assert context.target_triple == TRIPLE
    assert context.dep_crates == ["foo", "my_app"]
    assert context.std_crates == ["core", "std"]
    assert context.deps_symbols["shared"] == ["foo", "std"]
    assert context.deps_symbols["foo_only"] == ["foo"]
    assert context.deps_symbols["core_only"] == ["core"]


def test_collect_rlib_paths(tmp_path):
    (tmp_path / "libfoo-abc123.rlib").write_bytes(b"")
    (tmp_path / "libbar-x.rlib").write_bytes(b"")
    (tmp_path / "notes.txt").write_bytes(b"")
    assert collect_rlib_paths(tmp_path) == [
        ("bar", tmp_path / "libbar-x.rlib"),
        ("foo", tmp_path / "libfoo-abc123.rlib"),
    ]


def test_collect_rlib_paths_missing_dir(tmp_path):
    assert collect_rlib_paths(tmp_path / "missing") == []


def test_collect_deps_symbols_merges_and_dedups(tmp_path):
    a = tmp_path / "a.rlib"
    b = tmp_path / "b.rlib"
    a.write_bytes(_ar([MANGLED, "plain"]))
    b.write_bytes(_ar(["plain"]))
    mapping = collect_deps_symbols([("a", a), ("a", a), ("b", b)])
    assert mapping[demangle(MANGLED).complete] == ["a"]
    assert mapping["plain"] == ["a", "b"]


def test_collect_deps_symbols_missing_file(tmp_path):
    with pytest.raises(OpenFailed):
        collect_deps_symbols([("x", tmp_path / "missing.rlib")])


def test_collect_self_data_elf_sorted_and_deduplicated(tmp_path):
    path = tmp_path / "app"
    data = _elf64([("b", 0x1020, 8), (MANGLED, 0x1000, 16), ("alias", 0x1000, 16)])
    path.write_bytes(data)
    result = collect_self_data(path, ".text")
    assert [s.address for s in result.symbols] == [0x1000, 0x1020]
    assert result.symbols[0].name == demangle(MANGLED)
    assert [s.size for s in result.symbols] == [16, 8]
    assert result.text_size == 0x100
    assert result.section_name == ".text"
    assert result.file_size == len(data)


def test_analyze_binary_uses_configured_section(tmp_path):
    path = tmp_path / "app"
    path.write_bytes(_elf64([("a", 0x1000, 4)]))
    context = BuildContext(TRIPLE)
    result = BloatAnalyzer.analyze_binary(path, context, AnalysisConfig())
    assert [s.name.complete for s in result.symbols] == ["a"]
    with pytest.raises(ParsingError):
        BloatAnalyzer.analyze_binary(path, context, AnalysisConfig(symbols_section=".missing"))


def test_collect_self_data_bad_byte_order(tmp_path):
    path = tmp_path / "app"
    path.write_bytes(_elf64([], byte_order=3))
    with pytest.raises(UnsupportedFileFormat):
        collect_self_data(path, ".text")


def test_collect_self_data_unknown_format(tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(b"plain text, not a binary")
    with pytest.raises(UnsupportedFileFormat):
        collect_self_data(path, ".text")


def test_collect_self_data_missing_file(tmp_path):
    with pytest.raises(OpenFailed):
        collect_self_data(tmp_path / "missing", ".text")


def test_pe_without_symbols_needs_pdb(tmp_path):
    path = tmp_path / "my-app.exe"
    path.write_bytes(_pe())
    with pytest.raises(OpenFailed) as info:
        collect_self_data(path, ".text")
    assert info.value.path == tmp_path / "my_app.pdb"


def test_pe_symbols_from_pdb(tmp_path):
    path = tmp_path / "my-app.exe"
    exe = _pe(text_vsize=0x180)
    path.write_bytes(exe)
    (tmp_path / "my_app.pdb").write_bytes(_pdb())
    result = collect_self_data(path, ".text")
    assert [(s.address, s.size) for s in result.symbols] == [(0x1010, 0x20), (0x1040, 8)]
    assert result.symbols[0].name == demangle(MANGLED)
    assert result.symbols[1].name == SymbolName("baz::qux", "baz::qux", None, Kind.LEGACY)
    assert result.text_size == 0x180
    assert result.section_name is None
    assert result.file_size == len(exe)


def test_invalid_pdb(tmp_path):
    path = tmp_path / "app.exe"
    path.write_bytes(_pe())
    (tmp_path / "app.pdb").write_bytes(b"garbage" * 10)
    with pytest.raises(PdbError):
        collect_self_data(path, ".text")


def test_get_default_target():
    stdout = b"rustc 1.80.0\nbinary: rustc\nhost: aarch64-apple-darwin\nrelease: 1.80.0\n"
    with patch("binsize.analyzer.subprocess.run", return_value=_completed(stdout)):
        assert get_default_target() == "aarch64-apple-darwin"


def test_get_default_target_without_host_line():
    with patch("binsize.analyzer.subprocess.run", return_value=_completed(b"rustc 1.80.0\n")):
        with pytest.raises(RustcFailed):
            get_default_target()


def test_get_default_target_without_rustc():
    with patch("binsize.analyzer.subprocess.run", side_effect=FileNotFoundError):
        with pytest.raises(RustcFailed):
            get_default_target()


def test_stdlibs_dir_applies_rustflags(tmp_path, monkeypatch):
    expected = tmp_path / "lib" / "rustlib" / TRIPLE / "lib"
    expected.mkdir(parents=True)
    monkeypatch.setenv("RUSTFLAGS", " -C  opt-level=3 ")
    with patch("binsize.analyzer.subprocess.run", return_value=_completed(str(tmp_path).encode())) as run:
        assert stdlibs_dir(TRIPLE) == expected
    assert run.call_args.args[0] == ["rustc", "-C", "opt-level=3", "--print=sysroot"]


def test_stdlibs_dir_missing(tmp_path):
    with patch("binsize.analyzer.subprocess.run", return_value=_completed(str(tmp_path).encode())):
        with pytest.raises(StdDirNotFound) as info:
            stdlibs_dir(TRIPLE)
    assert info.value.path == tmp_path / "lib" / "rustlib" / TRIPLE / "lib"