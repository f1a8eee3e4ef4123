"""Readers for the symbol tables of ELF, Mach-O, PE and ar files."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Union

from binsize.demangle import SymbolData, demangle
from binsize.errors import ParsingError

Buffer = Union[bytes, bytearray, memoryview]

_ELF_MAGIC = b"\x7fELF"
_MACHO_MAGIC_64 = b"\xcf\xfa\xed\xfe"
_AR_MAGIC = b"!<arch>\n"

_SHT_SYMTAB = 2
_STT_OBJECT = 1
_STT_FUNC = 2

_LC_SYMTAB = 0x2
_LC_SEGMENT_64 = 0x19
_N_STAB = 0xE0
_N_TYPE = 0x0E
_N_SECT = 0x0E

_PE_SECTION_SIZE = 40
_PE_SYMBOL_SIZE = 18
_PE_DTYPE_FUNCTION = 2

_AR_HEADER_SIZE = 60


class Format(enum.Enum):
    ELF32 = "elf32"
    ELF64 = "elf64"
    MACHO = "macho"
    PE = "pe"
    UNKNOWN = "unknown"


class ByteOrder(enum.Enum):
    LITTLE_ENDIAN = "<"
    BIG_ENDIAN = ">"


def _buffer(data):
    if isinstance(data, memoryview):
        return data.tobytes()
    return data


def _unpack(fmt: str, data, offset: int) -> tuple:
    size = struct.calcsize(fmt)
    if offset < 0 or offset + size > len(data):
        raise ParsingError("unexpected end of file")
    return struct.unpack_from(fmt, data, offset)


def _cstr(data, start: int, end: int | None = None) -> str:
    limit = len(data) if end is None else min(end, len(data))
    if start < 0 or start >= limit:
        raise ParsingError("unexpected end of file")
    stop = data.find(b"\0", start, limit)
    if stop == -1:
        stop = limit
    return bytes(data[start:stop]).decode("utf-8", "replace")


def _sized_symbols(entries: list[tuple[int, str]], end: int) -> list[SymbolData]:
    """Give address-only symbols a size reaching to the next symbol or the section end."""
    entries = sorted(entries, key=lambda entry: entry[0])
    addresses = sorted({address for address, _ in entries})
    following = dict(zip(addresses, addresses[1:] + [end]))
    return [
        SymbolData(demangle(name), address, max(following[address] - address, 0))
        for address, name in entries
    ]


def detect_format(data: Buffer) -> Format:
    """Recognise the object file format from its leading bytes."""
    data = _buffer(data)
    if bytes(data[:4]) == _ELF_MAGIC and len(data) > 4:
        if data[4] == 1:
            return Format.ELF32
        if data[4] == 2:
            return Format.ELF64
        return Format.UNKNOWN
    if bytes(data[:4]) == _MACHO_MAGIC_64:
        return Format.MACHO
    if bytes(data[:2]) == b"MZ":
        return Format.PE
    return Format.UNKNOWN


@dataclass
class _ElfSection:
    name_offset: int
    kind: int
    address: int
    offset: int
    size: int
    link: int


def parse_elf_symbols(data: Buffer, section_name: str) -> tuple[list[SymbolData], int]:
    """Return the symbols of an ELF section and that section's size."""
    data = _buffer(data)
    if len(data) < 6 or bytes(data[:4]) != _ELF_MAGIC:
        raise ParsingError("not an ELF file")
    if data[4] == 1:
        is_64 = False
    elif data[4] == 2:
        is_64 = True
    else:
        raise ParsingError("invalid ELF class")
    if data[5] == 1:
        order = ByteOrder.LITTLE_ENDIAN
    elif data[5] == 2:
        order = ByteOrder.BIG_ENDIAN
    else:
        raise ParsingError("invalid ELF byte order")
    bo = order.value

    if is_64:
        (shoff,) = _unpack(bo + "Q", data, 0x28)
        shentsize, shnum, shstrndx = _unpack(bo + "HHH", data, 0x3A)
        sh_fmt = bo + "IIQQQQIIQQ"
    else:
        (shoff,) = _unpack(bo + "I", data, 0x20)
        shentsize, shnum, shstrndx = _unpack(bo + "HHH", data, 0x2E)
        sh_fmt = bo + "IIIIIIIIII"
    if shentsize < struct.calcsize(sh_fmt):
        raise ParsingError("invalid section header size")

    sections = []
    for index in range(shnum):
        name, kind, _flags, address, offset, size, link, *_ = _unpack(
            sh_fmt, data, shoff + index * shentsize
        )
        sections.append(_ElfSection(name, kind, address, offset, size, link))
    if shstrndx >= len(sections):
        raise ParsingError("invalid section name table index")
    names_offset = sections[shstrndx].offset

    target_index = next(
        (
            index
            for index, section in enumerate(sections)
            if _cstr(data, names_offset + section.name_offset) == section_name
        ),
        None,
    )
    if target_index is None:
        raise ParsingError(f"section '{section_name}' not found")
    section_size = sections[target_index].size

    symtab = next((s for s in sections if s.kind == _SHT_SYMTAB), None)
    if symtab is None:
        return [], section_size
    if symtab.link >= len(sections):
        raise ParsingError("invalid string table index")
    strtab = sections[symtab.link]

    if is_64:
        sym_fmt, entry_size = bo + "IBBHQQ", 24
    else:
        sym_fmt, entry_size = bo + "IIIBBH", 16

    symbols = []
    for index in range(symtab.size // entry_size):
        fields = _unpack(sym_fmt, data, symtab.offset + index * entry_size)
        if is_64:
            name_offset, info, _other, shndx, value, size = fields
        else:
            name_offset, value, size, info, _other, shndx = fields
        if shndx != target_index or info & 0xF not in (_STT_FUNC, _STT_OBJECT):
            continue
        name = _cstr(data, strtab.offset + name_offset, strtab.offset + strtab.size)
        if name:
            symbols.append(SymbolData(demangle(name), value, size))
    return symbols, section_size


def parse_macho_symbols(data: Buffer) -> tuple[list[SymbolData], int]:
    """Return the symbols of the `__TEXT,__text` section of a 64-bit Mach-O file."""
    data = _buffer(data)
    if bytes(data[:4]) != _MACHO_MAGIC_64:
        raise ParsingError("not a 64-bit Mach-O file")
    (ncmds,) = _unpack("<I", data, 16)

    sections: list[tuple[str, str, int, int]] = []
    symtab = None
    offset = 32
    for _ in range(ncmds):
        cmd, cmdsize = _unpack("<II", data, offset)
        if cmdsize < 8:
            raise ParsingError("invalid load command size")
        if cmd == _LC_SEGMENT_64:
            (nsects,) = _unpack("<I", data, offset + 64)
            for index in range(nsects):
                raw_sect, raw_seg, address, size = _unpack(
                    "<16s16sQQ", data, offset + 72 + index * 80
                )
                sections.append(
                    (
                        raw_sect.rstrip(b"\0").decode("utf-8", "replace"),
                        raw_seg.rstrip(b"\0").decode("utf-8", "replace"),
                        address,
                        size,
                    )
                )
        elif cmd == _LC_SYMTAB:
            symtab = _unpack("<IIII", data, offset + 8)
        offset += cmdsize

    text = next(
        (
            (index + 1, address, size)
            for index, (sect, seg, address, size) in enumerate(sections)
            if sect == "__text" and seg == "__TEXT"
        ),
        None,
    )
    if text is None:
        raise ParsingError("section '__text' not found")
    text_index, text_address, text_size = text
    if symtab is None:
        return [], text_size

    symoff, nsyms, stroff, strsize = symtab
    entries = []
    for index in range(nsyms):
        strx, ntype, nsect, _desc, value = _unpack("<IBBHQ", data, symoff + index * 16)
        if ntype & _N_STAB or ntype & _N_TYPE != _N_SECT or nsect != text_index:
            continue
        name = _cstr(data, stroff + strx, stroff + strsize)
        if name:
            entries.append((value, name))
    return _sized_symbols(entries, text_address + text_size), text_size


def parse_pe_symbols(data: Buffer) -> tuple[list[SymbolData], int]:
    """Return the COFF function symbols in the `.text` section of a PE file."""
    data = _buffer(data)
    if bytes(data[:2]) != b"MZ":
        raise ParsingError("not a PE file")
    (pe_offset,) = _unpack("<I", data, 0x3C)
    if bytes(data[pe_offset:pe_offset + 4]) != b"PE\0\0":
        raise ParsingError("invalid PE signature")
    coff = pe_offset + 4
    _machine, nsections, _stamp, sym_ptr, nsyms, opt_size, _chars = _unpack(
        "<HHIIIHH", data, coff
    )
    string_table = sym_ptr + nsyms * _PE_SYMBOL_SIZE
    section_table = coff + 20 + opt_size

    text = None
    for index in range(nsections):
        raw_name, vsize, vaddr, raw_size = _unpack(
            "<8sIII", data, section_table + index * _PE_SECTION_SIZE
        )
        name = raw_name.rstrip(b"\0").decode("utf-8", "replace")
        if name.startswith("/") and name[1:].isdigit() and sym_ptr:
            name = _cstr(data, string_table + int(name[1:]))
        if name == ".text":
            text = (index + 1, vaddr, vsize or raw_size)
            break
    if text is None:
        raise ParsingError("section '.text' not found")
    text_index, text_address, text_size = text

    if sym_ptr == 0 or nsyms == 0:
        return [], text_size

    entries = []
    index = 0
    while index < nsyms:
        raw_name, value, section_number, kind, _storage, naux = _unpack(
            "<8sIhHBB", data, sym_ptr + index * _PE_SYMBOL_SIZE
        )
        index += 1 + naux
        if section_number != text_index or (kind >> 4) & 0x3 != _PE_DTYPE_FUNCTION:
            continue
        if raw_name[:4] == b"\0\0\0\0":
            (name_offset,) = struct.unpack("<I", raw_name[4:])
            name = _cstr(data, string_table + name_offset)
        else:
            name = raw_name.rstrip(b"\0").decode("utf-8", "replace")
        if name:
            entries.append((text_address + value, name))
    return _sized_symbols(entries, text_address + text_size), text_size


def _gnu_symbol_names(data, start: int, size: int, width: int) -> list[str]:
    fmt = ">I" if width == 4 else ">Q"
    (count,) = _unpack(fmt, data, start)
    names_start = start + width * (count + 1)
    end = start + size
    if names_start > end:
        raise ParsingError("unexpected end of file")
    names = bytes(data[names_start:end]).split(b"\0")
    if len(names) < count:
        raise ParsingError("truncated archive symbol table")
    return [name.decode("utf-8", "replace") for name in names[:count]]


def _bsd_symbol_names(data, start: int, size: int) -> list[str]:
    (ranlib_size,) = _unpack("<I", data, start)
    strtab_header = start + 4 + ranlib_size
    if strtab_header + 4 > start + size:
        raise ParsingError("unexpected end of file")
    (strtab_size,) = _unpack("<I", data, strtab_header)
    strtab = strtab_header + 4
    names = []
    for index in range(ranlib_size // 8):
        strx, _member = _unpack("<II", data, start + 4 + index * 8)
        names.append(_cstr(data, strtab + strx, strtab + strtab_size))
    return names


def parse_ar_symbols(data: Buffer) -> list[str]:
    """Return the demangled names listed in an archive's symbol table."""
    data = _buffer(data)
    if bytes(data[:8]) != _AR_MAGIC:
        raise ParsingError("not an ar archive")
    offset = len(_AR_MAGIC)
    if offset + _AR_HEADER_SIZE > len(data):
        return []
    header = bytes(data[offset:offset + _AR_HEADER_SIZE])
    if header[58:60] != b"`\n":
        raise ParsingError("invalid archive member header")
    name = header[:16].decode("ascii", "replace").rstrip()
    try:
        size = int(header[48:58].decode("ascii").strip())
    except ValueError as exc:
        raise ParsingError("invalid archive member size") from exc
    body = offset + _AR_HEADER_SIZE
    if body + size > len(data):
        raise ParsingError("unexpected end of file")

    if name == "/":
        raw = _gnu_symbol_names(data, body, size, 4)
    elif name == "/SYM64/":
        raw = _gnu_symbol_names(data, body, size, 8)
    elif name.startswith("#1/"):
        try:
            name_length = int(name[3:])
        except ValueError as exc:
            raise ParsingError("invalid extended member name") from exc
        member = bytes(data[body:body + name_length]).rstrip(b"\0").decode("utf-8", "replace")
        if not member.startswith("__.SYMDEF"):
            return []
        raw = _bsd_symbol_names(data, body + name_length, size - name_length)
    elif name.startswith("__.SYMDEF"):
        raw = _bsd_symbol_names(data, body, size)
    else:
        return []
    return [demangle(symbol).complete for symbol in raw]