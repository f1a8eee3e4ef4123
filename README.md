# binsize

Find out what takes up space in a compiled binary. `binsize` reads the
symbol table of an ELF (32- or 64-bit), 64-bit Mach-O or PE executable,
measures the code section and charges each symbol's size to the crate
that defined it.

## Installation

```
pip install .
```

The package uses only the standard library. The tests need `pytest`,
which you can install with `pip install .[test]`.

## Command line

```
binsize [path/to/binary] [--target TRIPLE] [--section NAME] [--split-std]
```

- `binary`: the file to analyze; defaults to
  `target/debug/examples/analyze_binary`.
- `--target`: the target triple recorded in the build context; defaults to
  `aarch64-apple-darwin`.
- `--section`: the ELF section whose symbols are counted; defaults to
  `.text`.
- `--split-std`: report `core`, `alloc`, `proc_macro` and `std`
  separately instead of grouping them all as `std`.

The command treats the binary's file name (dashes turned into
underscores) as the one dependency crate, and `std`, `core`, `alloc` and
`proc_macro` as the standard library crates. It prints the following:

- the file size, the size of the analyzed section and their ratio
- the symbol count and, for ELF files, the section name
- the ten largest symbols, each with its share of the section
- the ten biggest crates, each with its share of the file and of the
  section, followed by a count and total size of the rest
- the dependency crates and standard library crates it used

It exits with status 1 if the binary does not exist or cannot be analyzed.

## Library use

```python
from pathlib import Path

from binsize.analyzer import BloatAnalyzer
from binsize.models import AnalysisConfig, BuildContext
from binsize.report import crate_sizes, format_bytes, render_report

context = BuildContext(
    target_triple="x86_64-unknown-linux-gnu",
    std_crates=["alloc", "core", "proc_macro", "std"],
    dep_crates=["myapp"],
)
config = AnalysisConfig()  # the ".text" section, std crates grouped together

result = BloatAnalyzer.analyze_binary(Path("target/release/myapp"), context, config)
print(format_bytes(result.text_size))
for name, size in crate_sizes(result, context, config.split_std).items():
    print(name, size)
print(render_report(result, context, config))
```

`AnalysisResult` holds `file_size`, `text_size`, `symbols` (a list of
`SymbolData` with a demangled `name`, an `address` and a `size`, sorted
and unique by address) and `section_name`.

`binsize.crate_name.from_sym(context, split_std, symbol_name)` returns the
crate a symbol is attributed to and whether that guess is exact. Symbols
that cannot be attributed go to `[Unknown]`.

`binsize.demangle.demangle(name)` demangles legacy (`_ZN…`) and v0
(`_R…`) symbol names. `binsize.objfile` has the lower-level readers:
`detect_format`, `parse_elf_symbols`, `parse_macho_symbols`,
`parse_pe_symbols` and `parse_ar_symbols`.

### Build metadata

To analyze the output of a cargo build, give the JSON message lines from
`cargo build --message-format=json` to
`BloatAnalyzer.from_cargo_metadata(lines, target_dir, target_triple)`. It
returns a `BuildContext` listing the artifacts, the dependency crates,
the standard library crates and a map from symbol to the crates that
export it, read from the archive symbol tables of the library artifacts
and of the standard library rlibs.

If `target_triple` is `None`, it is taken from the `host:` line of
`rustc -Vv`. The standard library rlibs are found through
`rustc --print=sysroot` (with `RUSTFLAGS` applied), so `rustc` must be on
the `PATH`.

## Limitations

- Neither the command nor the library runs a build; build metadata must
  be passed in as already captured JSON lines, and the `binsize` command
  does not read it at all.
- Only 64-bit little-endian Mach-O files are recognized.
- For a PE file without COFF function symbols, symbols are read from the
  `.pdb` file next to it.

## Errors

Failures raise subclasses of `binsize.errors.BloatError`, including:

- `OpenFailed`
- `UnsupportedFileFormat`
- `ParsingError`
- `PdbError`
- `InvalidCargoOutput`
- `NoArtifacts`
- `StdDirNotFound`
- `RustcFailed`