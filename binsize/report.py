"""Human-readable size reports for analysed binaries."""

from __future__ import annotations

import argparse
import math
import sys
from collections import Counter
from pathlib import Path

from binsize.analyzer import BloatAnalyzer
from binsize.crate_name import from_sym
from binsize.errors import BloatError
from binsize.models import AnalysisConfig, AnalysisResult, BuildContext

_KIB = 1024
_MIB = 1024 * _KIB

_TOP_SYMBOLS = 10
_TOP_CRATES = 10
_TOP_DEP_CRATES = 15
_TOP_STD_CRATES = 10

_DEFAULT_BINARY = "target/debug/examples/analyze_binary"
_DEFAULT_TARGET = "aarch64-apple-darwin"
_DEFAULT_STD_CRATES = ("std", "core", "alloc", "proc_macro")


def format_bytes(size: int) -> str:
    """Format a byte count using B, KiB or MiB."""
    if size >= _MIB:
        return f"{size / _MIB:.1f}MiB"
    if size >= _KIB:
        return f"{size / _KIB:.1f}KiB"
    return f"{size}B"


def _percent(part: int, whole: int, spec: str = ".1f") -> str:
    """Format a percentage, keeping float semantics for a zero denominator."""
    if whole == 0:
        value = math.nan if part == 0 else math.inf
    else:
        value = part / whole * 100.0
    if math.isnan(value):
        text = "NaN"
    elif math.isinf(value):
        text = "inf"
    else:
        return format(value, spec)
    width = "".join(ch for ch in spec.split(".")[0] if ch.isdigit())
    return text.rjust(int(width)) if width else text


def crate_sizes(
    result: AnalysisResult, context: BuildContext, split_std: bool
) -> dict[str, int]:
    """Sum symbol sizes per crate."""
    totals: Counter[str] = Counter()
    for symbol in result.symbols:
        name, _exact = from_sym(context, split_std, symbol.name)
        totals[name] += symbol.size
    return dict(totals)


def _numbered(items: list[str], limit: int) -> list[str]:
    lines = [f"{rank:2}. {item}" for rank, item in enumerate(items[:limit], 1)]
    if len(items) > limit:
        lines.append(f"    ... and {len(items) - limit} more")
    return lines


def render_report(
    result: AnalysisResult, context: BuildContext, config: AnalysisConfig
) -> str:
    """Render the size breakdown of an analysis result as text."""
    lines = [
        "",
        "📊 Analysis Results:",
        "─────────────────────",
        f"File size:    {result.file_size} bytes ({format_bytes(result.file_size)})",
        f"Text section: {result.text_size} bytes ({format_bytes(result.text_size)})",
        f"Text/File:    {_percent(result.text_size, result.file_size)}%",
        f"Symbol count: {len(result.symbols)}",
    ]
    if result.section_name is not None:
        lines.append(f"Section:      {result.section_name}")

    lines += ["", "🔍 Top 10 Largest Symbols:", "─────────────────────────"]
    largest = sorted(result.symbols, key=lambda symbol: symbol.size, reverse=True)
    for rank, symbol in enumerate(largest[:_TOP_SYMBOLS], 1):
        lines.append(
            f"{rank:2}. {format_bytes(symbol.size):>8} "
            f"({_percent(symbol.size, result.text_size, '>5.1f')}%) "
            f"{symbol.name.trimmed}"
        )

    lines += ["", "📦 Top 10 Biggest Crates:", "─────────────────────────"]
    crates = sorted(
        crate_sizes(result, context, config.split_std).items(),
        key=lambda item: item[1],
        reverse=True,
    )
    for rank, (name, size) in enumerate(crates[:_TOP_CRATES], 1):
        lines.append(
            f"{rank:2}. {format_bytes(size):>8} bytes "
            f"({_percent(size, result.file_size, '>5.1f')}% file, "
            f"{_percent(size, result.text_size, '>5.1f')}% text) {name}"
        )
    remaining = crates[_TOP_CRATES:]
    if remaining:
        remaining_size = sum(size for _, size in remaining)
        lines.append(
            f"    ... and {len(remaining)} more crates ({format_bytes(remaining_size)} total)"
        )

    if context.dep_crates:
        lines += [
            "",
            f"📋 Dependency Crates Found ({len(context.dep_crates)}):",
            "───────────────────────────────",
        ]
        lines += _numbered(context.dep_crates, _TOP_DEP_CRATES)

    if context.std_crates:
        lines += [
            "",
            f"🦀 Standard Library Crates ({len(context.std_crates)}):",
            "──────────────────────────────",
        ]
        lines += _numbered(context.std_crates, _TOP_STD_CRATES)

    return "\n".join(lines)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="binsize", description="Show the size composition of a binary."
    )
    parser.add_argument("binary", nargs="?", default=_DEFAULT_BINARY)
    parser.add_argument("--target", default=_DEFAULT_TARGET)
    parser.add_argument("--section", default=None)
    parser.add_argument("--split-std", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Analyse a pre-built binary and print its size report."""
    args = _parser().parse_args(argv)
    path = Path(args.binary)
    if not path.exists():
        print(f"Binary not found: {args.binary}", file=sys.stderr)
        print("Usage: binsize [path/to/binary]", file=sys.stderr)
        return 1

    print(f"📈 Analyzing binary: {path}")
    context = BuildContext(
        target_triple=args.target,
        std_crates=list(_DEFAULT_STD_CRATES),
        dep_crates=[path.stem.replace("-", "_")],
    )
    config = AnalysisConfig(symbols_section=args.section, split_std=args.split_std)
    try:
        result = BloatAnalyzer.analyze_binary(path, context, config)
    except BloatError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(render_report(result, context, config))
    print("\n✨ Analysis complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())