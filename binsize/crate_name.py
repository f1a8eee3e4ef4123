"""Attribution of symbols to the crates they come from."""

from __future__ import annotations

from binsize.demangle import Kind, SymbolName
from binsize.models import BuildContext

UNKNOWN = "[Unknown]"


def from_sym(context: BuildContext, split_std: bool, sym: SymbolName) -> tuple[str, bool]:
    """Return the crate a symbol belongs to and whether the guess is exact."""
    name, is_exact = _from_sym_impl(context, sym)
    if not split_std and name in context.std_crates:
        name = "std"
    return name, is_exact


def _from_sym_impl(context: BuildContext, sym: SymbolName) -> tuple[str, bool]:
    owners = context.deps_symbols.get(sym.complete)
    if owners:
        return owners[0], True
    if sym.kind is Kind.LEGACY:
        return _parse_sym(context, sym.complete)
    if sym.kind is Kind.V0:
        if sym.crate_name is not None:
            return sym.crate_name, True
        return _parse_sym_v0(context, sym.trimmed)
    return UNKNOWN, True


def _parse_sym(context: BuildContext, sym: str) -> tuple[str, bool]:
    if " as " not in sym:
        return parse_crate_from_sym(sym), True

    parts = sym.split(" as ")
    crate1 = parse_crate_from_sym(parts[0])
    crate2 = parse_crate_from_sym(parts[1])

    # The first part is empty for bare type parameters, e.g. `<T as Trait>`.
    if not crate1:
        return crate2, True
    if crate1 == crate2:
        return crate1, True

    owners = context.deps_symbols.get(sym)
    if owners:
        if crate1 in owners:
            return crate1, True
        if crate2 in owners:
            return crate2, True
    return crate1, False


def parse_crate_from_sym(sym: str) -> str:
    """Guess the crate name from the leading path segment of a symbol."""
    if "::" not in sym:
        return ""
    crate = sym.split("::", 1)[0]
    if crate.startswith("<"):
        crate = crate.lstrip("<").lstrip("&")
        words = crate.split()
        crate = words[-1] if words else ""
    return crate


def _parse_sym_v0(context: BuildContext, sym: str) -> tuple[str, bool]:
    name = parse_crate_from_sym(sym)
    if name in context.std_crates or name in context.dep_crates:
        return name, False
    return UNKNOWN, True