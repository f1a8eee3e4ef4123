"""Analyze the size composition of binaries by mapping symbols to crates."""

__version__ = "0.1.0"

__all__ = ["analyzer", "crate_name", "demangle", "errors", "models", "objfile", "report"]