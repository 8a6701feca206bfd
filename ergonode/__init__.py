"""Erlang-style nodes: processes, names, aliases, links, monitors and EPMD port mapping."""

__version__ = "2.0.0"

__all__ = ["__version__"]