"""Relive Resolver - maps types and synthesized code of outgoing modules to their replacements."""

from relive.resolver.modules import ModuleIndex
from relive.resolver.names import GeneratedName, GeneratedNameKind, decode_qualname, try_decode_qualname
from relive.resolver.scopes import CodeLocation, ScopeLocator
from relive.resolver.type_resolver import TypeResolver

__all__ = [
    "ModuleIndex",
    "GeneratedName",
    "GeneratedNameKind",
    "decode_qualname",
    "try_decode_qualname",
    "CodeLocation",
    "ScopeLocator",
    "TypeResolver",
]
