"""
Request routing for the Gateway.

- backends: the backend route table (Ankr, Blast, Indexer variants)
- proxy: the streaming reverse proxy that forwards matched requests
"""

from .backends import (
    BackendKind,
    BackendRegistry,
    BackendRoute,
    Credential,
    CredentialPlacement,
    build_default_routes,
    load_routes_file,
)
from .proxy import HOP_BY_HOP_HEADERS, ReverseProxy

__all__ = [
    "BackendKind",
    "BackendRegistry",
    "BackendRoute",
    "Credential",
    "CredentialPlacement",
    "HOP_BY_HOP_HEADERS",
    "ReverseProxy",
    "build_default_routes",
    "load_routes_file",
]
