"""
Backend route table.

Each upstream the gateway can reach is a ``BackendRoute`` in a
``BackendRegistry``. Selecting a backend is a dictionary lookup, so adding a
provider means adding a row (in code defaults or the routes YAML file).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional
from urllib.parse import quote

import yaml

from zeno_shared.logging import get_logger

logger = get_logger("gateway.routes")

# Blast serves each chain from its own host.
BLAST_CHAIN_URLS: Dict[str, str] = {
    "eth": "https://eth-mainnet.blastapi.io",
    "bsc": "https://bsc-mainnet.blastapi.io",
    "arbitrum": "https://arbitrum-one.blastapi.io",
    "optimism": "https://optimism-mainnet.blastapi.io",
    "base": "https://base-mainnet.blastapi.io",
    "polygon": "https://polygon-mainnet.blastapi.io",
}


class BackendKind(str, Enum):
    """Backend variants; the kind decides the URL space and metric family."""

    ANKR = "ankr"
    BLAST = "blast"
    INDEXER = "indexer"

    @property
    def metric_family(self) -> str:
        return "indexer" if self is BackendKind.INDEXER else "rpc"


class CredentialPlacement(str, Enum):
    """Where the server-side credential goes on the upstream request."""

    HEADER = "header"
    QUERY = "query"
    PATH = "path"


@dataclass(frozen=True)
class Credential:
    """Upstream credential injected by the gateway."""

    placement: CredentialPlacement
    value: str = field(repr=False)
    name: Optional[str] = None

    def __post_init__(self):
        if self.placement is not CredentialPlacement.PATH and not self.name:
            raise ValueError(f"{self.placement.value} credentials need a name")


@dataclass(frozen=True)
class BackendRoute:
    """One upstream reachable through the gateway.

    ``chain_urls`` maps a chain name to its own upstream host. When set, the
    first client path segment must name one of those chains and is consumed
    to pick the host; otherwise the whole path goes to ``upstream_base_url``.
    """

    name: str
    kind: BackendKind
    upstream_base_url: str
    credential: Optional[Credential] = None
    timeout_seconds: Optional[float] = None
    chain_urls: Mapping[str, str] = field(default_factory=dict, repr=False, hash=False)

    def build_url(self, suffix: str) -> Optional[str]:
        """Upstream URL for the decoded client path ``suffix``.

        Returns None when the path cannot be mapped: a ``.``/``..`` segment or
        an unknown chain. Segments are re-quoted so decoded ``?``, ``#`` or
        ``/`` characters stay inside their segment.
        """
        segments = [segment for segment in suffix.split("/") if segment]
        if any(segment in (".", "..") for segment in segments):
            return None

        base = self.upstream_base_url
        if self.chain_urls:
            if not segments or segments[0] not in self.chain_urls:
                return None
            base = self.chain_urls[segments.pop(0)]

        url = base.rstrip("/")
        if segments:
            url = url + "/" + "/".join(quote(segment, safe="") for segment in segments)
        if self.credential is not None and self.credential.placement is CredentialPlacement.PATH:
            url = f"{url}/{quote(self.credential.value, safe='')}"
        return url

    def exposes_credential(self, value: str) -> bool:
        """Whether ``value`` carries the credential in raw or quoted form."""
        if self.credential is None or not self.credential.value:
            return False
        secret = self.credential.value
        return secret in value or quote(secret, safe="") in value

    def credential_headers(self) -> Dict[str, str]:
        if self.credential is not None and self.credential.placement is CredentialPlacement.HEADER:
            return {self.credential.name: self.credential.value}
        return {}

    def credential_params(self) -> Dict[str, str]:
        if self.credential is not None and self.credential.placement is CredentialPlacement.QUERY:
            return {self.credential.name: self.credential.value}
        return {}


class BackendRegistry:
    """Immutable name -> route lookup table."""

    def __init__(self, routes: Iterable[BackendRoute]):
        table: Dict[str, BackendRoute] = {}
        for route in routes:
            if route.name in table:
                raise ValueError(f"duplicate backend route '{route.name}'")
            table[route.name] = route
        self._routes = table

    def resolve(self, name: str, *, indexer: bool = False) -> Optional[BackendRoute]:
        """Find the route for ``name`` within the RPC or indexer URL space."""
        route = self._routes.get(name)
        if route is None:
            return None
        if (route.kind is BackendKind.INDEXER) != indexer:
            return None
        return route

    def indexer(self) -> Optional[BackendRoute]:
        """The first configured indexer route."""
        for route in self._routes.values():
            if route.kind is BackendKind.INDEXER:
                return route
        return None

    def names(self) -> List[str]:
        return sorted(self._routes)

    def __iter__(self) -> Iterator[BackendRoute]:
        return iter(self._routes.values())

    def __len__(self) -> int:
        return len(self._routes)

    def __contains__(self, name: object) -> bool:
        return name in self._routes


def build_default_routes(
    *,
    ankr_api_key: str = "",
    blast_api_key: str = "",
    indexer_api_key: str = "",
    ankr_base_url: str = "https://rpc.ankr.com",
    blast_chain_urls: Optional[Mapping[str, str]] = None,
    indexer_url: str = "https://rpc.ankr.com/multichain",
) -> List[BackendRoute]:
    """Routes for the providers the gateway ships with.

    Providers without an API key are skipped; the indexer falls back to the
    Ankr key because the default indexer is Ankr's multichain API. Blast is
    reached per chain: ``/rpc/blast/{chain}`` selects the host from
    ``blast_chain_urls``.
    """
    routes: List[BackendRoute] = []

    if ankr_api_key:
        routes.append(BackendRoute(
            name="ankr",
            kind=BackendKind.ANKR,
            upstream_base_url=ankr_base_url,
            credential=Credential(CredentialPlacement.PATH, ankr_api_key),
        ))
    else:
        logger.warning("ANKR_API_KEY is empty, skipping Ankr endpoints")

    chain_urls = dict(BLAST_CHAIN_URLS if blast_chain_urls is None else blast_chain_urls)
    if blast_api_key and chain_urls:
        routes.append(BackendRoute(
            name="blast",
            kind=BackendKind.BLAST,
            upstream_base_url=chain_urls.get("eth", next(iter(chain_urls.values()))),
            credential=Credential(CredentialPlacement.PATH, blast_api_key),
            chain_urls=chain_urls,
        ))
    else:
        logger.warning("BLAST_API_KEY is empty, skipping Blast endpoints")

    indexer_key = indexer_api_key or ankr_api_key
    if indexer_url:
        routes.append(BackendRoute(
            name="indexer",
            kind=BackendKind.INDEXER,
            upstream_base_url=indexer_url,
            credential=Credential(CredentialPlacement.PATH, indexer_key) if indexer_key else None,
        ))

    return routes


def load_routes_file(path: Path) -> List[BackendRoute]:
    """Load extra routes from YAML.

    Expected shape::

        routes:
          - name: llama
            kind: blast
            url: https://llama.example/rpc
            credential: {placement: header, name: X-Api-Key, value_env: LLAMA_KEY}
            timeout_seconds: 5
            chains: {eth: https://eth.llama.example, base: https://base.llama.example}  # optional
    """
    with open(path, "r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}

    routes: List[BackendRoute] = []
    for entry in document.get("routes", []):
        credential = None
        raw_credential = entry.get("credential")
        if raw_credential:
            value = raw_credential.get("value")
            if value is None and raw_credential.get("value_env"):
                value = os.environ.get(raw_credential["value_env"], "")
            if not value:
                logger.warning("Route credential is empty, skipping route", route=entry.get("name"))
                continue
            credential = Credential(
                placement=CredentialPlacement(raw_credential.get("placement", "header")),
                value=value,
                name=raw_credential.get("name"),
            )
        routes.append(BackendRoute(
            name=entry["name"],
            kind=BackendKind(entry.get("kind", "ankr")),
            upstream_base_url=entry["url"],
            credential=credential,
            timeout_seconds=entry.get("timeout_seconds"),
            chain_urls=dict(entry.get("chains") or {}),
        ))

    logger.info("Loaded backend routes file", path=str(path), routes=len(routes))
    return routes
