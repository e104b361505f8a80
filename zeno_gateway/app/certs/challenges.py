"""
HTTP-01 challenge responder.

The issuer publishes key authorizations here while an order is open; the
plaintext listener serves them at ``/.well-known/acme-challenge/{token}``.
"""

import threading
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, RedirectResponse

from zeno_shared.logging import get_logger

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"


class ChallengeStore:
    """Thread-safe token -> key authorization map."""

    def __init__(self):
        self._tokens: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("gateway.acme_challenges")

    def publish(self, token: str, key_authorization: str) -> None:
        with self._lock:
            self._tokens[token] = key_authorization
        self.logger.info("Challenge published", token=token)

    def withdraw(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def get(self, token: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(token)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


def register_challenge_route(app: FastAPI, store: ChallengeStore) -> None:
    """Mount the challenge responder on ``app``."""

    @app.get(CHALLENGE_PATH_PREFIX + "{token}", include_in_schema=False)
    async def acme_challenge(token: str):
        key_authorization = store.get(token)
        if key_authorization is None:
            return PlainTextResponse("Not Found", status_code=404)
        return PlainTextResponse(key_authorization)


def create_challenge_app(store: ChallengeStore, domain: str, https_port: int = 443) -> FastAPI:
    """Plaintext app used in HTTPS mode: challenges, and a redirect for everything else."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    register_challenge_route(app, store)
    authority = domain if https_port == 443 else f"{domain}:{https_port}"

    @app.api_route("/{path:path}", methods=["GET", "HEAD", "POST"], include_in_schema=False)
    async def redirect_to_https(request: Request, path: str):
        target = f"https://{authority}{request.url.path}"
        if request.url.query:
            target = f"{target}?{request.url.query}"
        return RedirectResponse(target, status_code=308)

    return app
