"""
Listener runner for the gateway.

Plaintext mode runs one uvicorn server. HTTPS mode runs a plaintext server
for ACME challenges and redirects, bootstraps the certificate, then starts
the HTTPS server whose SSL context selects the certificate per handshake.
A shutdown signal received by either server stops both.
"""

import asyncio
import ssl
from datetime import timedelta
from typing import Iterable, List, Optional

import uvicorn

from zeno_shared.errors import CertificateError
from zeno_shared.logging import configure_logging, get_logger
from zeno_shared.metrics import GatewayMetrics
from zeno_shared.retry import RetryConfig

from .app.certs import AcmeIssuer, CertificateManager, CertificateStore, ChallengeStore, create_challenge_app
from .app.config import GatewaySettings, get_settings
from .app.main import GatewayService


class TLSConfig(uvicorn.Config):
    """uvicorn config that serves a prepared ``ssl.SSLContext``."""

    def __init__(self, app, *, ssl_context: ssl.SSLContext, **kwargs):
        super().__init__(app, **kwargs)
        self.ssl_context = ssl_context

    def load(self) -> None:
        super().load()
        self.ssl = self.ssl_context


class LinkedServer(uvicorn.Server):
    """uvicorn server that forwards exit requests to its peers."""

    def __init__(self, config: uvicorn.Config, peers: Iterable[uvicorn.Server] = ()):
        super().__init__(config)
        self.peers: List[uvicorn.Server] = list(peers)

    def handle_exit(self, sig, frame) -> None:
        super().handle_exit(sig, frame)
        for peer in self.peers:
            peer.should_exit = True


class GatewayRunner:
    """Builds and runs the listeners for one gateway process."""

    def __init__(self, settings: Optional[GatewaySettings] = None):
        self.settings = settings or get_settings()
        configure_logging(self.settings.service_name, self.settings.log_level, json_output=self.settings.log_json)
        self.logger = get_logger("gateway.server")
        self.metrics = GatewayMetrics(self.settings.service_name, version=self.settings.version)

    def _config(self, app, port: int) -> uvicorn.Config:
        return uvicorn.Config(
            app,
            host=self.settings.host,
            port=port,
            log_level=self.settings.log_level.lower(),
            timeout_graceful_shutdown=int(self.settings.shutdown_grace_seconds),
        )

    async def serve(self) -> None:
        if self.settings.https_enabled:
            await self.serve_https()
        else:
            await self.serve_plaintext()

    async def serve_plaintext(self) -> None:
        service = GatewayService(self.settings, metrics=self.metrics)
        self.logger.info("Starting plaintext listener", port=self.settings.http_port)
        await LinkedServer(self._config(service.app, self.settings.http_port)).serve()

    def build_certificate_manager(self, challenge_store: ChallengeStore) -> CertificateManager:
        settings = self.settings
        store = CertificateStore(settings.cert_cache_dir)
        issuer = AcmeIssuer(
            settings.acme_directory_url,
            store,
            challenge_store,
            email=settings.acme_email,
            order_timeout=settings.acme_order_timeout_seconds,
            user_agent=f"zeno-gateway/{settings.version}",
        )
        return CertificateManager(
            settings.domain,
            store,
            issuer,
            metrics=self.metrics,
            renew_before=timedelta(days=settings.renew_before_days),
            check_interval=settings.renewal_check_seconds,
            retry=RetryConfig(
                base_delay=settings.acme_retry_base_seconds,
                max_delay=settings.acme_retry_max_seconds,
            ),
        )

    async def serve_https(self) -> None:
        settings = self.settings
        challenge_store = ChallengeStore()
        manager = self.build_certificate_manager(challenge_store)

        http_app = create_challenge_app(challenge_store, settings.domain, settings.https_port)
        http_server = LinkedServer(self._config(http_app, settings.http_port))
        http_task = asyncio.create_task(http_server.serve())
        self.logger.info("Starting challenge listener", port=settings.http_port)
        while not http_server.started:
            if http_task.done():
                # Bind failure or early exit; surface it.
                await http_task
                return
            await asyncio.sleep(0.05)

        try:
            await manager.bootstrap(settings.acme_initial_attempts, mandatory=settings.https_mandatory)
        except CertificateError:
            http_server.should_exit = True
            await http_task
            raise

        if http_server.should_exit:
            await http_task
            return

        service = GatewayService(
            settings,
            metrics=self.metrics,
            certificate_manager=manager,
            challenge_store=challenge_store,
        )
        https_config = TLSConfig(
            service.app,
            ssl_context=manager.server_context(),
            host=settings.host,
            port=settings.https_port,
            log_level=settings.log_level.lower(),
            timeout_graceful_shutdown=int(settings.shutdown_grace_seconds),
        )
        https_server = LinkedServer(https_config, peers=[http_server])
        http_server.peers.append(https_server)

        self.logger.info("Starting HTTPS listener", port=settings.https_port, domain=settings.domain)
        await asyncio.gather(http_task, https_server.serve())

    def run(self) -> None:
        asyncio.run(self.serve())


def main() -> None:
    """Console entry point."""
    GatewayRunner().run()


if __name__ == "__main__":
    main()
