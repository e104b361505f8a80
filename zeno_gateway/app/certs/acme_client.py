"""
ACME (RFC 8555) issuer using HTTP-01 challenges.

``AcmeIssuer.issue`` is blocking; the certificate manager runs it in a
worker thread.
"""

from datetime import datetime, timedelta
from typing import Optional, Protocol

import josepy as jose
from acme import challenges, client, crypto_util, errors, messages
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from zeno_shared.errors import CertificateError
from zeno_shared.logging import get_logger

from .challenges import ChallengeStore
from .models import IssuedCertificate
from .store import CertificateStore


class CertificateIssuer(Protocol):
    """Obtains a fresh certificate for a domain."""

    def issue(self, domain: str) -> IssuedCertificate:
        ...


def generate_private_key_pem(bits: int = 2048) -> bytes:
    """New RSA key as unencrypted PKCS#8 PEM."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


class AcmeIssuer:
    """Registers (or reuses) an ACME account and completes HTTP-01 orders."""

    def __init__(
        self,
        directory_url: str,
        store: CertificateStore,
        challenge_store: ChallengeStore,
        *,
        email: Optional[str] = None,
        order_timeout: float = 180.0,
        user_agent: str = "zeno-gateway",
    ):
        self.directory_url = directory_url
        self.store = store
        self.challenge_store = challenge_store
        self.email = email
        self.order_timeout = order_timeout
        self.user_agent = user_agent
        self.logger = get_logger("gateway.acme")

    def _account_key(self) -> jose.JWKRSA:
        key_pem = self.store.load_account_key()
        if key_pem is None:
            key_pem = generate_private_key_pem()
            self.store.save_account_key(key_pem)
            self.logger.info("Generated ACME account key")
        return jose.JWKRSA(key=serialization.load_pem_private_key(key_pem, password=None))

    def _client(self) -> client.ClientV2:
        net = client.ClientNetwork(self._account_key(), user_agent=self.user_agent)
        directory = client.ClientV2.get_directory(self.directory_url, net)
        acme_client = client.ClientV2(directory, net=net)

        registration = messages.NewRegistration.from_data(email=self.email, terms_of_service_agreed=True)
        try:
            acme_client.new_account(registration)
            self.logger.info("Registered ACME account", directory=self.directory_url)
        except errors.ConflictError as exc:
            # Key already registered; bind the client to the existing account.
            acme_client.query_registration(
                messages.RegistrationResource(uri=exc.location, body=messages.Registration())
            )
        return acme_client

    @staticmethod
    def _http01(authorization: messages.AuthorizationResource, domain: str) -> messages.ChallengeBody:
        for challenge_body in authorization.body.challenges:
            if isinstance(challenge_body.chall, challenges.HTTP01):
                return challenge_body
        raise CertificateError(domain, "CA offered no HTTP-01 challenge")

    def issue(self, domain: str) -> IssuedCertificate:
        """Run one full order for ``domain``; raises ``CertificateError`` on failure."""
        self.logger.info("Starting ACME order", domain=domain)
        try:
            acme_client = self._client()
        except errors.Error as exc:
            raise CertificateError(domain, f"ACME account setup failed: {exc}")

        private_key_pem = generate_private_key_pem()
        csr_pem = crypto_util.make_csr(private_key_pem, [domain])

        published = []
        try:
            order = acme_client.new_order(csr_pem)
            for authorization in order.authorizations:
                challenge_body = self._http01(authorization, domain)
                response, validation = challenge_body.response_and_validation(acme_client.net.key)
                token = challenge_body.chall.encode("token")
                self.challenge_store.publish(token, validation)
                published.append(token)
                acme_client.answer_challenge(challenge_body, response)

            deadline = datetime.now() + timedelta(seconds=self.order_timeout)
            finalized = acme_client.poll_and_finalize(order, deadline=deadline)
        except errors.Error as exc:
            raise CertificateError(domain, f"ACME order failed: {exc}")
        finally:
            for token in published:
                self.challenge_store.withdraw(token)

        self.logger.info("ACME order completed", domain=domain)
        return IssuedCertificate(
            cert_chain=finalized.fullchain_pem.encode("ascii"),
            private_key=private_key_pem,
        )
