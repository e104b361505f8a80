"""
TLS certificate lifecycle: ACME issuance, caching, renewal and SNI selection.
"""

from .acme_client import AcmeIssuer, CertificateIssuer, generate_private_key_pem
from .challenges import ChallengeStore, create_challenge_app, register_challenge_route
from .manager import CertificateManager
from .models import CertificateEntry, CertificateState, IssuedCertificate
from .store import CertificateStore

__all__ = [
    "AcmeIssuer",
    "CertificateEntry",
    "CertificateIssuer",
    "CertificateManager",
    "CertificateState",
    "CertificateStore",
    "ChallengeStore",
    "IssuedCertificate",
    "create_challenge_app",
    "generate_private_key_pem",
    "register_challenge_route",
]
