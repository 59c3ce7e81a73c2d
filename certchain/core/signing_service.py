"""
Issuing key management.

Every certificate is signed at issuance with the registry's Ed25519 key.
In production CERTCHAIN_SIGNING_PRIVATE_KEY and CERTCHAIN_SIGNING_PUBLIC_KEY
must both be set (see `python -m tools.manage generate-keypair`). Elsewhere a
missing key is replaced by an ephemeral one that lives until the process
exits, so signatures made with it cannot be checked after a restart.
"""

import binascii
import hmac
import os
import warnings
from dataclasses import dataclass
from typing import Optional

from nacl.exceptions import CryptoError

from ..observability import get_logger, is_production
from .signer import Signer

logger = get_logger(__name__)

PRIVATE_KEY_ENV = "CERTCHAIN_SIGNING_PRIVATE_KEY"
PUBLIC_KEY_ENV = "CERTCHAIN_SIGNING_PUBLIC_KEY"


@dataclass(frozen=True)
class KeyPair:
    private_key: str  # base64
    public_key: str   # base64

    def is_consistent(self) -> bool:
        try:
            derived = Signer.public_key_for(self.private_key)
        except (CryptoError, binascii.Error, ValueError, TypeError):
            return False
        return hmac.compare_digest(derived, self.public_key)


def _keypair_from_env() -> Optional[KeyPair]:
    private_key = os.environ.get(PRIVATE_KEY_ENV, "")
    public_key = os.environ.get(PUBLIC_KEY_ENV, "")
    if private_key and public_key:
        return KeyPair(private_key=private_key, public_key=public_key)
    return None


class SigningService:
    """
    Process-wide holder of the issuing key.

    The first construction decides the key; later calls return the same
    instance and ignore their arguments until reset() is called.
    """

    _instance: Optional["SigningService"] = None
    _initialized: bool = False

    def __new__(cls, keypair: Optional[KeyPair] = None):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, keypair: Optional[KeyPair] = None):
        if SigningService._initialized:
            return

        source = "argument"
        if keypair is None:
            keypair, source = _keypair_from_env(), "environment"

        if keypair is None:
            self._keypair = self._ephemeral_keypair()
            self._is_ephemeral = True
        else:
            if not keypair.is_consistent():
                raise RuntimeError("Signing keys do not match: the public key is not derived from the private key")
            self._keypair = keypair
            self._is_ephemeral = False
            logger.info("Signing key loaded", source=source)

        SigningService._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Forget the current key. Tests only."""
        cls._instance = None
        cls._initialized = False

    @staticmethod
    def _ephemeral_keypair() -> KeyPair:
        if is_production():
            raise RuntimeError(
                f"{PRIVATE_KEY_ENV} and {PUBLIC_KEY_ENV} must be set in production; "
                "generate them with: python -m tools.manage generate-keypair"
            )
        warnings.warn(
            "No signing key configured; using an ephemeral key that is lost on restart",
            UserWarning,
            stacklevel=3,
        )
        logger.warning("Generated ephemeral signing key")
        private_key, public_key = Signer.generate_keypair()
        return KeyPair(private_key=private_key, public_key=public_key)

    @property
    def public_key(self) -> str:
        return self._keypair.public_key

    @property
    def is_ephemeral(self) -> bool:
        return self._is_ephemeral

    def sign_certificate(self, cert_hash: str) -> str:
        return Signer.sign_certificate(cert_hash, self._keypair.private_key)

    def verify_certificate(self, cert_hash: str, signature: str) -> bool:
        return Signer.verify_certificate(cert_hash, signature, self._keypair.public_key)


def get_signing_service() -> SigningService:
    return SigningService()
