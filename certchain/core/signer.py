"""
Certificate Signing

Uses Ed25519 (PyNaCl) to sign certificate hashes.
The signature is stored on the ledger alongside the record, so a verifier
holding the issuer's public key can check who vouched for a hash.
"""

import base64
import binascii
from typing import Tuple

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey


class Signer:
    """Ed25519 signing for issued certificates."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")
        return private_b64, public_b64

    @staticmethod
    def public_key_for(private_key_b64: str) -> str:
        """Derive the base64 public key from a base64 private key."""
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        return base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        """
        Sign a message with Ed25519.

        Args:
            message: The string to sign (typically a certificate hash)
            private_key_b64: Base64-encoded private key

        Returns:
            Base64-encoded signature
        """
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        signed = signing_key.sign(message.encode("utf-8"))
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify(message: str, signature_b64: str, public_key_b64: str) -> bool:
        """Return True if the signature over message matches the public key."""
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            verify_key.verify(message.encode("utf-8"), base64.b64decode(signature_b64))
            return True
        except (BadSignatureError, CryptoError, binascii.Error, ValueError):
            return False

    @staticmethod
    def sign_certificate(cert_hash: str, private_key_b64: str) -> str:
        """Sign a certificate hash. Main entry point used at issuance."""
        return Signer.sign(cert_hash, private_key_b64)

    @staticmethod
    def verify_certificate(cert_hash: str, signature_b64: str, public_key_b64: str) -> bool:
        return Signer.verify(cert_hash, signature_b64, public_key_b64)
