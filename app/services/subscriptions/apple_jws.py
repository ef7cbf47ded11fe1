"""Signature verification for App Store signed transactions (JWS).

The ``x5c`` header carries the certificate chain leaf first. Every link is
checked against its issuer, the chain must end at one of the configured Apple
root certificates, and only then is the payload decoded with the leaf key.
"""

import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature

from app.services.subscriptions.purchase import ValidatedPurchase, build_validated_purchase
from app.utils.exceptions import AuthorityRejected, ConfigurationError, MalformedReceipt, ProductMismatch
from app.utils.validators import parse_epoch_millis

logger = logging.getLogger(__name__)

ALGORITHM = "ES256"


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a DER or PEM certificate."""
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def load_root_certificates(paths: Iterable[str]) -> List[x509.Certificate]:
    """
    Load trusted root certificates from disk.

    Raises:
        ConfigurationError: If a file is missing or not a certificate
    """
    roots = []
    for path in paths:
        try:
            with open(path, "rb") as f:
                roots.append(load_certificate(f.read()))
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot load Apple root certificate {path}: {e}") from e
    return roots


class AppleSignedTransactionVerifier:
    """Verifies JWS transactions and extracts their dates."""

    def __init__(self, root_certificates: List[x509.Certificate], bundle_id: Optional[str] = None):
        self.root_certificates = root_certificates
        self.bundle_id = bundle_id

    def verify(self, token: str, product_id: str, now: Optional[datetime] = None) -> ValidatedPurchase:
        if not self.root_certificates:
            raise ConfigurationError("No Apple root certificates configured for signed transactions")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise MalformedReceipt(f"Cannot decode signed transaction header: {e}") from e

        if header.get("alg") != ALGORITHM:
            raise AuthorityRejected(f"Unexpected signing algorithm: {header.get('alg')}")

        chain = self._load_chain(header.get("x5c"))
        self._verify_chain(chain, now or datetime.now(timezone.utc))

        try:
            payload = jwt.decode(
                token,
                chain[0].public_key(),
                algorithms=[ALGORITHM],
                options={"verify_aud": False},
            )
        except jwt.InvalidSignatureError as e:
            raise AuthorityRejected("Signed transaction signature is invalid") from e
        except jwt.DecodeError as e:
            raise MalformedReceipt(f"Cannot decode signed transaction payload: {e}") from e
        except jwt.InvalidTokenError as e:
            raise AuthorityRejected(f"Signed transaction rejected: {e}") from e

        if self.bundle_id and payload.get("bundleId") != self.bundle_id:
            raise AuthorityRejected(f"Signed transaction is for bundle {payload.get('bundleId')}")

        if payload.get("productId") != product_id:
            raise ProductMismatch(
                f"Signed transaction is for {payload.get('productId')}, not {product_id}"
            )

        environment = "sandbox" if payload.get("environment") == "Sandbox" else "production"
        logger.info("Signed transaction verified", extra={"product_id": product_id, "environment": environment})

        return build_validated_purchase(
            purchase_time=parse_epoch_millis(payload.get("purchaseDate")),
            expiry_time=parse_epoch_millis(payload.get("expiresDate")),
            transaction_id=payload.get("transactionId"),
            environment=environment,
        )

    @staticmethod
    def _load_chain(x5c) -> List[x509.Certificate]:
        if not isinstance(x5c, list) or not x5c:
            raise AuthorityRejected("Signed transaction has no certificate chain")
        try:
            return [x509.load_der_x509_certificate(base64.b64decode(item)) for item in x5c]
        except (binascii.Error, ValueError, TypeError) as e:
            raise MalformedReceipt(f"Cannot parse certificate chain: {e}") from e

    def _verify_chain(self, chain: List[x509.Certificate], now: datetime) -> None:
        for cert in chain:
            if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
                raise AuthorityRejected("Certificate in chain is outside its validity period")

        try:
            for cert, issuer in zip(chain, chain[1:]):
                cert.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise AuthorityRejected("Certificate chain does not verify") from e

        top = chain[-1]
        for root in self.root_certificates:
            if top == root:
                return
            try:
                top.verify_directly_issued_by(root)
                return
            except (ValueError, TypeError, InvalidSignature):
                continue

        raise AuthorityRejected("Certificate chain does not end at a trusted Apple root")
