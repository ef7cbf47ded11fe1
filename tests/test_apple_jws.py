"""Tests for signed transaction (JWS) verification."""

import base64
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from app.services.subscriptions.apple_jws import AppleSignedTransactionVerifier, load_root_certificates
from app.utils.exceptions import AuthorityRejected, ConfigurationError, MalformedReceipt, ProductMismatch
from app.utils.validators import to_epoch_millis

PRODUCT_ID = "whatscard_premium_yearly"
BUNDLE_ID = "com.example.whatscard"
NOW = datetime.now(timezone.utc)


def make_cert(name, key, issuer_name=None, issuer_key=None, ca=True):
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)]) if issuer_name else subject
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=1))
        .not_valid_after(NOW + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key or key, hashes.SHA256())
    )


class Chain:
    def __init__(self):
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf_key = ec.generate_private_key(ec.SECP256R1())
        self.root = make_cert("Test Root", self.root_key)
        self.intermediate = make_cert("Test Intermediate", self.intermediate_key, "Test Root", self.root_key)
        self.leaf = make_cert("Test Leaf", self.leaf_key, "Test Intermediate", self.intermediate_key, ca=False)

    def x5c(self, *certs):
        certs = certs or (self.leaf, self.intermediate, self.root)
        return [base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode() for cert in certs]

    def sign(self, payload, key=None, x5c=None):
        return jwt.encode(
            payload,
            key or self.leaf_key,
            algorithm="ES256",
            headers={"x5c": x5c if x5c is not None else self.x5c()},
        )


def transaction(**overrides):
    payload = {
        "transactionId": "2000000456",
        "productId": PRODUCT_ID,
        "bundleId": BUNDLE_ID,
        "purchaseDate": 1704067200000,
        "expiresDate": 1735689600000,
        "environment": "Production",
    }
    payload.update(overrides)
    return payload


@pytest.fixture(scope="module")
def chain():
    return Chain()


@pytest.fixture
def verifier(chain):
    return AppleSignedTransactionVerifier([chain.root], bundle_id=BUNDLE_ID)


def test_valid_signed_transaction(chain, verifier):
    result = verifier.verify(chain.sign(transaction()), PRODUCT_ID)

    assert to_epoch_millis(result.purchase_time) == 1704067200000
    assert to_epoch_millis(result.expiry_time) == 1735689600000
    assert result.transaction_id == "2000000456"
    assert result.environment == "production"


def test_sandbox_environment(chain, verifier):
    result = verifier.verify(chain.sign(transaction(environment="Sandbox")), PRODUCT_ID)
    assert result.environment == "sandbox"


def test_untrusted_root_is_rejected(chain):
    other_root = make_cert("Other Root", ec.generate_private_key(ec.SECP256R1()))
    verifier = AppleSignedTransactionVerifier([other_root])

    with pytest.raises(AuthorityRejected):
        verifier.verify(chain.sign(transaction()), PRODUCT_ID)


def test_broken_chain_is_rejected(chain, verifier):
    stranger = make_cert("Stranger", ec.generate_private_key(ec.SECP256R1()))
    token = chain.sign(transaction(), x5c=chain.x5c(chain.leaf, stranger, chain.root))

    with pytest.raises(AuthorityRejected):
        verifier.verify(token, PRODUCT_ID)


def test_signature_from_other_key_is_rejected(chain, verifier):
    token = chain.sign(transaction(), key=ec.generate_private_key(ec.SECP256R1()))

    with pytest.raises(AuthorityRejected):
        verifier.verify(token, PRODUCT_ID)


def test_missing_chain_is_rejected(chain, verifier):
    with pytest.raises(AuthorityRejected):
        verifier.verify(chain.sign(transaction(), x5c=[]), PRODUCT_ID)


def test_garbage_chain_is_malformed(chain, verifier):
    token = chain.sign(transaction(), x5c=["bm90IGEgY2VydGlmaWNhdGU="])

    with pytest.raises(MalformedReceipt):
        verifier.verify(token, PRODUCT_ID)


def test_product_mismatch(chain, verifier):
    with pytest.raises(ProductMismatch):
        verifier.verify(chain.sign(transaction()), "whatscard_premium_monthly")


def test_bundle_mismatch(chain, verifier):
    with pytest.raises(AuthorityRejected):
        verifier.verify(chain.sign(transaction(bundleId="com.other.app")), PRODUCT_ID)


def test_missing_expiry_is_malformed(chain, verifier):
    payload = transaction()
    del payload["expiresDate"]

    with pytest.raises(MalformedReceipt):
        verifier.verify(chain.sign(payload), PRODUCT_ID)


def test_expired_certificate_is_rejected(chain, verifier):
    with pytest.raises(AuthorityRejected):
        verifier.verify(chain.sign(transaction()), PRODUCT_ID, now=NOW + timedelta(days=400))


def test_no_roots_is_configuration_error(chain):
    with pytest.raises(ConfigurationError):
        AppleSignedTransactionVerifier([]).verify(chain.sign(transaction()), PRODUCT_ID)


def test_load_root_certificates(chain, tmp_path):
    der_path = tmp_path / "root.cer"
    der_path.write_bytes(chain.root.public_bytes(serialization.Encoding.DER))
    pem_path = tmp_path / "root.pem"
    pem_path.write_bytes(chain.root.public_bytes(serialization.Encoding.PEM))

    assert load_root_certificates([str(der_path), str(pem_path)]) == [chain.root, chain.root]


def test_load_root_certificates_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_root_certificates([str(tmp_path / "missing.cer")])
