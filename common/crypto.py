import datetime
import os
import ssl
from typing import Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from common.logs import get_logger

log = get_logger("crypto")

CERT_NAME = "chattr_server.pem"
COMMON_NAME = "chattr.local"


def rsa_generate(bits: int = 2048):
    '''
    The function generates an RSA private key.
        Input: key size in bits (default 2048)
        Output: private key object
    '''
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)

def self_signed_cert(priv, days: int = 365) -> x509.Certificate:
    '''
    This function builds a self-signed certificate for the server key.
        Input:
            - priv: RSA private key object
            - days: validity period
        Output: x509 certificate object
    '''
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, COMMON_NAME)])
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)   # self-signed: issuer is the subject
        .public_key(priv.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(COMMON_NAME)]), critical=False)
        .sign(priv, hashes.SHA256())
    )

def ensure_cert(cert_dir: str) -> str:
    '''
    This function returns the path of the server PEM (key + certificate),
    generating it on first use and reusing it afterwards.
        Input:
            - cert_dir: directory holding the PEM file
        Output: path to the PEM file
    '''
    os.makedirs(cert_dir, exist_ok=True)
    path = os.path.join(cert_dir, CERT_NAME)
    if os.path.isfile(path):
        return path

    log.info("generating self-signed certificate in %s", path)
    priv = rsa_generate()
    cert = self_signed_cert(priv)
    key_pem = priv.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    # Private key inside: owner-only permissions
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key_pem + cert_pem)
    return path

def fingerprint(cert_der: bytes) -> str:
    ''' SHA-256 fingerprint of a DER certificate, as colon separated hex '''
    cert = x509.load_der_x509_certificate(cert_der)
    digest = cert.fingerprint(hashes.SHA256())
    return ":".join(f"{b:02X}" for b in digest)

def pem_fingerprint(pem_path: str) -> str:
    ''' Fingerprint of the certificate stored in a PEM file '''
    with open(pem_path, "rb") as f:
        cert = x509.load_pem_x509_certificate(f.read())
    return fingerprint(cert.public_bytes(serialization.Encoding.DER))


def server_context(pem_path: str) -> ssl.SSLContext:
    ''' TLS context for the listening side, loaded from the combined PEM '''
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(pem_path)
    return ctx

def client_context() -> ssl.SSLContext:
    '''
    TLS context for the connecting side.
    The server certificate is self-signed, so no chain is verified; operators
    compare the printed fingerprint instead.
    '''
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx

def peer_fingerprint(tls_sock: ssl.SSLSocket) -> Tuple[str, str]:
    ''' Return (protocol version, server certificate fingerprint) of a TLS socket '''
    der = tls_sock.getpeercert(binary_form=True)
    return tls_sock.version() or "?", fingerprint(der) if der else "?"
