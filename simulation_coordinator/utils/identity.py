"""
Names and cryptographic identities.

- Simulation names: short unique prefixes of random "sim-<uuid>" strings
- Drone IDs: NATO alphabet words, suffixed when all plain words are taken
- Drone identity keys: RSA-2048 private key plus self-signed certificate
"""

import datetime
import uuid
from typing import Iterable, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

NATO_ALPHABET = (
    "alpha", "bravo", "charlie", "delta", "echo", "foxtrot", "golf", "hotel",
    "india", "juliett", "kilo", "lima", "mike", "november", "oscar", "papa",
    "quebec", "romeo", "sierra", "tango", "uniform", "victor", "whiskey",
    "xray", "yankee", "zulu",
)

SIMULATION_NAME_CANDIDATES = 20
SIMULATION_NAME_MIN_LENGTH = 5
SIMULATION_NAME_MAX_LENGTH = 21
DRONE_ID_ATTEMPTS = 20


def shortest_unique_prefix(candidate: str, existing: Iterable[str],
                           min_length: int = SIMULATION_NAME_MIN_LENGTH,
                           max_length: int = SIMULATION_NAME_MAX_LENGTH) -> str:
    """
    Shorten a candidate name to the shortest prefix no existing name starts with.

    Args:
        candidate: Full candidate name
        existing: Names already in use
        min_length: Shortest allowed prefix
        max_length: Longest allowed prefix

    Returns:
        The shortened name
    """
    existing = list(existing)
    for length in range(min_length, min(max_length, len(candidate)) + 1):
        prefix = candidate[:length]
        if not any(name.startswith(prefix) for name in existing):
            return prefix
    return candidate[:max_length]


def generate_simulation_name(existing: Iterable[str]) -> str:
    """Generate a short simulation name that doesn't clash with existing ones."""
    existing = list(existing)
    best: Optional[str] = None
    for _ in range(SIMULATION_NAME_CANDIDATES):
        candidate = shortest_unique_prefix(f"sim-{uuid.uuid4()}", existing)
        if candidate in existing:
            continue
        if best is None or len(candidate) < len(best):
            best = candidate
    if best is None:
        raise RuntimeError("Could not find a unique simulation name")
    return best


def generate_drone_id(existing: Iterable[str]) -> str:
    """
    Pick a drone ID not used in the simulation.

    Plain NATO words are tried first; once they're all taken, a word plus a
    random suffix is tried a bounded number of times.
    """
    existing = set(existing)
    for word in NATO_ALPHABET:
        if word not in existing:
            return word
    for attempt in range(DRONE_ID_ATTEMPTS):
        word = NATO_ALPHABET[attempt % len(NATO_ALPHABET)]
        candidate = f"{word}-{str(uuid.uuid4()).split('-')[3]}"
        if candidate not in existing:
            return candidate
    raise RuntimeError("Could not generate a unique drone ID")


def generate_identity(common_name: str, valid_days: int = 365) -> Tuple[str, str]:
    """
    Generate an RSA-2048 private key and a self-signed certificate.

    Args:
        common_name: Certificate subject CN (drone ID or service name)
        valid_days: Certificate validity

    Returns:
        (private_key_pem, certificate_pem)
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=valid_days))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM).decode()
    return key_pem, cert_pem
