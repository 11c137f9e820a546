"""
Trusted timestamping.

A timestamp authority receives the SHA-256 digest of the manifest bytes
and returns a token proving the manifest existed at or before a given
instant. Authorities are independent of the signer.

RFC 3161 requests are encoded by hand: a SHA-256 TimeStampReq is a small
fixed DER structure, and only the response status and message imprint
need to be read back.
"""

import json
import os
import secrets
import subprocess
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import requests
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey

from .errors import TimestampUnavailable
from .keys import verify_ed25519
from .util import (
    atomic_write_bytes,
    b64d,
    b64e,
    canonicalize,
    constant_time_compare,
    parse_utc_iso,
    pretty_json_bytes,
    utc_iso_millis,
    utc_now,
)

LOCAL_TOKEN_FORMAT = "immutable-sandbox-local-tst/1"

# DER AlgorithmIdentifier for id-sha256 (2.16.840.1.101.3.4.2.1) with NULL parameters
SHA256_ALGORITHM_ID = bytes.fromhex("300d06096086480165030402010500")

# PKIStatus values meaning a token was issued
GRANTED_STATUSES = (0, 1)


class TimestampAuthority(ABC):
    """Abstract interface for a trusted timestamp authority."""

    name = "abstract"

    @abstractmethod
    def request_token(self, digest: bytes) -> bytes:
        """
        Obtain a timestamp token over a SHA-256 digest.

        Raises:
            TimestampUnavailable: the authority could not be reached or refused
        """

    @abstractmethod
    def verify_token(self, token: bytes, digest: bytes) -> bool:
        """True if token was issued by this authority over exactly this digest."""


# ============================================================
# DER helpers
# ============================================================

def _der_length(n: int) -> bytes:
    if n < 0x80:
        return bytes([n])
    body = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(body)]) + body


def _der_tlv(tag: int, content: bytes) -> bytes:
    return bytes([tag]) + _der_length(len(content)) + content


def _der_integer(value: int) -> bytes:
    body = value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big")
    if body[0] & 0x80:
        body = b"\x00" + body
    return _der_tlv(0x02, body)


def _read_tlv(data: bytes, offset: int) -> Tuple[int, int, int]:
    """
    Read one DER TLV header.

    Returns:
        (tag, content_start, content_end)
    """
    if offset + 2 > len(data):
        raise ValueError("truncated DER")
    tag = data[offset]
    first = data[offset + 1]
    pos = offset + 2
    if first < 0x80:
        length = first
    else:
        count = first & 0x7F
        if count == 0 or pos + count > len(data):
            raise ValueError("bad DER length")
        length = int.from_bytes(data[pos:pos + count], "big")
        pos += count
    if pos + length > len(data):
        raise ValueError("truncated DER")
    return tag, pos, pos + length


def message_imprint(digest: bytes) -> bytes:
    return _der_tlv(0x30, SHA256_ALGORITHM_ID + _der_tlv(0x04, digest))


def build_timestamp_request(digest: bytes, nonce: Optional[int] = None, cert_req: bool = True) -> bytes:
    """
    DER-encode an RFC 3161 TimeStampReq for a SHA-256 digest.

    TimeStampReq ::= SEQUENCE {
        version INTEGER { v1(1) },
        messageImprint MessageImprint,
        nonce INTEGER OPTIONAL,
        certReq BOOLEAN DEFAULT FALSE }
    """
    if len(digest) != 32:
        raise ValueError("SHA-256 digest must be 32 bytes")
    body = _der_integer(1) + message_imprint(digest)
    if nonce is not None:
        body += _der_integer(nonce)
    if cert_req:
        body += _der_tlv(0x01, b"\xff")
    return _der_tlv(0x30, body)


def parse_response_status(response: bytes) -> int:
    """
    Read PKIStatus from a TimeStampResp.

    TimeStampResp ::= SEQUENCE { status PKIStatusInfo, timeStampToken OPTIONAL }
    PKIStatusInfo ::= SEQUENCE { status INTEGER, ... }
    """
    tag, start, _ = _read_tlv(response, 0)
    if tag != 0x30:
        raise ValueError("TimeStampResp is not a SEQUENCE")
    tag, info_start, _ = _read_tlv(response, start)
    if tag != 0x30:
        raise ValueError("PKIStatusInfo is not a SEQUENCE")
    tag, int_start, int_end = _read_tlv(response, info_start)
    if tag != 0x02:
        raise ValueError("PKIStatus is not an INTEGER")
    return int.from_bytes(response[int_start:int_end], "big", signed=True)


def rfc3161_token_matches(token: bytes, digest: bytes) -> bool:
    """Granted status and the imprint of digest; says nothing about who issued it."""
    try:
        if parse_response_status(token) not in GRANTED_STATUSES:
            return False
    except ValueError:
        return False
    return message_imprint(digest) in token


def rfc3161_token_time(token: bytes, digest: bytes) -> Optional[int]:
    """
    Read genTime from the TSTInfo of a token.

    TSTInfo ::= SEQUENCE { version, policy, messageImprint, serialNumber,
                           genTime GeneralizedTime, ... }
    """
    imprint = message_imprint(digest)
    pos = token.find(imprint)
    if pos < 0:
        return None
    try:
        tag, _, serial_end = _read_tlv(token, pos + len(imprint))
        if tag != 0x02:
            return None
        tag, start, _ = _read_tlv(token, serial_end)
        if tag != 0x18:
            return None
        gen_time = datetime.strptime(token[start:start + 14].decode("ascii"), "%Y%m%d%H%M%S")
    except (ValueError, UnicodeDecodeError):
        return None
    return int(gen_time.replace(tzinfo=timezone.utc).timestamp())


class Rfc3161TimestampAuthority(TimestampAuthority):
    """
    Remote RFC 3161 authority reached over HTTP (default: FreeTSA).

    The stored token is the full TimeStampResp. ``verify_token`` only
    succeeds for an authenticated token: the TSA signature and
    certificate chain are checked with ``openssl ts`` against
    ``ca_file``. Without a CA file no token can be authenticated, since
    a granted status and a matching imprint are trivial to forge.
    """

    name = "rfc3161"

    def __init__(self, url: str, timeout: float = 15.0, ca_file: Optional[Union[str, Path]] = None,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.ca_file = str(ca_file) if ca_file else None
        self._session = session or requests.Session()

    def request_token(self, digest: bytes) -> bytes:
        nonce = secrets.randbits(63)
        query = build_timestamp_request(digest, nonce=nonce)
        try:
            resp = self._session.post(
                self.url,
                data=query,
                headers={"Content-Type": "application/timestamp-query"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TimestampUnavailable(f"Timestamp authority {self.url} unreachable: {e}", step="timestamp") from e

        token = resp.content
        try:
            status = parse_response_status(token)
        except ValueError as e:
            raise TimestampUnavailable(f"Malformed timestamp response: {e}", step="timestamp") from e
        if status not in GRANTED_STATUSES:
            raise TimestampUnavailable(f"Timestamp request rejected with status {status}", step="timestamp")
        if message_imprint(digest) not in token:
            raise TimestampUnavailable("Timestamp response does not carry the requested imprint", step="timestamp")
        if _der_integer(nonce) not in token:
            raise TimestampUnavailable("Timestamp response nonce mismatch", step="timestamp")
        return token

    def verify_token(self, token: bytes, digest: bytes) -> bool:
        if not rfc3161_token_matches(token, digest):
            return False
        if not self.ca_file:
            return False
        return self._openssl_verify(token, digest)

    def _openssl_verify(self, token: bytes, digest: bytes) -> bool:
        fd, path = tempfile.mkstemp(suffix=".tsr")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(token)
            proc = subprocess.run(
                ["openssl", "ts", "-verify", "-digest", digest.hex(), "-in", path, "-CAfile", self.ca_file],
                capture_output=True,
                timeout=self.timeout,
            )
            return proc.returncode == 0
        except (OSError, subprocess.TimeoutExpired):
            return False
        finally:
            os.unlink(path)


def _load_local_token(token: bytes) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(token.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("format") != LOCAL_TOKEN_FORMAT:
        return None
    return data


def is_local_token(token: bytes) -> bool:
    return _load_local_token(token) is not None


def verify_local_token(token: bytes, digest: bytes, tsa_keys: Dict[str, str]) -> bool:
    """
    Check a local authority token against published authority keys.

    Args:
        token: Token bytes as stored beside the manifest
        digest: SHA-256 digest of the manifest bytes
        tsa_keys: kid -> base64 public key (trust store ``timestamp_authority_keys``)
    """
    data = _load_local_token(token)
    if data is None:
        return False
    pub = tsa_keys.get(data.get("tsa_kid", ""))
    if not pub or not constant_time_compare(str(data.get("digest_sha256", "")), digest.hex()):
        return False
    sig = data.pop("sig_b64", "")
    return verify_ed25519(sig, canonicalize(data), pub)


def local_token_time(token: bytes) -> Optional[int]:
    """gen_time of a local token; only meaningful once the token verified."""
    data = _load_local_token(token)
    if data is None:
        return None
    try:
        return int(parse_utc_iso(str(data["gen_time"])).timestamp())
    except (KeyError, ValueError):
        return None


class LocalTimestampAuthority(TimestampAuthority):
    """
    Offline authority holding its own Ed25519 key, separate from any
    analyst identity. Tokens are JSON documents signed over their
    canonical body.
    """

    name = "local"

    def __init__(self, key_path: Union[str, Path], kid: str = "local-tsa"):
        self.key_path = Path(key_path)
        self._sk = self._load_or_create(kid)

    def _load_or_create(self, kid: str) -> SigningKey:
        if self.key_path.exists():
            with open(self.key_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            self.kid = raw["kid"]
            return SigningKey(b64d(raw["private_key_b64"]))
        sk = SigningKey.generate()
        self.kid = kid
        atomic_write_bytes(self.key_path, pretty_json_bytes({"kid": kid, "private_key_b64": b64e(bytes(sk))}))
        os.chmod(self.key_path, 0o600)
        return sk

    @property
    def public_key_b64(self) -> str:
        return b64e(bytes(self._sk.verify_key))

    def request_token(self, digest: bytes) -> bytes:
        body = {
            "format": LOCAL_TOKEN_FORMAT,
            "tsa_kid": self.kid,
            "digest_sha256": digest.hex(),
            "gen_time": utc_iso_millis(utc_now()),
            "serial": secrets.token_hex(16),
        }
        token = dict(body)
        token["sig_b64"] = b64e(self._sk.sign(canonicalize(body)).signature)
        return pretty_json_bytes(token)

    def verify_token(self, token: bytes, digest: bytes) -> bool:
        return verify_local_token(token, digest, {self.kid: self.public_key_b64})


class DisabledTimestampAuthority(TimestampAuthority):
    """Timestamping switched off by configuration."""

    name = "none"

    def request_token(self, digest: bytes) -> bytes:
        raise TimestampUnavailable("Timestamping is disabled by configuration", step="timestamp")

    def verify_token(self, token: bytes, digest: bytes) -> bool:
        return False


def get_timestamp_authority(settings, keyring=None) -> TimestampAuthority:
    """
    Factory for the configured authority.

    Args:
        settings: Settings instance
        keyring: Keyring used to publish a local authority's public key

    Returns:
        Configured TimestampAuthority instance
    """
    if settings.tsa_kind == "none":
        return DisabledTimestampAuthority()
    if settings.tsa_kind == "local":
        try:
            tsa = LocalTimestampAuthority(settings.local_tsa_key_path)
        except (OSError, KeyError, ValueError, CryptoError) as e:
            raise TimestampUnavailable(f"Cannot load local timestamp authority key: {e}", step="timestamp") from e
        if keyring is not None:
            keyring.register_timestamp_authority(tsa.kid, tsa.public_key_b64)
        return tsa
    return Rfc3161TimestampAuthority(
        url=settings.tsa_url,
        timeout=settings.tsa_timeout,
        ca_file=settings.tsa_ca_file,
    )
