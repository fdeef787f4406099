"""
Request signing for the AsterDex futures API.

Two authentication modes exist, and exactly one is selected per deployment:

- hmac:   API key header + HMAC-SHA256 digest over the sorted query string
- eip712: owner/signer addresses + nonce, signed as EIP-712 typed data
          by the signer wallet's private key

Both produce an immutable SignedRequest whose query_string is the exact
byte string that was signed; the dispatcher must send it unchanged.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from eth_account import Account
from eth_account.messages import encode_typed_data

from core.nonce import NonceGenerator

logger = logging.getLogger(__name__)

DEFAULT_RECV_WINDOW_MS = 5000

# Fixed EIP-712 domain for AsterDex typed-data authentication
TYPED_DATA_DOMAIN = {
    "name": "AsterSignTransaction",
    "version": "1",
    "chainId": 1666,
    "verifyingContract": "0x0000000000000000000000000000000000000000",
}

TYPED_DATA_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Message": [
        {"name": "msg", "type": "string"},
    ],
}


@dataclass(frozen=True)
class ApiKeyCredentials:
    """API key + shared secret for HMAC signing"""
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return f"ApiKeyCredentials(api_key={self.api_key[:4]}***)"


@dataclass(frozen=True)
class WalletCredentials:
    """Owner wallet, authorized signer wallet and the signer's private key"""
    user_address: str
    signer_address: str
    private_key: str

    def __repr__(self) -> str:
        return (
            f"WalletCredentials(user_address={self.user_address}, "
            f"signer_address={self.signer_address})"
        )


Credentials = Union[ApiKeyCredentials, WalletCredentials]


@dataclass(frozen=True)
class SignedRequest:
    """A fully authenticated request, built fresh for every call"""
    method: str
    endpoint: str
    params: Tuple[Tuple[str, str], ...]
    nonce: int
    signature: str

    @property
    def query_string(self) -> str:
        """Exact string sent as URL query (GET/DELETE) or form body (POST/PUT)."""
        return join_params(self.params)


def format_value(value: Any) -> str:
    """Render a parameter value the way the exchange expects it in the signed string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        text = format(Decimal(repr(value)), "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def join_params(pairs) -> str:
    return "&".join(f"{key}={value}" for key, value in pairs)


class Signer(ABC):
    """Produces an authentication proof for a canonical parameter string."""

    mode: str = ""

    @abstractmethod
    def sign(self, method: str, endpoint: str, params: Optional[Mapping[str, Any]],
             nonce: int) -> SignedRequest:
        """Return a SignedRequest; must not mutate params."""

    def headers(self) -> Dict[str, str]:
        return {}


class HmacSigner(Signer):
    """
    HMAC-SHA256 signing over the sorted query string.

    Canonical form: params + timestamp + recvWindow, keys sorted, joined as
    key=value with "&". The digest is appended as signature=<hex>. The
    timestamp is the nonce millisecond plus its sequence, on the same
    (exchange-corrected) clock as the nonce.
    """

    mode = "hmac"

    def __init__(self, credentials: ApiKeyCredentials, recv_window_ms: int = DEFAULT_RECV_WINDOW_MS):
        if not credentials.api_key or not credentials.api_secret:
            raise ValueError("API key and API secret required for HMAC authentication")
        self._credentials = credentials
        self.recv_window_ms = recv_window_ms

    def _digest(self, payload: str) -> str:
        return hmac.new(
            self._credentials.api_secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def sign(self, method, endpoint, params, nonce):
        all_params = dict(params or {})
        # Sequence folded in so same-millisecond nonces never share a timestamp
        all_params["timestamp"] = NonceGenerator.timestamp_of(nonce) + NonceGenerator.sequence_of(nonce)
        all_params["recvWindow"] = self.recv_window_ms

        pairs = tuple((key, format_value(all_params[key])) for key in sorted(all_params))
        signature = self._digest(join_params(pairs))

        return SignedRequest(
            method=method.upper(),
            endpoint=endpoint,
            params=pairs + (("signature", signature),),
            nonce=nonce,
            signature=signature,
        )

    def headers(self) -> Dict[str, str]:
        return {"X-MBX-APIKEY": self._credentials.api_key}


class TypedDataSigner(Signer):
    """
    EIP-712 signing with the authorized signer wallet.

    Canonical form: params + nonce + user + signer, keys sorted
    lexicographically, joined as key=value with '&'. The string becomes the
    single `msg` field of a typed Message under TYPED_DATA_DOMAIN and the
    65-byte signature is appended as signature=0x<hex>.
    """

    mode = "eip712"

    def __init__(self, credentials: WalletCredentials):
        # Fails fast on malformed key material
        self._account = Account.from_key(credentials.private_key)
        self._credentials = credentials

        if self._account.address.lower() != credentials.signer_address.lower():
            logger.warning(
                f"Private key belongs to {self._account.address}, "
                f"configured signer is {credentials.signer_address}"
            )

    @staticmethod
    def typed_message(message: str) -> Dict[str, Any]:
        return {
            "types": TYPED_DATA_TYPES,
            "primaryType": "Message",
            "domain": dict(TYPED_DATA_DOMAIN),
            "message": {"msg": message},
        }

    def sign(self, method, endpoint, params, nonce):
        all_params = dict(params or {})
        all_params["nonce"] = nonce
        all_params["user"] = self._credentials.user_address
        all_params["signer"] = self._credentials.signer_address

        pairs = tuple((key, format_value(all_params[key])) for key in sorted(all_params))

        signable = encode_typed_data(full_message=self.typed_message(join_params(pairs)))
        signed = self._account.sign_message(signable)
        signature = "0x" + bytes(signed.signature).hex()

        return SignedRequest(
            method=method.upper(),
            endpoint=endpoint,
            params=pairs + (("signature", signature),),
            nonce=nonce,
            signature=signature,
        )


def build_signer(credentials: Credentials, recv_window_ms: int = DEFAULT_RECV_WINDOW_MS) -> Signer:
    """Pick the signing strategy matching the credential type."""
    if isinstance(credentials, WalletCredentials):
        return TypedDataSigner(credentials)
    if isinstance(credentials, ApiKeyCredentials):
        return HmacSigner(credentials, recv_window_ms=recv_window_ms)
    raise TypeError(f"Unsupported credentials type: {type(credentials).__name__}")
