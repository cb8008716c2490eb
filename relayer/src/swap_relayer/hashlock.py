import hashlib
from typing import Callable, Dict

from web3 import Web3

from .errors import InvalidSecret
from .models import SwapOrder


def _keccak256(secret: bytes) -> bytes:
    return bytes(Web3.keccak(secret))


def _sha256(secret: bytes) -> bytes:
    return hashlib.sha256(secret).digest()


HASH_ALGORITHMS: Dict[str, Callable[[bytes], bytes]] = {
    "keccak256": _keccak256,
    "sha256": _sha256,
}


def hash_secret(secret: bytes, algorithm: str = "keccak256") -> bytes:
    try:
        fn = HASH_ALGORITHMS[algorithm]
    except KeyError:
        raise ValueError(f"Unsupported hashlock algorithm: {algorithm}") from None
    return fn(secret)


def verify_secret(order: SwapOrder, secret: bytes) -> bytes:
    """Return `secret` if it opens the order's hashlock, raise InvalidSecret otherwise."""
    if hash_secret(secret, order.hash_algorithm) != order.hashlock:
        raise InvalidSecret(order.swap_id, secret)
    return secret
