"""Signed, deadline-bounded deposit authorizations.

An authorization bundles an approval with the deposit that consumes it. The
signed message is a SHA-256 digest separated by the token's domain, so a
signature for one token (or one spender) can never be replayed against
another. Replay of the same authorization is prevented by the token's nonce.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

PERMIT_TYPE = b"Permit(address owner,address spender,uint256 value,uint256 nonce,uint256 deadline)"


@dataclass(frozen=True)
class PermitDomain:
    """Domain separating authorizations of one token from all others."""

    name: str
    verifying_contract: str
    version: str = "1"
    chain_id: int = 1

    def separator(self) -> bytes:
        h = hashlib.sha256()
        for part in (
            b"PermitDomain",
            self.name.encode(),
            self.version.encode(),
            str(self.chain_id).encode(),
            self.verifying_contract.lower().encode(),
        ):
            h.update(len(part).to_bytes(4, "big"))
            h.update(part)
        return h.digest()


@dataclass(frozen=True)
class Authorization:
    """Pre-signed approval presented with a deposit."""

    deadline: int
    signature: bytes


@dataclass(frozen=True)
class DepositRequest:
    """One item of a batch deposit."""

    wrapper: str
    amount: int
    authorization: Authorization


def permit_digest(
    domain: PermitDomain,
    owner: str,
    spender: str,
    value: int,
    nonce: int,
    deadline: int,
) -> bytes:
    """Digest an owner signs to approve `spender` for `value`."""
    struct = hashlib.sha256(
        b"|".join(
            [
                PERMIT_TYPE,
                owner.lower().encode(),
                spender.lower().encode(),
                str(value).encode(),
                str(nonce).encode(),
                str(deadline).encode(),
            ]
        )
    ).digest()
    return hashlib.sha256(b"\x19\x01" + domain.separator() + struct).digest()


def sign_permit(key: bytes, digest: bytes) -> bytes:
    return hmac.new(key, digest, hashlib.sha256).digest()


def verify_signature(key: bytes, digest: bytes, signature: bytes) -> bool:
    return hmac.compare_digest(sign_permit(key, digest), signature)


def build_authorization(
    key: bytes,
    domain: PermitDomain,
    owner: str,
    spender: str,
    value: int,
    nonce: int,
    deadline: int,
) -> Authorization:
    """Sign an authorization for `value` with the owner's key."""
    digest = permit_digest(domain, owner, spender, value, nonce, deadline)
    return Authorization(deadline=deadline, signature=sign_permit(key, digest))
