"""Signed authorization helpers."""

from slicer.auth.permit import (
    Authorization,
    DepositRequest,
    PermitDomain,
    build_authorization,
    permit_digest,
    sign_permit,
    verify_signature,
)

__all__ = [
    "Authorization",
    "DepositRequest",
    "PermitDomain",
    "build_authorization",
    "permit_digest",
    "sign_permit",
    "verify_signature",
]
