"""Identity issuance."""

from .issuer import IdentityIssuer

__all__ = ["IdentityIssuer"]
