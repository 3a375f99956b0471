"""Request authentication helpers"""
from .webhook_auth import SignatureVerifier, compute_signature, verify_signature

__all__ = ["SignatureVerifier", "compute_signature", "verify_signature"]
