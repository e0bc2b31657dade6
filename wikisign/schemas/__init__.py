# Canonical Schemas for page revision signatures.

from .signature import (
    PageSignatureStatus,
    SignatureRecord,
    SignResult,
    VerificationReport,
)

__all__ = [
    "PageSignatureStatus",
    "SignatureRecord",
    "SignResult",
    "VerificationReport",
]
