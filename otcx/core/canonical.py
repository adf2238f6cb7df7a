"""
otcx: Canonical JSON Encoding (RFC 8785, JCS)

Used for audit report digests and signatures. Any tool that re-canonicalizes
the rows of an exported report with JCS reproduces the same digest.

RFC 8785: https://www.rfc-editor.org/rfc/rfc8785
"""

import hashlib

try:
    import jcs as _jcs
except ImportError as exc:
    raise ImportError(
        "otcx requires the 'jcs' package for RFC 8785 compliance.\n"
        "Install with: pip install jcs\n"
        f"Original error: {exc}"
    ) from exc


def canonicalize(obj) -> bytes:
    """
    Encode a JSON-primitive structure to RFC 8785 canonical JSON bytes.

    Output is deterministic regardless of key insertion order.
    Do NOT pass ints above 2**53 or Decimals; render them as strings first.
    """
    return _jcs.canonicalize(obj)


def canonical_hash(obj) -> str:
    """Lowercase hex SHA-256 of the RFC 8785 canonical form."""
    return hashlib.sha256(canonicalize(obj)).hexdigest()
