"""
Certificate Content Hashing

A certificate's identifier is derived from its own fields:

    cert_hash = SHA256(canonical({student_id, student_name, degree_program,
                                  cgpa, version, issuance_timestamp}))

Same fields -> same hash. Always. The record is content-addressed, so
anyone holding a fetched record can re-derive its hash and detect tampering.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output (first key when sorted)
2. Dictionary keys: sorted (Unicode codepoint order)
3. Nulls: omitted entirely
4. Empty strings: preserved
5. Decimals: fixed-point string (cgpa is always quantized to 2 places first)
6. Floats: BANNED - use Decimal instead
7. Integers and booleans: JSON numbers / true/false
8. JSON output: no extra whitespace, sorted keys, ASCII only
9. Top-level: must be a dict

Changing any of this changes every certificate hash ever issued.
Bump SERIALIZATION_VERSION instead of editing rules in place.
"""

import hashlib
import json
import secrets
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union

CGPA_QUANTUM = Decimal("0.01")


class CanonicalSerializationError(Exception):
    """Data that has no single canonical JSON form."""


def quantize_cgpa(value: Union[Decimal, int, str]) -> Decimal:
    """
    Normalize a CGPA to a two-decimal fixed-point Decimal.

    Floats are refused for the same reason they are banned from hashing.
    """
    if isinstance(value, float):
        raise CanonicalSerializationError("CGPA must be a Decimal, int or string, not float")
    try:
        return Decimal(value).quantize(CGPA_QUANTUM, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise CanonicalSerializationError(f"Invalid CGPA value: {value!r}") from e


def normalize_hash(cert_hash: str) -> str:
    """Strip an optional 0x prefix and lowercase a certificate hash."""
    value = cert_hash.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def is_valid_hash(cert_hash: str) -> bool:
    value = normalize_hash(cert_hash)
    return len(value) == 64 and all(c in "0123456789abcdef" for c in value)


def _utc_timestamp(value: datetime, path: str) -> str:
    if value.tzinfo is None:
        raise CanonicalSerializationError(
            f"{path or 'value'}: datetime is timezone-naive; attach a tzinfo before hashing"
        )
    utc = value.astimezone(timezone.utc)
    return f"{utc:%Y-%m-%dT%H:%M:%S}.{utc.microsecond:06d}Z"


class Hasher:
    """
    Canonical serialization and hashing.

    The same logical input hashes the same on every platform and Python
    version; nothing here may depend on dict insertion order or locale.
    """

    SERIALIZATION_VERSION = 1

    # Emitted unchanged. bool is listed for readability; it is an int anyway.
    _PASSTHROUGH = (bool, int, str)

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None
        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"{path or 'value'}: float is not allowed in canonical payloads, use Decimal"
            )
        # datetime before date: datetime is a date subclass
        if isinstance(value, datetime):
            return _utc_timestamp(value, path)
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, cls._PASSTHROUGH):
            return value
        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)
        if isinstance(value, (list, tuple)):
            return [cls._serialize_value(item, f"{path}[{n}]") for n, item in enumerate(value)]

        raise CanonicalSerializationError(
            f"{path or 'value'}: {type(value).__name__} has no canonical JSON form"
        )

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        bad_keys = [key for key in data if not isinstance(key, str)]
        if bad_keys:
            raise CanonicalSerializationError(
                f"{path or 'value'}: keys must be strings, got {type(bad_keys[0]).__name__}"
            )

        result = {}
        for key, raw in sorted(data.items()):
            value = cls._serialize_value(raw, f"{path}.{key}" if path else key)
            # Nulls are omitted so an absent field and a None field hash alike
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any]) -> str:
        """Render a dict as canonical JSON, prefixed with the serialization version."""
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"canonicalize() takes a dict, got {type(data).__name__}"
            )
        body = cls._to_canonical_dict(data)
        return json.dumps(
            {"__canon_v": cls.SERIALIZATION_VERSION, **body},
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any]) -> str:
        """SHA-256 of the canonical form, 64 lowercase hex characters."""
        digest = hashlib.sha256(cls.canonicalize(data).encode("utf-8"))
        return digest.hexdigest()

    @classmethod
    def certificate_hash(
        cls,
        student_id: str,
        student_name: str,
        degree_program: str,
        cgpa: Union[Decimal, int, str],
        version: int,
        issuance_timestamp: int,
    ) -> str:
        """
        Derive the content hash of a certificate.

        Args:
            student_id: Student identifier
            student_name: Full name as printed on the certificate
            degree_program: "<degree> - <program>"
            cgpa: Grade point average (quantized to 2 decimals before hashing)
            version: Version number within the student's chain
            issuance_timestamp: Unix seconds (UTC)

        Returns:
            Hex-encoded SHA-256 hash
        """
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise CanonicalSerializationError(f"Version must be a positive int, got {version!r}")

        return cls.hash_data({
            "student_id": student_id,
            "student_name": student_name,
            "degree_program": degree_program,
            "cgpa": quantize_cgpa(cgpa),
            "version": version,
            "issuance_timestamp": int(issuance_timestamp),
        })

    @staticmethod
    def hashes_equal(a: str, b: str) -> bool:
        """Constant-time comparison of two (normalized) hashes."""
        return secrets.compare_digest(normalize_hash(a), normalize_hash(b))
