"""
Local output of issued certificates.

Files written next to each other under the output directory:
  <name>.cer            — DER certificate
  <name>.pfx            — PKCS#12 bundle with the private key (mode 0o600),
                          only when the key was local and exportable
  <name>.metadata.json  — serial / subject / issuer / validity summary

All writes are atomic: temp file + fsync + atomic rename.
"""
from __future__ import annotations

import json
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509

from storage.atomic import atomic_write_bytes, atomic_write_text

_PRIVATE = stat.S_IRUSR | stat.S_IWUSR  # 0o600
_ARTIFACT_SUFFIXES = {".cer", ".pfx"}


def output_path(output_dir: str, file_name: str, suffix: str) -> Path:
    """Resolve *file_name* (absolute, or relative to *output_dir*) with *suffix*."""
    base = Path(file_name)
    if not base.is_absolute():
        base = Path(output_dir) / base
    stem = base.stem if base.suffix.lower() in _ARTIFACT_SUFFIXES else base.name
    return base.with_name(stem + suffix)


def certificate_metadata(certificate: x509.Certificate) -> dict:
    return {
        "serial_number": format(certificate.serial_number, "x"),
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc.isoformat(),
        "not_after": certificate.not_valid_after_utc.isoformat(),
        "written_at": datetime.now(tz=timezone.utc).isoformat(),
    }


def write_certificate_files(
    output_dir: str,
    file_name: str,
    certificate: x509.Certificate,
    der: bytes,
    pkcs12: Optional[bytes] = None,
) -> dict[str, str]:
    """
    Write the .cer (and .pfx when given) plus metadata for one certificate.

    Returns a mapping of artifact kind to the written path.
    """
    written: dict[str, str] = {}

    cer_path = output_path(output_dir, file_name, ".cer")
    atomic_write_bytes(cer_path, der)
    written["cer"] = str(cer_path)

    if pkcs12 is not None:
        pfx_path = output_path(output_dir, file_name, ".pfx")
        atomic_write_bytes(pfx_path, pkcs12, mode=_PRIVATE)
        written["pfx"] = str(pfx_path)

    meta_path = output_path(output_dir, file_name, ".metadata.json")
    atomic_write_text(meta_path, json.dumps(certificate_metadata(certificate), indent=2))
    written["metadata"] = str(meta_path)
    return written


def read_metadata(output_dir: str, file_name: str) -> Optional[dict]:
    """Return the stored metadata dict for *file_name*, or None."""
    path = output_path(output_dir, file_name, ".metadata.json")
    if path.exists():
        return json.loads(path.read_text())
    return None
