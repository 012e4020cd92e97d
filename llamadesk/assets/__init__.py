"""
Asset module for the inference binary and model file.

This module provides the provisioner that resolves bundled assets,
reuses cached downloads, and fetches and verifies missing files.
"""

from llamadesk.assets.provisioner import (
    AssetProvisioner, AssetSpec, verify_checksum, file_sha256, checksum_matches
)

__all__ = [
    "AssetProvisioner",
    "AssetSpec",
    "verify_checksum",
    "file_sha256",
    "checksum_matches"
]
