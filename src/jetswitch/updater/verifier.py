"""
Checksum helpers for jetswitch backup manifests
"""

import hashlib
from pathlib import Path
from typing import Dict, Union


def calculate_checksum(path: Union[str, Path], algorithm: str = 'sha256') -> str:
    """Hex digest of a backed-up file; FileNotFoundError if it is not a regular file."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Not a regular file: {path}")

    digest = hashlib.new(algorithm)
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(1 << 20), b''):
            digest.update(block)
    return digest.hexdigest()


def verify_checksum(file_path: Union[str, Path], expected_checksum: str,
                    algorithm: str = 'sha256') -> bool:
    """True if the file exists and its digest matches ``expected_checksum``."""
    try:
        actual_checksum = calculate_checksum(file_path, algorithm)
    except FileNotFoundError:
        return False
    return actual_checksum.lower() == expected_checksum.lower()


def checksum_tree(root: Union[str, Path]) -> Dict[str, str]:
    """
    Checksum every regular file under a directory.

    Returns:
        Mapping of POSIX-style paths relative to ``root`` to SHA-256 digests
    """
    root = Path(root)
    return {
        path.relative_to(root).as_posix(): calculate_checksum(path)
        for path in sorted(root.rglob('*'))
        if path.is_file() and not path.is_symlink()
    }
