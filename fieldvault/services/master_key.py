"""
Master key (key-encrypting key) material loading.

The local KMS provider wraps data encryption keys under a 96-byte master key
read from a file. The material is held in a mutable buffer so it can be
zeroed once the encrypted client has been configured.

Security Note:
    Never log key material. Only log lengths and file paths.
"""
import os
from pathlib import Path
from typing import Optional, Union

from fieldvault.exceptions import KeyMaterialError
from fieldvault.utils.logger import get_logger

logger = get_logger("keys.master")

LOCAL_MASTER_KEY_LENGTH = 96


class MasterKeyMaterial:
    """
    Raw key-encrypting-key bytes with explicit clearing.

    Example:
        >>> with MasterKeySource().read("master-key.txt") as material:
        ...     kms_providers = {"local": {"key": bytes(material)}}
    """

    __slots__ = ("_buffer", "_cleared")

    def __init__(self, data: Union[bytes, bytearray]):
        self._buffer = bytearray(data)
        self._cleared = False

    def __len__(self) -> int:
        return len(self._buffer)

    def __bytes__(self) -> bytes:
        if self._cleared:
            raise KeyMaterialError("Master key material has already been cleared")
        return bytes(self._buffer)

    def __repr__(self) -> str:
        state = "cleared" if self._cleared else f"length={len(self._buffer)}"
        return f"<MasterKeyMaterial {state}>"

    def __enter__(self) -> "MasterKeyMaterial":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.clear()

    @property
    def is_cleared(self) -> bool:
        """Check if the material has been zeroed."""
        return self._cleared

    def clear(self) -> None:
        """Zero the buffer in place and drop its contents. Safe to call twice."""
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._buffer.clear()
        self._cleared = True


class MasterKeySource:
    """
    Reads master key material from a file.

    Args:
        expected_length: Required key length in bytes, or None to accept any
            non-empty key
    """

    def __init__(self, expected_length: Optional[int] = LOCAL_MASTER_KEY_LENGTH):
        self.expected_length = expected_length

    def read(self, path: Union[str, Path]) -> MasterKeyMaterial:
        """
        Read master key material from a file.

        Args:
            path: Path to the raw key file

        Returns:
            MasterKeyMaterial owned by the caller

        Raises:
            KeyMaterialError: If the file is unreadable, empty or the wrong length
        """
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.error("Failed to read master key file", path=str(path), error=e.__class__.__name__)
            raise KeyMaterialError(f"Master key file is not readable: {path}") from e

        material = MasterKeyMaterial(data)
        # Drop the immutable copy; only the clearable buffer remains
        del data

        if len(material) == 0:
            material.clear()
            raise KeyMaterialError(f"Master key file is empty: {path}")

        if self.expected_length is not None and len(material) != self.expected_length:
            actual = len(material)
            material.clear()
            raise KeyMaterialError(
                f"Master key must be exactly {self.expected_length} bytes, got {actual}"
            )

        logger.debug("Read master key file", path=str(path), length=len(material))
        return material


def write_local_master_key(path: Union[str, Path], overwrite: bool = False) -> Path:
    """
    Generate a random local master key and write it with owner-only permissions.

    Args:
        path: Destination file
        overwrite: Replace an existing file

    Returns:
        The written path

    Raises:
        FileExistsError: If the file exists and overwrite is False
    """
    path = Path(path)
    if path.exists() and not overwrite:
        raise FileExistsError(f"Master key file already exists: {path}")

    path.parent.mkdir(parents=True, exist_ok=True)
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    fd = os.open(path, flags, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(os.urandom(LOCAL_MASTER_KEY_LENGTH))
    os.chmod(path, 0o600)

    logger.info("Wrote local master key", path=str(path), length=LOCAL_MASTER_KEY_LENGTH)
    return path
