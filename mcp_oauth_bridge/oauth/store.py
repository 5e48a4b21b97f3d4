"""Token record storage.

One JSON file per identity, addressed by identity name:
- Files are created owner read/write only (0600), the directory 0700
- Writes go through a temporary file and ``os.replace``
- ``expires_at`` is stamped once, at save time, from ``expires_in``

There is no locking: the policy is last-writer-wins, which is acceptable for
one bridge process per set of identities.
"""

import json
import logging
import os
import re
import stat
import tempfile
from pathlib import Path

from .tokens import TokenRecord

logger = logging.getLogger(__name__)

# Default storage location
DEFAULT_STORE_DIR = Path.home() / ".mcp-bridge" / "tokens"

TOKEN_SUFFIX = ".json"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


class TokenStoreError(Exception):
    """Error in token storage operations."""

    pass


class TokenStore:
    """Durable per-identity token storage.

    Token files live in ``store_dir`` as ``<identity>.json`` unless the caller
    supplies an explicit path (the descriptor's ``token_path``).
    """

    def __init__(self, store_dir: Path | None = None):
        """Initialize token store.

        Args:
            store_dir: Optional custom storage directory
        """
        self.store_dir = store_dir or DEFAULT_STORE_DIR

    def path_for(self, identity: str, path: Path | None = None) -> Path:
        """Resolve where the record for ``identity`` lives.

        Raises:
            TokenStoreError: If the identity name cannot be used as a file name
        """
        if path is not None:
            return path

        if not _SAFE_NAME.match(identity) or identity in (".", ".."):
            raise TokenStoreError(f"Invalid identity name for token storage: {identity!r}")

        return self.store_dir / f"{identity}{TOKEN_SUFFIX}"

    def _ensure_dir(self, directory: Path) -> None:
        """Create the storage directory with owner-only permissions."""
        if directory.exists():
            return

        directory.mkdir(parents=True, exist_ok=True)
        try:
            directory.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def save(self, identity: str, record: TokenRecord, path: Path | None = None) -> TokenRecord:
        """Persist a token record.

        ``expires_at`` is computed from ``expires_in`` if not already set.

        Args:
            identity: The identity name
            record: The token record to store
            path: Optional explicit file location

        Returns:
            The record as written (with ``expires_at`` stamped)
        """
        filepath = self.path_for(identity, path)
        self._ensure_dir(filepath.parent)

        stamped = record.with_expiry()
        data = json.dumps(stamped.to_dict(), indent=2)

        # mkstemp creates the file 0600
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{filepath.name}.", suffix=".tmp", dir=filepath.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp_name, filepath)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info(f"Token saved for {identity}: {filepath}")
        return stamped

    def load(self, identity: str, path: Path | None = None) -> TokenRecord | None:
        """Load the token record for an identity.

        Returns:
            TokenRecord if found, None otherwise

        Raises:
            TokenStoreError: If the file exists but cannot be parsed
        """
        filepath = self.path_for(identity, path)

        if not filepath.exists():
            return None

        try:
            data = json.loads(filepath.read_text(encoding="utf-8"))
            record = TokenRecord.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise TokenStoreError(
                f"Token file for {identity} is unreadable or corrupted ({filepath}). "
                f"Run 'mcp-oauth-bridge auth {identity}' to re-authenticate."
            ) from e

        logger.debug(f"Loaded token for {identity}")
        return record

    def delete(self, identity: str, path: Path | None = None) -> bool:
        """Delete the token record for an identity.

        Returns:
            True if a record was deleted, False if none existed
        """
        filepath = self.path_for(identity, path)

        if not filepath.exists():
            return False

        filepath.unlink()
        logger.info(f"Token deleted for {identity}: {filepath}")
        return True

    def list_identities(self) -> list[str]:
        """List identities with a record in the store directory."""
        if not self.store_dir.exists():
            return []

        return sorted(
            p.stem for p in self.store_dir.glob(f"*{TOKEN_SUFFIX}") if not p.name.startswith(".")
        )
