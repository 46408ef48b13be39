"""Transparent per-note encryption on top of the note tree."""

import itertools
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass

from loguru import logger

from montana_sync.core.crypto.envelope import decrypt_content, encrypt_content, is_encrypted
from montana_sync.core.tree.store import NodeTree
from montana_sync.errors import AlreadyEncrypted, NodeNotFound, NoteNotUnlocked
from montana_sync.models.node import ChangeOrigin, Node


@dataclass
class _Unlocked:
    plaintext: str
    password: str


class EncryptionOverlay:
    """Keeps decrypted plaintext and passwords in memory only.

    The tree always holds the envelope. Edits to an unlocked note update the
    in-memory plaintext right away and re-encrypt in the background. Each
    edit bumps a per-node version counter; a finished re-encryption is only
    written to the tree if no newer edit (or relock) happened meanwhile.
    """

    def __init__(
        self,
        tree: NodeTree,
        *,
        executor: Executor | None = None,
        encrypt: Callable[[str, str], str] = encrypt_content,
        decrypt: Callable[[str, str], str] = decrypt_content,
    ) -> None:
        self._tree = tree
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="montana-crypto"
        )
        self._encrypt = encrypt
        self._decrypt = decrypt
        self._lock = threading.RLock()
        self._cache: dict[str, _Unlocked] = {}
        self._versions: dict[str, int] = {}
        # Shared across nodes so a dropped entry can never be matched again
        self._counter = itertools.count(1)

    # --- Queries ---

    def is_locked(self, node: Node) -> bool:
        """True if the content is an envelope and no plaintext is cached."""
        return is_encrypted(node.content) and node.id not in self._cache

    def is_unlocked(self, node_id: str) -> bool:
        return node_id in self._cache

    def plaintext(self, node_id: str) -> str | None:
        entry = self._cache.get(node_id)
        return entry.plaintext if entry else None

    def cached_ids(self) -> frozenset[str]:
        return frozenset(self._cache)

    # --- Operations ---

    def lock(self, node_id: str, password: str) -> str:
        """Encrypt a note under password and keep it open for editing.

        If the note is already unlocked, its cached plaintext is re-encrypted
        under the new password.
        """
        with self._lock:
            node = self._tree.require(node_id)
            entry = self._cache.get(node_id)
            if entry is not None:
                plaintext = entry.plaintext
            elif is_encrypted(node.content):
                raise AlreadyEncrypted(f"Note {node_id!r} is already encrypted")
            else:
                plaintext = node.content or ""

            envelope = self._encrypt(plaintext, password)
            self._bump(node_id)
            self._cache[node_id] = _Unlocked(plaintext=plaintext, password=password)
            self._tree.update_content(node_id, envelope, origin=ChangeOrigin.CRYPTO)
        logger.info("Encrypted note {}", node_id)
        return envelope

    def unlock(self, node_id: str, envelope: str, password: str) -> str:
        """Decrypt envelope and cache the plaintext and password for node_id.

        Raises:
            WrongPasswordOrCorrupt: decryption failed for any reason.
        """
        plaintext = self._decrypt(envelope, password)
        with self._lock:
            self._cache[node_id] = _Unlocked(plaintext=plaintext, password=password)
        logger.debug("Unlocked note {}", node_id)
        return plaintext

    def edit(self, node_id: str, new_plaintext: str) -> "Future[bool]":
        """Update the plaintext now; re-encrypt into the tree in the background.

        The returned future resolves to True if the result was written to the
        tree, False if a newer edit superseded it.
        """
        with self._lock:
            entry = self._cache.get(node_id)
            if entry is None:
                raise NoteNotUnlocked(f"Note {node_id!r} is not unlocked")
            entry.plaintext = new_plaintext
            version = self._bump(node_id)
            password = entry.password
        return self._executor.submit(self._reencrypt, node_id, version, new_plaintext, password)

    def relock(self, node_id: str) -> str | None:
        """Write a final envelope for the cached plaintext and forget it.

        Any re-encryption still in flight is discarded. After this, reading
        the note requires a fresh unlock. Returns the final envelope, or None
        if the note was not unlocked.
        """
        with self._lock:
            entry = self._cache.pop(node_id, None)
            self._versions.pop(node_id, None)
            if entry is None:
                return None
            envelope = self._encrypt(entry.plaintext, entry.password)
            try:
                self._tree.update_content(node_id, envelope, origin=ChangeOrigin.CRYPTO)
            except NodeNotFound:
                logger.debug("Relocked note {} is no longer in the tree", node_id)
                return None
        logger.info("Relocked note {}", node_id)
        return envelope

    def retain(self, node_ids: Iterable[str]) -> list[str]:
        """Drop cache entries (plaintext and password) for ids not in node_ids."""
        keep = set(node_ids)
        with self._lock:
            stale = [nid for nid in self._cache if nid not in keep]
            for nid in stale:
                del self._cache[nid]
                self._versions.pop(nid, None)
        if stale:
            logger.debug("Evicted {} unlocked note(s) no longer in the tree", len(stale))
        return stale

    def discard(self, node_id: str) -> None:
        """Forget one note's plaintext and password without writing anything."""
        with self._lock:
            self._cache.pop(node_id, None)
            self._versions.pop(node_id, None)

    def clear(self) -> None:
        """Forget every cached plaintext and password."""
        with self._lock:
            self._cache.clear()
            self._versions.clear()

    def shutdown(self) -> None:
        self.clear()
        self._executor.shutdown(wait=True)

    # --- Internals ---

    def _bump(self, node_id: str) -> int:
        version = next(self._counter)
        self._versions[node_id] = version
        return version

    def _reencrypt(self, node_id: str, version: int, plaintext: str, password: str) -> bool:
        envelope = self._encrypt(plaintext, password)
        with self._lock:
            if self._versions.get(node_id) != version:
                logger.debug("Discarding stale re-encryption of {} (v{})", node_id, version)
                return False
            try:
                self._tree.update_content(node_id, envelope, origin=ChangeOrigin.CRYPTO)
            except NodeNotFound:
                logger.debug("Note {} vanished before re-encryption finished", node_id)
                return False
        return True
