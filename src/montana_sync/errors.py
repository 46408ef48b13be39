"""Exception hierarchy for montana-sync."""


class MontanaSyncError(Exception):
    """Base class for all montana-sync errors."""


class NodeNotFound(MontanaSyncError, KeyError):
    """A tree operation referenced an id that is not in the tree."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class InvalidMove(MontanaSyncError):
    """A move would make a node its own ancestor."""


# --- Encryption ---


class EncryptionError(MontanaSyncError):
    """Base class for encryption overlay errors."""


class WrongPasswordOrCorrupt(EncryptionError):
    """Decryption failed.

    Deliberately does not say whether the password was wrong or the
    envelope was damaged.
    """

    def __init__(self) -> None:
        super().__init__("Wrong password or corrupted note data")


class NoteNotUnlocked(EncryptionError):
    """The node has no cached plaintext; it must be unlocked first."""


class AlreadyEncrypted(EncryptionError):
    """The node content is already an encrypted envelope."""


# --- Local directory ---


class LocalSyncError(MontanaSyncError):
    """Base class for local directory adapter errors."""


class HandleMissing(LocalSyncError):
    """No file handle is known for the node (it was not part of the scan)."""


class PermissionDenied(LocalSyncError):
    """Directory access was declined or revoked."""


class NotConnected(LocalSyncError):
    """No local directory is connected."""


# --- Remote ---


class RemoteError(MontanaSyncError):
    """Base class for remote store errors."""


class RemoteNotConfigured(RemoteError):
    """Remote URL/key or an authenticated session is missing."""


class RemoteAuthFailure(RemoteError):
    """The identity provider rejected the request; message is shown verbatim."""


class RemotePushFailure(RemoteError):
    """A full push to the remote store failed."""


class RemotePullFailure(RemoteError):
    """A full pull from the remote store failed."""
