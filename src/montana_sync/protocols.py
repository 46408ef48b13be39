"""Protocols for dependency injection in the sync engine."""

from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from montana_sync.models.node import Node, SyncUser


@runtime_checkable
class CancelHandle(Protocol):
    """A scheduled callback that can be cancelled."""

    def cancel(self) -> None:
        """Prevent the callback from running, if it has not run yet."""
        ...


@runtime_checkable
class SchedulerProtocol(Protocol):
    """Runs callbacks after a delay."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> CancelHandle:
        """Schedule callback to run once after delay seconds."""
        ...


@runtime_checkable
class RemoteProtocol(Protocol):
    """Remote sync adapter as seen by the coordinator."""

    @property
    def endpoint(self) -> str:
        """Identifies the backing store; part of the hydration key."""
        ...

    def sign_up(self, email: str, password: str) -> SyncUser:
        """Create an account and return the signed-in user."""
        ...

    def sign_in(self, email: str, password: str) -> SyncUser:
        """Authenticate with email and password."""
        ...

    def sign_out(self) -> None:
        """End the current session."""
        ...

    def get_session(self) -> SyncUser | None:
        """Return the user of the current session, if any."""
        ...

    def pull_all(self) -> list[Node]:
        """Fetch every node owned by the current user."""
        ...

    def push_all(self, nodes: list[Node], user_id: str) -> None:
        """Replace every remote node of user_id with nodes."""
        ...

    def subscribe_to_changes(self, on_change: Callable[[], None]) -> None:
        """Invoke on_change on any remote row mutation."""
        ...

    def unsubscribe(self) -> None:
        """Stop delivering change notifications."""
        ...

    def reset(self) -> None:
        """Drop connections held for the current credentials."""
        ...


@runtime_checkable
class SessionStoreProtocol(Protocol):
    """Persists remote auth tokens between runs."""

    def load_session(self) -> dict[str, Any] | None:
        """Return the stored session, or None."""
        ...

    def save_session(self, session: dict[str, Any]) -> None:
        """Store the session."""
        ...

    def clear_session(self) -> None:
        """Forget the stored session."""
        ...


@runtime_checkable
class RootHandleStoreProtocol(Protocol):
    """Persists the local sync root between runs."""

    def load_root_handle(self) -> Path | None:
        """Return the persisted root directory, or None."""
        ...

    def save_root_handle(self, path: Path) -> None:
        """Persist the root directory."""
        ...

    def clear_root_handle(self) -> None:
        """Forget the persisted root directory."""
        ...


DirectoryPicker = Callable[[], Path | None]
"""Asks the user for a directory. Returns None when the user declines."""

PermissionRequester = Callable[[Path], bool]
"""Asks for read-write access to a directory. Returns True when granted."""
