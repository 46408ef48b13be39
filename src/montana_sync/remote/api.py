"""HTTP client for the remote notes database (Supabase auth + REST)."""

from typing import Any

import requests
from loguru import logger

from montana_sync.config import HTTP_TIMEOUT_SECONDS, NOTES_TABLE
from montana_sync.errors import RemoteAuthFailure, RemoteError, RemoteNotConfigured
from montana_sync.models.node import SyncUser
from montana_sync.protocols import SessionStoreProtocol


def _error_message(response: requests.Response) -> str:
    """Pull the provider's human-readable message out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


class SupabaseApi:
    """Thin wrapper over the identity and row endpoints.

    The access token of the signed-in user is kept on the instance and,
    when a session store is given, persisted so a later run can resume it.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        session_store: SessionStoreProtocol | None = None,
        table: str = NOTES_TABLE,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        if not url or not anon_key:
            msg = "Remote URL and anon key are required"
            raise RemoteNotConfigured(msg)
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.table = table
        self.timeout = timeout
        self.sess = requests.Session()
        self._session_store = session_store
        self.session: dict[str, Any] | None = (
            session_store.load_session() if session_store is not None else None
        )
        logger.debug("Remote API ready: {!r}, table {!r}", self.url, self.table)

    @property
    def endpoint(self) -> str:
        return self.url

    @property
    def access_token(self) -> str | None:
        return self.session.get("access_token") if self.session else None

    # --- Auth ---

    def sign_up(self, email: str, password: str) -> SyncUser:
        data = self._auth_call("signup", {"email": email, "password": password})
        user = data.get("user") or (data if data.get("id") else None)
        if not user:
            msg = "Signup failed"
            raise RemoteAuthFailure(msg)
        if data.get("access_token"):
            self._store_session(data)
        return SyncUser(id=user["id"], email=user.get("email") or email)

    def sign_in(self, email: str, password: str) -> SyncUser:
        data = self._auth_call(
            "token?grant_type=password", {"email": email, "password": password}
        )
        user = data.get("user")
        if not user or not data.get("access_token"):
            msg = "Login failed"
            raise RemoteAuthFailure(msg)
        self._store_session(data)
        return SyncUser(id=user["id"], email=user.get("email") or email)

    def sign_out(self) -> None:
        token = self.access_token
        self._clear_session()
        if token is None:
            return
        try:
            r = self.sess.post(
                f"{self.url}/auth/v1/logout",
                headers=self._headers(token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise RemoteAuthFailure(str(e)) from e
        if r.status_code >= 400 and r.status_code != 401:
            raise RemoteAuthFailure(_error_message(r))

    def get_session(self) -> SyncUser | None:
        """Return the user of the stored session, refreshing the token if needed."""
        if self.access_token is None:
            return None
        r = self._get_user()
        if r.status_code == 401 and self._refresh():
            r = self._get_user()
        if r.status_code >= 400:
            logger.debug("Stored session rejected: {}", _error_message(r))
            self._clear_session()
            return None
        user = r.json()
        return SyncUser(id=user["id"], email=user.get("email") or "")

    # --- Rows ---

    def select_rows(self) -> list[dict[str, Any]]:
        """All rows visible to the current user, oldest first."""
        r = self._rest("GET", params={"select": "*", "order": "created_at.asc"})
        rows: list[dict[str, Any]] = r.json()
        return rows

    def delete_rows(self, **filters: str) -> None:
        params = {col: f"eq.{value}" for col, value in filters.items()}
        if not params:
            msg = "Refusing to delete without a filter"
            raise ValueError(msg)
        self._rest("DELETE", params=params)

    def insert_rows(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        self._rest("POST", json_body=rows, prefer="return=minimal")

    def upsert_row(self, row: dict[str, Any]) -> None:
        self._rest(
            "POST",
            json_body=row,
            params={"on_conflict": "id"},
            prefer="resolution=merge-duplicates,return=minimal",
        )

    def select_ids(self, **filters: str) -> list[str]:
        params = {"select": "id", **{col: f"eq.{value}" for col, value in filters.items()}}
        r = self._rest("GET", params=params)
        return [row["id"] for row in r.json()]

    # --- Internals ---

    def _headers(self, token: str | None = None) -> dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self.anon_key}",
            "Content-Type": "application/json",
        }

    def _auth_call(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        logger.debug("Auth request: {!r}", path.split("?")[0])
        try:
            r = self.sess.post(
                f"{self.url}/auth/v1/{path}",
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise RemoteAuthFailure(str(e)) from e
        if r.status_code >= 400:
            raise RemoteAuthFailure(_error_message(r))
        data: dict[str, Any] = r.json()
        return data

    def _get_user(self) -> requests.Response:
        try:
            return self.sess.get(
                f"{self.url}/auth/v1/user",
                headers=self._headers(self.access_token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise RemoteAuthFailure(str(e)) from e

    def _refresh(self) -> bool:
        refresh_token = self.session.get("refresh_token") if self.session else None
        if not refresh_token:
            return False
        try:
            data = self._auth_call(
                "token?grant_type=refresh_token", {"refresh_token": refresh_token}
            )
        except RemoteAuthFailure as e:
            logger.debug("Token refresh failed: {}", e)
            return False
        self._store_session(data)
        return True

    def _rest(
        self,
        method: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> requests.Response:
        if self.access_token is None:
            msg = "Not signed in"
            raise RemoteNotConfigured(msg)
        url = f"{self.url}/rest/v1/{self.table}"
        for attempt in (1, 2):
            headers = self._headers(self.access_token)
            if prefer:
                headers["Prefer"] = prefer
            logger.debug("Making request: {} {} {!r}", method, self.table, params)
            try:
                r = self.sess.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise RemoteError(str(e)) from e
            if r.status_code == 401 and attempt == 1 and self._refresh():
                continue
            if r.status_code >= 400:
                msg = f"{method} {self.table} failed: {_error_message(r)}"
                raise RemoteError(msg)
            return r
        msg = f"{method} {self.table} failed: unauthorized"
        raise RemoteError(msg)

    def _store_session(self, data: dict[str, Any]) -> None:
        self.session = {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "user": data.get("user"),
        }
        if self._session_store is not None:
            self._session_store.save_session(self.session)

    def _clear_session(self) -> None:
        self.session = None
        if self._session_store is not None:
            self._session_store.clear_session()
