"""HTTP API client for the hosted platform (auth, rows, rpc, storage, functions)."""
from typing import Any, Dict, Iterable, List, Optional, Union

import requests

from .config import REQUEST_TIMEOUT_SECONDS
from .errors import PlatformError, UploadError
from .storage import get_token

Rows = List[Dict[str, Any]]
Filters = Dict[str, str]


def eq(value: Any) -> str:
    return f"eq.{_literal(value)}"


def in_(values: Iterable[Any]) -> str:
    return "in.(" + ",".join(_literal(v) for v in values) + ")"


def or_(*clauses: str) -> str:
    return "(" + ",".join(clauses) + ")"


def and_(*clauses: str) -> str:
    return "and(" + ",".join(clauses) + ")"


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


class PlatformClient:
    def __init__(self, base_url: str, anon_key: str):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        token = get_token()
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self.anon_key}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> requests.Response:
        if authenticated:
            headers = self._headers(headers)
        try:
            resp = requests.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                data=data,
                headers=headers,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise PlatformError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise _error_from(resp)
        return resp

    # Auth

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        resp = self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            headers={"apikey": self.anon_key, "Content-Type": "application/json"},
            authenticated=False,
        )
        return resp.json()

    def sign_out(self) -> None:
        self._request("POST", "/auth/v1/logout")

    # Rows

    def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Rows:
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        return self._request("GET", f"/rest/v1/{table}", params=params).json()

    def insert(self, table: str, rows: Union[Dict[str, Any], Rows]) -> Rows:
        resp = self._request(
            "POST", f"/rest/v1/{table}", json=rows, headers={"Prefer": "return=representation"}
        )
        return resp.json()

    def update(self, table: str, values: Dict[str, Any], *, filters: Filters) -> Rows:
        resp = self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=filters,
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return resp.json()

    def upsert(self, table: str, rows: Rows, *, on_conflict: str = "id") -> Rows:
        resp = self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": on_conflict},
            json=rows,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return resp.json()

    def delete(self, table: str, *, filters: Filters) -> Rows:
        resp = self._request(
            "DELETE", f"/rest/v1/{table}", params=filters, headers={"Prefer": "return=representation"}
        )
        return resp.json()

    def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = self._request("POST", f"/rest/v1/rpc/{function}", json=params or {})
        return resp.json() if resp.content else None

    # Storage and functions

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        try:
            self._request(
                "POST",
                f"/storage/v1/object/{bucket}/{path}",
                data=data,
                headers={"Content-Type": content_type, "x-upsert": "false"},
            )
        except PlatformError as exc:
            raise UploadError(exc.message, status=exc.status, code=exc.code) from exc
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"

    def invoke(self, function: str, body: Optional[Dict[str, Any]] = None) -> Any:
        resp = self._request("POST", f"/functions/v1/{function}", json=body or {})
        return resp.json() if resp.content else None


def _error_from(resp: requests.Response) -> PlatformError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = body.get("message") or body.get("error_description") or body.get("error") or resp.reason
    return PlatformError(str(message), status=resp.status_code, code=body.get("code"))
