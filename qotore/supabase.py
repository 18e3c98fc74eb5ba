import logging
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15


class SupabaseError(Exception):
    """Raised when Supabase answers with a non-2xx status or cannot be reached."""

    def __init__(self, message: str, status_code: int = 0, details: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class SupabaseNotFound(SupabaseError):
    pass


def format_filter_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def build_filter_params(filters: Optional[Dict[str, object]]) -> Dict[str, str]:
    """Translate ``{column: value}`` into PostgREST query parameters.

    A plain value becomes ``eq``, a list/tuple/set becomes ``in`` and an
    ``(operator, value)`` pair uses the named operator.
    """
    params: Dict[str, str] = {}
    for column, value in (filters or {}).items():
        if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], str):
            operator, operand = value
            if operator == "in":
                joined = ",".join(format_filter_value(entry) for entry in operand)
                params[column] = f"in.({joined})"
            elif operator == "is":
                params[column] = f"is.{format_filter_value(operand)}"
            else:
                params[column] = f"{operator}.{format_filter_value(operand)}"
        elif isinstance(value, (list, set, frozenset)):
            joined = ",".join(format_filter_value(entry) for entry in value)
            params[column] = f"in.({joined})"
        elif value is None:
            params[column] = "is.null"
        else:
            params[column] = f"eq.{format_filter_value(value)}"
    return params


def build_or_param(any_of: Iterable[Tuple[str, object]]) -> str:
    clauses = [f"{column}.eq.{format_filter_value(value)}" for column, value in any_of]
    return f"({','.join(clauses)})"


class SupabaseRest:
    """Thin client for the Supabase REST (PostgREST) and Storage APIs."""

    def __init__(
        self,
        url: str,
        key: str,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.url = (url or "").rstrip("/")
        self.key = key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.error("Supabase %s %s failed: %s", method, path, exc)
            raise SupabaseError("Could not reach the database", 0, str(exc)) from exc

        if response.status_code == 404 and path.startswith("/storage/"):
            raise SupabaseNotFound("Object not found", 404, response.text)
        if not response.ok:
            logger.error(
                "Supabase %s %s answered %s: %s",
                method,
                path,
                response.status_code,
                response.text,
            )
            raise SupabaseError(
                f"Database request failed: {response.status_code}",
                response.status_code,
                response.text,
            )
        return response

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Dict[str, object]] = None,
        any_of: Optional[List[Tuple[str, object]]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict]:
        params = {"select": columns}
        params.update(build_filter_params(filters))
        if any_of:
            params["or"] = build_or_param(any_of)
        if order:
            params["order"] = order
        if limit:
            params["limit"] = str(limit)
        response = self._request(
            "GET", f"/rest/v1/{table}", params=params, headers=self._headers()
        )
        return response.json() or []

    def insert(self, table: str, rows) -> List[Dict]:
        response = self._request(
            "POST",
            f"/rest/v1/{table}",
            json=rows,
            headers=self._headers({"Prefer": "return=representation"}),
        )
        return response.json() or []

    def upsert(self, table: str, rows) -> List[Dict]:
        response = self._request(
            "POST",
            f"/rest/v1/{table}",
            json=rows,
            headers=self._headers(
                {"Prefer": "return=representation,resolution=merge-duplicates"}
            ),
        )
        return response.json() or []

    def update(
        self, table: str, filters: Dict[str, object], payload: Dict[str, object]
    ) -> List[Dict]:
        response = self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=build_filter_params(filters),
            json=payload,
            headers=self._headers({"Prefer": "return=representation"}),
        )
        return response.json() or []

    def delete(self, table: str, filters: Dict[str, object]) -> None:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=build_filter_params(filters),
            headers=self._headers(),
        )

    def upload_object(
        self,
        bucket: str,
        name: str,
        data: bytes,
        content_type: str,
        upsert: bool = True,
    ) -> Dict:
        headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": content_type,
            "x-upsert": "true" if upsert else "false",
        }
        response = self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{quote(name)}",
            data=data,
            headers=headers,
        )
        return response.json() if response.content else {}

    def delete_object(self, bucket: str, name: str) -> None:
        self._request(
            "DELETE",
            f"/storage/v1/object/{bucket}/{quote(name)}",
            headers=self._headers(),
        )

    def public_object_url(self, bucket: str, name: str) -> str:
        return f"{self.url}/storage/v1/object/public/{bucket}/{quote(name)}"

    def download_public_object(self, bucket: str, name: str) -> Tuple[bytes, str]:
        response = self._request(
            "GET", f"/storage/v1/object/public/{bucket}/{quote(name)}"
        )
        content_type = response.headers.get("Content-Type", "application/octet-stream")
        return response.content, content_type

    def get_auth_user(self, access_token: str) -> Optional[Dict]:
        """Resolve a Supabase auth user from an access token, or None if invalid."""
        headers = {"apikey": self.key, "Authorization": f"Bearer {access_token}"}
        try:
            response = self._request("GET", "/auth/v1/user", headers=headers)
        except SupabaseError as exc:
            if exc.status_code in (401, 403):
                return None
            raise
        return response.json()
