from __future__ import annotations

import json
import socket
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urljoin
from urllib.request import Request, urlopen


class SourceApiError(RuntimeError):
    def __init__(self, *, source: str, status_code: int, detail: str):
        self.source = source
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{source} API error {status_code}: {detail}")


class SourceTransportError(RuntimeError):
    def __init__(self, *, source: str, code: str, detail: str):
        self.source = source
        self.code = code
        self.detail = detail
        super().__init__(f"{source} transport error {code}: {detail}")


class JsonHttpClient:
    source_name = "source"

    def __init__(self, *, base_url: str, timeout_seconds: float = 15.0, user_agent: str | None = None):
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent or "MeterSync/1.0"

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        status_code, content_type, body = self._request_raw(
            method,
            path,
            query=query,
            payload=payload,
            headers=headers,
        )
        if status_code not in (200, 201):
            raise SourceApiError(
                source=self.source_name,
                status_code=status_code,
                detail=body or "Unexpected response",
            )
        if body == "":
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            if "application/json" not in content_type.lower():
                return body
            raise SourceApiError(
                source=self.source_name,
                status_code=502,
                detail=f"Invalid JSON response: {exc}",
            ) from exc

    def _request_raw(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[int, str, str]:
        endpoint = path.lstrip("/")
        url = urljoin(self._base_url, endpoint) if endpoint else self._base_url.rstrip("/")
        if query:
            filtered = {k: v for k, v in query.items() if v is not None}
            if filtered:
                url = f"{url}?{urlencode(filtered, doseq=True)}"

        data_bytes: bytes | None = None
        request_headers: dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": self._user_agent,
        }
        if headers:
            request_headers.update(headers)
        if payload is not None:
            data_bytes = json.dumps(payload).encode("utf-8")
            request_headers["Content-Type"] = "application/json"

        request = Request(url=url, method=method.upper(), data=data_bytes, headers=request_headers)
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                body = response.read().decode("utf-8", errors="replace")
                return response.status, response.headers.get("content-type", ""), body
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise SourceApiError(source=self.source_name, status_code=exc.code, detail=detail)
        except URLError as exc:
            raise SourceTransportError(
                source=self.source_name,
                code=_transport_code(exc.reason),
                detail=str(exc.reason),
            ) from exc
        except (TimeoutError, socket.timeout) as exc:
            raise SourceTransportError(source=self.source_name, code="ETIMEDOUT", detail=str(exc)) from exc
        except ConnectionError as exc:
            raise SourceTransportError(
                source=self.source_name,
                code=_transport_code(exc),
                detail=str(exc),
            ) from exc


def _transport_code(reason: Any) -> str:
    if isinstance(reason, (TimeoutError, socket.timeout)):
        return "ETIMEDOUT"
    if isinstance(reason, ConnectionRefusedError):
        return "ECONNREFUSED"
    if isinstance(reason, ConnectionResetError):
        return "ECONNRESET"
    if isinstance(reason, socket.gaierror):
        return "ENOTFOUND"
    return "ENETWORK"
