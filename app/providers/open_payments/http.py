# app/providers/open_payments/http.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from services.redaction import redact_dict, redact_text, redact_value

logger = logging.getLogger("kanzu.open_payments.http")

# (method, url, headers, body) -> extra headers (e.g. Signature, Signature-Input, Content-Digest)
RequestSigner = Callable[[str, str, dict[str, str], Optional[bytes]], dict[str, str]]


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[dict[str, Any]]
    text: str


class HttpClient:
    def __init__(
        self,
        timeout_s: float = 20.0,
        *,
        signer: Optional[RequestSigner] = None,
        transport: Optional[httpx.BaseTransport] = None,
        debug: bool = False,
    ):
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport)
        self._signer = signer
        self._debug = debug

    def close(self) -> None:
        self._client.close()

    def post(
        self,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        json_body: dict[str, Any] | None = None,
    ) -> HttpResponse:
        return self._send("POST", url, headers=headers, json_body=json_body)

    def get(
        self,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> HttpResponse:
        return self._send("GET", url, headers=headers, params=params)

    def _send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        json_body: dict[str, Any] | None = None,
        params: Optional[dict[str, Any]] = None,
    ) -> HttpResponse:
        h = {"Accept": "application/json", **(headers or {})}
        content: Optional[bytes] = None
        if json_body is not None:
            content = json.dumps(json_body, separators=(",", ":")).encode("utf-8")
            h["Content-Type"] = "application/json"

        if self._signer is not None:
            target = str(httpx.URL(url, params=params)) if params else url
            h.update(self._signer(method, target, h, content))

        r = self._client.request(method, url, headers=h, content=content, params=params)
        if self._debug:
            self._debug_dump(method, url, h, json_body, r)
        return self._wrap(r)

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        payload = None
        if r.content:
            try:
                payload = r.json()
            except ValueError:
                pass
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)

    @staticmethod
    def _debug_dump(method: str, url: str, headers: dict[str, str], json_body: Any, r: httpx.Response) -> None:
        # Never log credentials
        logger.debug(
            "op_http method=%s url=%s headers=%s json=%s status=%s text=%s",
            method,
            redact_text(url),
            redact_dict(dict(headers or {})),
            redact_value(json_body),
            r.status_code,
            redact_value(r.text[:300]),
        )


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_retryable_http(code: int) -> bool:
    return code in RETRYABLE_STATUS_CODES


STALE_GRANT_ERROR_CODES = {"invalid_continuation", "invalid_interaction", "request_denied", "user_denied"}


def is_stale_grant_http(code: int, error_code: Optional[str] = None) -> bool:
    # Continuation token rejected, grant unknown or already consumed
    if code in (401, 403, 404):
        return True
    return code == 400 and (error_code or "") in STALE_GRANT_ERROR_CODES
