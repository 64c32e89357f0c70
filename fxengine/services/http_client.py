from __future__ import annotations

"""Lightweight HTTP client util with retry.

Uses stdlib urllib to keep the provider path dependency free. Focus: GET JSON
with a bounded timeout and limited retries. Only transport failures are
retried; HTTP status errors and malformed bodies surface immediately as typed
provider errors.
"""
import http.client
import json
import socket
import time
import urllib.error
import urllib.request
from typing import Any, Dict, Mapping, Optional

from fxengine.core.errors import (
    InvalidResponse,
    ProviderTimeout,
    ProviderUnavailable,
    QuotaExceeded,
)


def _read_error_body(err: urllib.error.HTTPError) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(err.read().decode("utf-8"))
    except (ValueError, OSError):
        return None
    return payload if isinstance(payload, dict) else None


def get_json(
    url: str,
    *,
    headers: Optional[Mapping[str, str]] = None,
    timeout: float = 5.0,
    retries: int = 2,
    backoff: float = 0.5,
) -> Dict[str, Any]:
    last_err: Optional[Exception] = None
    request = urllib.request.Request(url, headers=dict(headers or {}), method="GET")
    for attempt in range(retries + 1):
        try:
            with urllib.request.urlopen(request, timeout=timeout) as resp:  # nosec B310
                data = resp.read()
        except urllib.error.HTTPError as e:
            body = _read_error_body(e)
            if e.code == 429 or (body or {}).get("error-type") == "quota-reached":
                raise QuotaExceeded(f"HTTP {e.code}: request quota reached") from e
            # 4xx bodies from the provider still carry an error envelope
            if body is not None and 400 <= e.code < 500:
                return body
            raise ProviderUnavailable(f"HTTP {e.code} from provider") from e
        except (socket.timeout, TimeoutError) as e:
            last_err = ProviderTimeout(f"timed out after {timeout}s")
            last_err.__cause__ = e
        except urllib.error.URLError as e:
            if isinstance(e.reason, (socket.timeout, TimeoutError)):
                last_err = ProviderTimeout(f"timed out after {timeout}s")
            else:
                last_err = ProviderUnavailable(f"connection failed: {e.reason}")
            last_err.__cause__ = e
        except (OSError, http.client.HTTPException) as e:
            # dropped connections and truncated bodies are not wrapped by urllib
            last_err = ProviderUnavailable(f"connection failed: {e!r}")
            last_err.__cause__ = e
        else:
            try:
                payload = json.loads(data.decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as e:
                raise InvalidResponse("provider returned a non-JSON body") from e
            if not isinstance(payload, dict):
                raise InvalidResponse("provider returned a non-object JSON body")
            return payload
        if attempt < retries:
            time.sleep(backoff * (2**attempt))
    if last_err is None:
        raise ProviderUnavailable("no request attempted")
    raise last_err
