from __future__ import annotations

import base64
import time
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .errors import ERROR_TYPES, LockHeld, StateBackendError, Unavailable


class StateBackendClient:
    """
    HTTP client for the state backend API (`POST /v1/{Operation}`).

    Notes
    - Authenticates with a bearer token.
    - Retries transport errors and 503 (`Unavailable`) with exponential backoff;
      every other error is raised immediately as the typed backend error
      reconstructed from the response body (`LockHeld`, `Denied`, ...).
    - Payloads are bytes on this side; base64 on the wire.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        max_attempts: int = 4,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ) -> None:
        if not token:
            raise ValueError("token is required")
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"}
        self._max_attempts = max_attempts
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "StateBackendClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def get_state(self, namespace: str, key: str, version_id: Optional[str] = None) -> tuple[bytes, str]:
        """Return (payload, version id) of the latest or the given version."""
        body: Dict[str, Any] = {"namespace": namespace, "key": key}
        if version_id is not None:
            body["versionId"] = version_id
        data = self._request("GetState", body)
        return base64.b64decode(data["payload"]), data["versionId"]

    def put_state(self, namespace: str, key: str, payload: bytes, lock_id: str) -> str:
        data = self._request(
            "PutState",
            {
                "namespace": namespace,
                "key": key,
                "payload": base64.b64encode(payload).decode("ascii"),
                "lockId": lock_id,
            },
        )
        return data["versionId"]

    def lock(
        self,
        namespace: str,
        key: str,
        operation: str = "",
        *,
        holder: Optional[str] = None,
        ttl: Optional[float] = None,
        info: Optional[Mapping[str, str]] = None,
        wait: Optional[float] = None,
    ) -> str:
        """Acquire the lock and return its id; `wait` asks the server to wait up to N seconds."""
        body: Dict[str, Any] = {"namespace": namespace, "key": key, "operation": operation}
        if holder is not None:
            body["holder"] = holder
        if ttl is not None:
            body["ttl"] = ttl
        if info:
            body["info"] = dict(info)
        if wait is not None:
            body["timeout"] = wait
        return self._request("Lock", body)["lockId"]

    def unlock(self, namespace: str, key: str, lock_id: str) -> None:
        self._request("Unlock", {"namespace": namespace, "key": key, "lockId": lock_id})

    def force_unlock(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        return self._request("ForceUnlock", {"namespace": namespace, "key": key}).get("broken")

    def list_versions(self, namespace: str, key: str) -> List[str]:
        return list(self._request("ListVersions", {"namespace": namespace, "key": key})["versions"])

    def lock_info(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        return self._request("LockInfo", {"namespace": namespace, "key": key}).get("lock")

    # --------------- Internal ---------------
    def _request(self, operation: str, body: Dict[str, Any]) -> Dict[str, Any]:
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                resp = self._client.post(f"/v1/{operation}", json=body, headers=self._headers)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                data = self._decode(resp)
                if resp.status_code == 200 and data.get("ok") is True:
                    return data
                error = self._to_error(resp.status_code, data)
                if not isinstance(error, Unavailable):
                    raise error
                last_exc = error

            attempt += 1
            if attempt < self._max_attempts:
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if isinstance(last_exc, StateBackendError):
            raise last_exc
        raise Unavailable(f"{operation} failed after {self._max_attempts} attempts") from last_exc

    @staticmethod
    def _decode(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _to_error(status: int, data: Dict[str, Any]) -> StateBackendError:
        kind = data.get("error")
        message = data.get("message") or f"HTTP {status} from state backend"
        context = dict(data.get("context") or {})
        if kind == LockHeld.kind:
            return LockHeld(
                message,
                holder=context.pop("holder", ""),
                acquired_at=context.pop("acquired_at", ""),
                lock_id=context.pop("lock_id", None),
                operation=context.pop("operation", None),
                **context,
            )
        cls = ERROR_TYPES.get(kind or "")
        if cls is None:
            if status in (502, 503, 504):
                return Unavailable(message, status=status, **context)
            return StateBackendError(message, status=status, error=kind, **context)
        return cls(message, **context)


__all__ = ["StateBackendClient"]
