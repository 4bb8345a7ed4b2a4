import logging
from pathlib import Path
from typing import Any, Dict, Optional
import requests


class RemoteError(Exception):
    """Base class for failures talking to the conversion server."""


class RemoteUnavailable(RemoteError):
    """The conversion server could not be reached or did not answer in time."""


class RemoteRejected(RemoteError):
    """The conversion server answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConversionServerClient:
    """HTTP client for a remote conversion server.

    Endpoints:
        POST   /convert            {inputPath, outputBaseName, slidesDir, dziDir}
        GET    /status/<basename>  {status, progress, phase, error}; 404 when unknown
        DELETE /convert/<basename>
        GET    /health
    """

    def __init__(self, base_url: str, timeout_s: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)

    def _url(self, path: str) -> str:
        return self.base_url + path

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, self._url(path), timeout=self.timeout_s, **kwargs)
        except requests.RequestException as e:
            raise RemoteUnavailable(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def health(self) -> Optional[Dict[str, Any]]:
        """Returns the server's health document, or None when it is not healthy."""
        try:
            response = self._request("GET", "/health")
        except RemoteUnavailable as e:
            self.logger.warning(f"Conversion server health check failed: {e}")
            return None
        if response.status_code != 200:
            return None
        return self._json(response)

    def submit(self, source_path: Path, output_base_name: str, slides_dir: Path, dzi_dir: Path) -> Dict[str, Any]:
        payload = {
            "inputPath": str(source_path),
            "outputBaseName": output_base_name,
            "slidesDir": str(slides_dir),
            "dziDir": str(dzi_dir),
        }
        response = self._request("POST", "/convert", json=payload)
        body = self._json(response)
        if response.status_code >= 400:
            error = body.get("error") or response.reason or "request rejected"
            raise RemoteRejected(f"Conversion server rejected {output_base_name}: {error}", response.status_code)
        if body.get("success") is False:
            raise RemoteRejected(f"Conversion server rejected {output_base_name}: {body.get('error', 'unknown error')}")
        self.logger.debug(
            f"REMOTE_SUBMIT: {output_base_name} id={body.get('conversionId')} position={body.get('queuePosition')}"
        )
        return body

    def status(self, output_base_name: str) -> Dict[str, Any]:
        """Returns the status document; ``{"status": "not_found"}`` on 404."""
        response = self._request("GET", f"/status/{output_base_name}")
        if response.status_code == 404:
            return {"status": "not_found"}
        if response.status_code >= 400:
            raise RemoteUnavailable(f"Status request for {output_base_name} returned HTTP {response.status_code}")
        return self._json(response)

    def cancel(self, output_base_name: str) -> bool:
        try:
            response = self._request("DELETE", f"/convert/{output_base_name}")
        except RemoteUnavailable as e:
            self.logger.warning(f"Remote cancel of {output_base_name} failed: {e}")
            return False
        return response.status_code < 400

    def close(self):
        self.session.close()
