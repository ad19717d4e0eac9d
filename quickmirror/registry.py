"""Mirror registry checkin client.

After a successful run the directory tree of every changed module is
reported to a MirrorManager-style registry. The payload is a JSON document,
bzip2-compressed, URL-safe base64 encoded and sent as the single string
parameter of an XML-RPC ``checkin`` call.
"""

from __future__ import annotations

import base64
import bz2
import json
import logging
import re
import time
import xmlrpc.client
from pathlib import Path
from typing import Any, Iterable, Optional

import httpx

from .config import MirrorConfig, Module
from .exceptions import RegistryCheckinError, RegistryError, RegistryNetworkError

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")


def registry_dir_path(module: Module, path: str) -> str:
    """Strip the module's registry prefix from a directory path."""
    if path == module.registry_dir:
        return ""
    prefix = module.registry_dir + "/"
    if path.startswith(prefix):
        return path[len(prefix):]
    return path


def build_checkin_payload(
    module: Module,
    dirs: Iterable[str],
    site: str,
    password: str,
    host: str,
    server: str,
) -> dict[str, Any]:
    """Build the checkin document for one module.

    Args:
        module: Module being reported
        dirs: Directory paths of the module (relative to the destination root)
        site: Registry site name
        password: Registry site password
        host: Registry host name
        server: Registry URL

    Returns:
        Payload dictionary
    """
    dirtree: dict[str, dict] = {}
    for path in sorted(dirs):
        dirtree[registry_dir_path(module, path)] = {}
    # The registry always expects the blank (top level) directory
    dirtree[""] = {}

    return {
        module.registry_name: {"dirtree": dirtree, "enabled": "1"},
        "global": {"enabled": "1", "server": server},
        "host": {"enabled": "1", "name": host},
        "site": {"enabled": "1", "name": site, "password": password},
        "stats": {},
        "version": 0,
    }


def encode_checkin_payload(payload: dict[str, Any]) -> str:
    """bzip2 + URL-safe base64 encoding expected by the registry."""
    raw = json.dumps(payload, indent=4).encode("utf-8")
    return base64.urlsafe_b64encode(bz2.compress(raw)).decode("ascii")


def decode_checkin_payload(encoded: str) -> dict[str, Any]:
    """Inverse of encode_checkin_payload."""
    return json.loads(bz2.decompress(base64.urlsafe_b64decode(encoded)))


def build_xmlrpc_request(encoded: str) -> str:
    """Wrap an encoded payload in an XML-RPC ``checkin`` method call."""
    return xmlrpc.client.dumps((encoded,), methodname="checkin")


def response_indicates_success(body: str) -> bool:
    """Whether the tag-stripped response mentions success."""
    return "successful" in _TAG_RE.sub("", body).lower()


class RegistryClient:
    """Client for the mirror registry checkin endpoint."""

    def __init__(
        self,
        url: str,
        site: str,
        password: str,
        host: str,
        max_retries: int = 10,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
        dump_prefix: Optional[str] = None,
    ):
        """Initialize registry client.

        Args:
            url: Registry XML-RPC endpoint
            site: Registry site name
            password: Registry site password
            host: Default registry host name
            max_retries: Maximum number of checkin attempts per module
            retry_delay: Base delay; attempt N waits retry_delay * N seconds
            timeout: HTTP request timeout in seconds
            dump_prefix: Write request bodies to "<prefix>-<module>" instead
                of sending them
        """
        self.url = url
        self.site = site
        self.password = password
        self.host = host
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.dump_prefix = dump_prefix

        self._client: httpx.Client | None = None

    @classmethod
    def from_config(
        cls, config: MirrorConfig, dump_prefix: Optional[str] = None
    ) -> "RegistryClient":
        return cls(
            url=config.registry_url,
            site=config.checkin_site or "",
            password=config.checkin_password,
            host=config.checkin_host,
            max_retries=config.max_checkin_retries,
            retry_delay=config.checkin_retry_delay,
            timeout=config.checkin_timeout,
            dump_prefix=dump_prefix,
        )

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                headers={"Content-Type": "text/xml"},
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Linear backoff: retry_delay * attempt."""
        return self.retry_delay * attempt

    def build_request(self, module: Module, dirs: Iterable[str]) -> str:
        """Build the complete XML-RPC request body for a module."""
        payload = build_checkin_payload(
            module,
            dirs,
            site=self.site,
            password=self.password,
            host=module.checkin_host or self.host,
            server=self.url,
        )
        return build_xmlrpc_request(encode_checkin_payload(payload))

    def _post(self, body: str) -> None:
        """Send one checkin request.

        Raises:
            RegistryNetworkError: On transport failures
            RegistryCheckinError: On HTTP errors or a response without success
        """
        client = self._get_client()
        try:
            response = client.post(self.url, content=body.encode("utf-8"))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RegistryCheckinError(
                f"Checkin failed with status {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise RegistryNetworkError(f"Network error: {e}") from e

        if not response_indicates_success(response.text):
            stripped = _TAG_RE.sub("", response.text).strip()
            raise RegistryCheckinError(
                f"Registry did not report success: {stripped[:200]}"
            )

    def checkin(self, module: Module, dirs: Iterable[str]) -> bool:
        """Report a module's directory tree, retrying on failure.

        Failures are logged and never raised.

        Args:
            module: Module to check in
            dirs: Directory paths of the module

        Returns:
            True if the registry confirmed the checkin (or it was dumped)
        """
        host = module.checkin_host or self.host
        logger.info(f"Performing checkin for {module.name} as {host}")
        body = self.build_request(module, dirs)

        if self.dump_prefix:
            dump_path = Path(f"{self.dump_prefix}-{module.name}")
            try:
                dump_path.write_text(body, encoding="utf-8")
            except OSError as e:
                logger.error(f"Could not write checkin payload to {dump_path}: {e}")
                return False
            logger.info(f"Wrote checkin payload for {module.name} to {dump_path}")
            return True

        for attempt in range(1, self.max_retries + 1):
            try:
                self._post(body)
                logger.info(f"Checkin for {module.name} succeeded")
                return True
            except RegistryError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        f"Could not complete checkin for {module.name} "
                        f"after {attempt} tries: {e}"
                    )
                    break
                delay = self._calculate_retry_delay(attempt)
                logger.warning(
                    f"Checkin attempt {attempt} for {module.name} failed: {e}; "
                    f"retrying in {delay:g}s"
                )
                time.sleep(delay)
        return False
