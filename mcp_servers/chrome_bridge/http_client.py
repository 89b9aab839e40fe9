from __future__ import annotations

import ssl
import urllib.parse
from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, HTTPSHandler, Request, build_opener

from .config import BridgeConfig
from .errors import DownloadError


@dataclass(frozen=True, slots=True)
class FetchResult:
    status: int
    url: str
    body: bytes
    content_type: str | None = None


class _SafeRedirectHandler(HTTPRedirectHandler):
    def __init__(self, config: BridgeConfig) -> None:
        super().__init__()
        self._config = config

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        # urllib may pass relative URLs here; normalize against the previous URL.
        absolute = urllib.parse.urljoin(req.full_url, str(newurl))
        parsed = urllib.parse.urlparse(absolute)
        if parsed.scheme not in ("http", "https"):
            raise DownloadError("Only http/https are supported (redirect)")
        if not self._config.is_host_allowed(parsed.hostname or ""):
            raise DownloadError(f"Host {parsed.hostname} is not in allowlist (redirect)")
        return super().redirect_request(req, fp, code, msg, headers, absolute)


def check_url(url: str, config: BridgeConfig) -> urllib.parse.ParseResult:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise DownloadError("Only http/https are supported")
    if not config.is_host_allowed(parsed.hostname or ""):
        raise DownloadError(f"Host {parsed.hostname} is not in allowlist")
    return parsed


def fetch_bytes(url: str, config: BridgeConfig) -> FetchResult:
    """GET `url` and return the full body; non-2xx statuses raise DownloadError(status=...)."""
    check_url(url, config)
    req = Request(url, headers={"User-Agent": "mcp-chrome-bridge/1.0"})
    limit = int(config.download_max_bytes)
    try:
        ctx = ssl.create_default_context()
        opener = build_opener(_SafeRedirectHandler(config), HTTPSHandler(context=ctx))
        with opener.open(req, timeout=config.http_timeout) as resp:
            status = int(getattr(resp, "status", 200) or 200)
            if not 200 <= status < 300:
                raise DownloadError(f"Failed to download file: HTTP {status}", status=status)
            body = resp.read(limit + 1)
            if len(body) > limit:
                raise DownloadError(f"Download exceeds limit of {limit} bytes")
            return FetchResult(
                status=status,
                url=str(resp.geturl() or url),
                body=body,
                content_type=resp.headers.get("Content-Type"),
            )
    except HTTPError as exc:
        raise DownloadError(f"Failed to download file: HTTP {exc.code} {exc.reason}", status=exc.code) from exc
    except (TimeoutError, URLError) as exc:
        raise DownloadError(f"Failed to download file: {exc}") from exc
