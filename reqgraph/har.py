"""Load browser HAR captures and cookie exports into a :class:`CorpusIndex`."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from posixpath import splitext
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlsplit

from .corpus import PREVIEW_CHARS, CorpusIndex, graphql_operation_name
from .errors import HarFormatError
from .models import Cookie, CorpusEntry, EndpointSummary, Request, Response

logger = logging.getLogger(__name__)

# Hosts that are never the target of a user action
EXCLUDED_HOST_KEYWORDS = (
    "google",
    "gstatic",
    "googleapis",
    "googleusercontent",
    "taboola",
    "datadog",
    "sentry",
    "facebook",
    "fbcdn",
    "doubleclick",
    "googlesyndication",
    "googletagmanager",
    "cloudflare",
    "recaptcha",
)

# Header names containing any of these are dropped from captured requests
EXCLUDED_HEADER_KEYWORDS = (
    "cookie",
    "sec-",
    "accept",
    "user-agent",
    "referer",
    "relic",
    "sentry",
    "datadog",
    "amplitude",
    "mixpanel",
    "segment",
    "heap",
    "hotjar",
    "fullstory",
    "pendo",
    "optimizely",
    "adobe",
    "analytics",
    "tracking",
    "telemetry",
    "clarity",
    "matomo",
    "plausible",
)

EXCLUDED_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico",
    ".css", ".js", ".mjs",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".mp3", ".mp4", ".wav", ".avi", ".mov", ".flv", ".wmv", ".webm",
    ".rar", ".7z", ".tar", ".gz", ".exe", ".dmg",
    ".map",
}

SAME_SITE_CODES = {0: "None", 1: "Lax", 2: "Strict"}

PathLike = Union[str, Path]


def _read_json(path: PathLike, what: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise HarFormatError(f"Cannot read {what} file {path}: {exc}") from exc
    except ValueError as exc:
        raise HarFormatError(f"Invalid JSON in {what} file {path}: {exc}") from exc


def load_har_entries(path: PathLike) -> List[Dict[str, Any]]:
    """Raw ``log.entries`` of a HAR file, skipping entries without request or response."""
    data = _read_json(path, "HAR")
    if not isinstance(data, dict) or not isinstance(data.get("log"), dict):
        raise HarFormatError(f"HAR file {path} has no 'log' object")
    entries = data["log"].get("entries") or []
    if not isinstance(entries, list):
        raise HarFormatError(f"HAR file {path}: 'log.entries' is not a list")
    usable = [
        e for e in entries
        if isinstance(e, dict) and isinstance(e.get("request"), dict) and isinstance(e.get("response"), dict)
    ]
    if len(usable) != len(entries):
        logger.debug("Skipped %d incomplete HAR entries", len(entries) - len(usable))
    return usable


def format_request(har_request: Dict[str, Any]) -> Request:
    """Convert a HAR request object into a :class:`Request`.

    Noise headers are dropped, the query string moves into
    ``query_params``, and JSON bodies are parsed when the content type says
    JSON.
    """
    method = har_request.get("method") or "GET"
    url = har_request.get("url") or ""

    headers: Dict[str, str] = {}
    for header in har_request.get("headers") or []:
        name = header.get("name") or ""
        lowered = name.lower()
        if any(keyword in lowered for keyword in EXCLUDED_HEADER_KEYWORDS):
            continue
        headers[name] = header.get("value") or ""

    query_params: Optional[Dict[str, str]] = None
    query_string = har_request.get("queryString") or []
    if query_string:
        query_params = {q.get("name") or "": q.get("value") or "" for q in query_string}
        url = url.split("?", 1)[0]

    body: Any = None
    text = (har_request.get("postData") or {}).get("text")
    if text:
        body = text
        content_type = next((v for k, v in headers.items() if k.lower() == "content-type"), "")
        if "application/json" in content_type.lower():
            try:
                body = json.loads(text)
            except ValueError:
                logger.debug("Body of %s %s claims JSON but does not parse", method, url)

    return Request(method=method, url=url, headers=headers, query_params=query_params, body=body)


def format_response(har_response: Dict[str, Any]) -> Response:
    content = har_response.get("content") or {}
    return Response(text=content.get("text") or "", mime_type=content.get("mimeType") or "")


def load_cookies(path: PathLike) -> Dict[str, Cookie]:
    """Parse a browser cookie export (a JSON array of cookie objects)."""
    data = _read_json(path, "cookie")
    if not isinstance(data, list):
        raise HarFormatError(f"Cookie file {path} must contain a JSON array")

    cookies: Dict[str, Cookie] = {}
    for raw in data:
        if not isinstance(raw, dict) or not raw.get("name"):
            continue
        same_site = raw.get("sameSite")
        if isinstance(same_site, bool) or not isinstance(same_site, (str, int)):
            same_site = None
        elif isinstance(same_site, int):
            same_site = SAME_SITE_CODES.get(same_site)
        http_only = raw.get("httpOnly")
        secure = raw.get("secure")
        cookies[raw["name"]] = Cookie(
            name=raw["name"],
            value=raw.get("value") or "",
            domain=raw.get("domain"),
            path=raw.get("path"),
            expires=raw.get("expires"),
            http_only=http_only is True if http_only is not None else None,
            secure=secure is True if secure is not None else None,
            same_site=same_site,
        )
    logger.debug("Loaded %d cookies from %s", len(cookies), path)
    return cookies


def _is_noise(url: str) -> bool:
    if url.lower().startswith("data:"):
        return True
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return True
    if splitext(parts.path.lower())[1] in EXCLUDED_EXTENSIONS:
        return True
    host = (parts.hostname or "").lower()
    return any(keyword in host for keyword in EXCLUDED_HOST_KEYWORDS)


def interesting_endpoints(entries: List[Dict[str, Any]]) -> List[EndpointSummary]:
    """Endpoints worth offering as targets: no static assets, trackers or data URLs."""
    seen = set()
    summaries: List[EndpointSummary] = []
    for entry in entries:
        request = entry["request"]
        content = entry["response"].get("content") or {}
        url = request.get("url") or ""
        if not url or _is_noise(url):
            continue

        method = request.get("method") or "GET"
        preview = (content.get("text") or "")[:PREVIEW_CHARS]
        display_url = url
        op_name = graphql_operation_name((request.get("postData") or {}).get("text"))
        if op_name:
            display_url = f"{url}#op={op_name}"
            preview = f"[{op_name}] {preview}"

        dedupe_key = f"{method} {display_url}".lower()
        if dedupe_key in seen:
            continue
        seen.add(dedupe_key)
        summaries.append(EndpointSummary(method, display_url, content.get("mimeType") or "", preview))
    return summaries


def load_corpus(har_path: PathLike, cookie_path: Optional[PathLike] = None) -> CorpusIndex:
    """Build the corpus for one capture.

    Identical requests collapse onto one entry; the last response wins.
    """
    entries = load_har_entries(har_path)
    pairs: Dict[Request, Response] = {}
    for entry in entries:
        pairs[format_request(entry["request"])] = format_response(entry["response"])

    cookies = load_cookies(cookie_path) if cookie_path is not None else {}
    endpoints = interesting_endpoints(entries)
    logger.info(
        "Loaded %d requests (%d endpoints of interest) and %d cookies",
        len(pairs), len(endpoints), len(cookies),
    )
    return CorpusIndex(
        (CorpusEntry(req, resp) for req, resp in pairs.items()),
        cookies=cookies,
        endpoints=endpoints,
    )
