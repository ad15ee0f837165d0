"""Read-only index over parsed traffic: URL lookup, request->response, cookies."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .models import Cookie, CorpusEntry, EndpointSummary, Request, Response

logger = logging.getLogger(__name__)

_GRAPHQL_ROOT_FIELD_RE = re.compile(r"\{\s*(\w+)")
PREVIEW_CHARS = 30


def graphql_operation_name(body: Any) -> str:
    """Return the GraphQL operation name carried by a request body.

    Tries the explicit ``operationName`` first, then the root field of the
    ``query`` string (``mutation { syncClassroom(...) }`` -> ``syncClassroom``).
    """
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return ""
    if not isinstance(body, dict):
        return ""
    op_name = body.get("operationName")
    if isinstance(op_name, str) and op_name:
        return op_name
    query = body.get("query")
    if isinstance(query, str):
        match = _GRAPHQL_ROOT_FIELD_RE.search(query)
        if match:
            return match.group(1)
    return ""


def url_key(request: Request) -> str:
    """Lookup key for a request: its URL, plus ``#op=`` for GraphQL calls."""
    key = request.url
    if "/graphql" in key.lower():
        op_name = graphql_operation_name(request.body)
        if op_name:
            key = f"{key}#op={op_name}"
    return key


class CorpusIndex:
    """Immutable, queryable view over ``(Request, Response)`` pairs and cookies.

    All lookups return ``None`` when nothing matches; callers decide what
    "not found" means.
    """

    def __init__(
        self,
        entries: Iterable[Union[CorpusEntry, Sequence]],
        cookies: Union[Iterable[Cookie], Mapping[str, Cookie], None] = None,
        endpoints: Optional[Iterable[EndpointSummary]] = None,
    ) -> None:
        self._entries: List[CorpusEntry] = [CorpusEntry(*entry) for entry in entries]

        self._responses: Dict[Request, Response] = {}
        self._by_url: Dict[str, CorpusEntry] = {}
        for entry in self._entries:
            self._responses[entry.request] = entry.response
            key = url_key(entry.request)
            # Later same-key entries win, matching replay order
            self._by_url[key] = entry
            if entry.request.query_params:
                query = entry.request.full_url[len(entry.request.url):]
                self._by_url[f"{key}{query}"] = entry

        self._cookies: Dict[str, Cookie] = {}
        if isinstance(cookies, Mapping):
            self._cookies.update(cookies)
        elif cookies is not None:
            for cookie in cookies:
                self._cookies[cookie.name] = cookie

        if endpoints is None:
            endpoints = _summarize(self._entries)
        self._endpoints: List[EndpointSummary] = list(endpoints)

        logger.debug(
            "Corpus indexed: %d entries, %d url keys, %d cookies",
            len(self._entries), len(self._by_url), len(self._cookies),
        )

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def all_entries(self) -> List[CorpusEntry]:
        return list(self._entries)

    def response_for(self, request: Request) -> Optional[Response]:
        return self._responses.get(request)

    @property
    def endpoints(self) -> List[EndpointSummary]:
        """Interesting endpoints offered to the oracle for target selection."""
        return list(self._endpoints)

    # ------------------------------------------------------------------
    # URL lookup
    # ------------------------------------------------------------------

    def lookup_by_url(self, url: str) -> Optional[CorpusEntry]:
        """Exact key lookup, then fuzzy containment in either direction.

        The fuzzy step exists for URLs echoed back by the oracle, which may
        be truncated or carry an extra path suffix.
        """
        if not url:
            return None
        entry = self._by_url.get(url)
        if entry is not None:
            return entry
        key = self.resolve_url_key(url)
        return self._by_url[key] if key is not None else None

    def resolve_url_key(self, url: str) -> Optional[str]:
        if not url:
            return None
        if url in self._by_url:
            return url
        needle = url.lower()
        for key in self._by_url:
            lowered = key.lower()
            if needle in lowered or lowered in needle:
                logger.info("Fuzzy-matched URL %s -> %s", url, key)
                return key
        return None

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    @property
    def cookies(self) -> Dict[str, Cookie]:
        return dict(self._cookies)

    def cookie(self, name: str) -> Optional[Cookie]:
        return self._cookies.get(name)

    def lookup_cookie_by_value(self, substr: str) -> Optional[str]:
        """Name of the first cookie whose value contains ``substr``."""
        if not substr:
            return None
        for name, cookie in self._cookies.items():
            if cookie.value and substr in cookie.value:
                return name
        return None


def _summarize(entries: List[CorpusEntry]) -> List[EndpointSummary]:
    seen = set()
    summaries: List[EndpointSummary] = []
    for request, response in entries:
        display_url = url_key(request)
        dedupe_key = f"{request.method} {display_url}"
        if dedupe_key in seen:
            continue
        seen.add(dedupe_key)
        summaries.append(
            EndpointSummary(
                method=request.method,
                url=display_url,
                mime_type=response.mime_type,
                preview=response.text[:PREVIEW_CHARS],
            )
        )
    return summaries
