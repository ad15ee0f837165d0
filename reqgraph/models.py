"""Core data models shared by the corpus, graph store, and pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union

# Headers dropped from the minified replay form shown to the oracle.
MINIFIED_EXCLUDED_HEADERS = {"referer", "cookie"}


def _dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def shell_quote(text: str) -> str:
    """Wrap ``text`` in single quotes so a POSIX shell reads it back verbatim."""
    return "'" + text.replace("'", "'\\''") + "'"


def unquote_curl(curl: str) -> str:
    """Undo the quote escaping of :func:`shell_quote` for substring matching."""
    return curl.replace("'\\''", "'")


@dataclass(frozen=True, eq=False)
class Request:
    """A captured HTTP request.

    ``url`` never carries the query string; parameters live in
    ``query_params``. Equality and hashing follow the canonical replay
    string so identical requests collapse onto one key.
    """

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Optional[Dict[str, str]] = None
    body: Optional[Union[str, Dict[str, Any], List[Any]]] = None

    @cached_property
    def canonical(self) -> str:
        return self._build_curl(excluded=None)

    def to_curl(self) -> str:
        """Full replay string, including every header."""
        return self.canonical

    def to_minified_curl(self) -> str:
        """Replay string without ``cookie`` and ``referer`` headers."""
        return self._build_curl(excluded=MINIFIED_EXCLUDED_HEADERS)

    @property
    def full_url(self) -> str:
        if not self.query_params:
            return self.url
        query = "&".join(f"{k}={v}" for k, v in self.query_params.items())
        return f"{self.url}?{query}"

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def _build_curl(self, excluded: Optional[set]) -> str:
        parts = [f"curl -X {self.method}"]
        for key, value in self.headers.items():
            if excluded and key.lower() in excluded:
                continue
            parts.append(f"-H {shell_quote(f'{key}: {value}')}")

        # Treat None and empty string as no body
        if self.body is not None and self.body != "":
            if isinstance(self.body, str):
                parts.append(f"--data {shell_quote(self.body)}")
            else:
                if self.header("content-type") is None:
                    parts.append("-H 'Content-Type: application/json'")
                parts.append(f"--data {shell_quote(_dump_json(self.body))}")

        parts.append(shell_quote(self.full_url))
        return " ".join(parts)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Request):
            return NotImplemented
        return self.canonical == other.canonical

    def __hash__(self) -> int:
        return hash(self.canonical)

    def __str__(self) -> str:
        return self.canonical


@dataclass(frozen=True)
class Response:
    text: str = ""
    mime_type: str = ""

    @property
    def is_html(self) -> bool:
        return "text/html" in self.mime_type.lower()


class CorpusEntry(NamedTuple):
    request: Request
    response: Response


@dataclass(frozen=True)
class Cookie:
    name: str
    value: str
    domain: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[Union[int, float, str]] = None
    http_only: Optional[bool] = None
    secure: Optional[bool] = None
    same_site: Optional[str] = None


@dataclass(frozen=True)
class EndpointSummary:
    """One row of the endpoint list offered to the oracle when picking a target."""

    method: str
    url: str
    mime_type: str = ""
    preview: str = ""


# ---------------------------------------------------------------------------
# Graph nodes
# ---------------------------------------------------------------------------

class NodeKind(str, Enum):
    MASTER = "master"
    REQUEST = "request"
    COOKIE = "cookie"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class RequestPayload:
    request: Request
    response: Response

    @property
    def label(self) -> str:
        return self.request.to_curl()


@dataclass(frozen=True)
class CookiePayload:
    name: str
    value: str

    @property
    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class UnresolvedPayload:
    search_value: str

    @property
    def label(self) -> str:
        return self.search_value


NodePayload = Union[RequestPayload, CookiePayload, UnresolvedPayload]

_PAYLOAD_FOR_KIND = {
    NodeKind.MASTER: RequestPayload,
    NodeKind.REQUEST: RequestPayload,
    NodeKind.COOKIE: CookiePayload,
    NodeKind.UNRESOLVED: UnresolvedPayload,
}


@dataclass
class GraphNode:
    node_id: str
    kind: NodeKind
    payload: NodePayload
    dynamic_parts: List[str] = field(default_factory=list)
    extracted_parts: List[str] = field(default_factory=list)
    input_variables: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        expected = _PAYLOAD_FOR_KIND[self.kind]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.kind.value} node needs a {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def label(self) -> str:
        return self.payload.label

    @property
    def request(self) -> Optional[Request]:
        if isinstance(self.payload, RequestPayload):
            return self.payload.request
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any]
        if isinstance(self.payload, RequestPayload):
            req = self.payload.request
            payload = {
                "method": req.method,
                "url": req.full_url,
                "curl": req.to_curl(),
                "response_type": self.payload.response.mime_type,
            }
        elif isinstance(self.payload, CookiePayload):
            payload = {"name": self.payload.name, "value": self.payload.value}
        else:
            payload = {"search_value": self.payload.search_value}
        return {
            "id": self.node_id,
            "kind": self.kind.value,
            "payload": payload,
            "dynamic_parts": list(self.dynamic_parts),
            "extracted_parts": list(self.extracted_parts),
            "input_variables": dict(self.input_variables),
        }


# ---------------------------------------------------------------------------
# Run state and outcome
# ---------------------------------------------------------------------------

@dataclass
class RunState:
    """Mutable state threaded through one resolution run."""

    input_variables: Dict[str, str] = field(default_factory=dict)
    target_url: str = ""
    master_node: Optional[str] = None
    current_node: Optional[str] = None
    # LIFO: the most recently discovered node is expanded next
    work_queue: List[str] = field(default_factory=list)
    current_dynamic_parts: List[str] = field(default_factory=list)
    steps_used: int = 0
    iterations: int = 0
    request_to_node: Dict[str, str] = field(default_factory=dict)
    cookie_to_node: Dict[str, str] = field(default_factory=dict)

    def push(self, node_id: str) -> None:
        self.work_queue.append(node_id)

    def pop(self) -> str:
        return self.work_queue.pop()


class RunStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RunResult:
    graph: Any  # GraphStore; typed loosely to keep models import-free
    master_node: Optional[str]
    status: RunStatus
    reason: str = ""
    cycle: Optional[List[Tuple[str, str]]] = None
    steps_used: int = 0
    iterations: int = 0
    target_url: str = ""

    @property
    def completed(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def status_text(self) -> str:
        if self.completed:
            return self.status.value
        return f"{self.status.value}: {self.reason}"
