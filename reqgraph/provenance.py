"""Backward search for the response (or cookie) that produced a dynamic value."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence
from urllib.parse import unquote

from .corpus import CorpusIndex
from .errors import OracleError
from .models import (
    CookiePayload,
    CorpusEntry,
    NodeKind,
    RequestPayload,
    RunState,
    UnresolvedPayload,
    unquote_curl,
)
from .oracle import Oracle
from .storage import GraphStore

logger = logging.getLogger(__name__)

SCRIPT_SUFFIXES = (".js",)


@dataclass
class ProvenanceOutcome:
    """What a single :meth:`ProvenanceSearch.resolve` call did to the graph."""

    new_nodes: List[str] = field(default_factory=list)
    # value -> id of the node it was traced to (request or cookie)
    producers: Dict[str, str] = field(default_factory=dict)
    cookie_hits: Dict[str, str] = field(default_factory=dict)
    unresolved: List[str] = field(default_factory=list)
    filtered: List[str] = field(default_factory=list)


def is_script_url(url: str) -> bool:
    return url.lower().endswith(SCRIPT_SUFFIXES)


def value_forms(value: str) -> List[str]:
    """The raw value plus its URL-decoded form when that differs."""
    forms = [value]
    decoded = unquote(value)
    if decoded != value:
        forms.append(decoded)
    return forms


def produces_value(entry: CorpusEntry, value: str) -> bool:
    """True when ``entry``'s response carries ``value`` and its own request does not.

    Matching is case-insensitive and also tries the URL-decoded value. An
    entry whose request already contains any form of the value merely
    echoes it back and is never treated as its producer.
    """
    forms = [f.lower() for f in value_forms(value)]
    curl = unquote_curl(entry.request.to_curl()).lower()
    if any(form in curl for form in forms):
        return False
    text = entry.response.text.lower()
    return any(form in text for form in forms)


class ProvenanceSearch:
    """Traces dynamic values of one node back to cookies or earlier responses.

    Dedup maps live on the :class:`RunState` passed to :meth:`resolve`, so
    one search object can serve several runs over the same corpus.
    """

    def __init__(self, corpus: CorpusIndex, graph: GraphStore, oracle: Oracle):
        self.corpus = corpus
        self.graph = graph
        self.oracle = oracle

    def find_candidates(self, value: str) -> List[CorpusEntry]:
        """All corpus entries that could have produced ``value``, in corpus order."""
        return [entry for entry in self.corpus.all_entries() if produces_value(entry, value)]

    def choose_producer(self, value: str, candidates: Sequence[CorpusEntry]) -> CorpusEntry:
        """Pick one producer among several; oracle first, first candidate on failure."""
        if len(candidates) == 1:
            return candidates[0]
        curls = [entry.request.to_curl() for entry in candidates]
        try:
            index = self.oracle.pick_simplest(curls)
        except OracleError as exc:
            logger.warning("Simplest-request lookup failed for %r, using first candidate: %s", value, exc)
            return candidates[0]
        clamped = min(max(index, 0), len(candidates) - 1)
        if clamped != index:
            logger.info("Oracle index %d out of range for %d candidates, clamped", index, len(candidates))
        return candidates[clamped]

    def resolve(self, node_id: str, search_values: Sequence[str], state: RunState) -> ProvenanceOutcome:
        """Trace every value in ``search_values`` for the node ``node_id``.

        Cookie matches short-circuit the corpus scan. Newly created request
        nodes are pushed onto ``state.work_queue``.
        """
        self.graph.require_node(node_id)
        outcome = ProvenanceOutcome()
        leftovers: List[str] = []

        for value in search_values:
            cookie_name = self.corpus.lookup_cookie_by_value(value)
            if cookie_name is None:
                leftovers.append(value)
                continue
            cookie_node = self._cookie_node(cookie_name, value, state)
            self.graph.add_edge(node_id, cookie_node)
            outcome.cookie_hits[value] = cookie_name
            outcome.producers[value] = cookie_node

        for value in leftovers:
            candidates = self.find_candidates(value)
            if not candidates:
                logger.info("Could not find a response containing %r", value)
                missing = self.graph.add_node(NodeKind.UNRESOLVED, UnresolvedPayload(value))
                self.graph.add_edge(node_id, missing)
                outcome.unresolved.append(value)
                continue

            producer = self.choose_producer(value, candidates)
            if is_script_url(producer.request.url) or producer.response.is_html:
                # Scripts and HTML pages are not treated as producers
                logger.debug("Dropping %r: produced by non-data resource %s", value, producer.request.url)
                node = self.graph.require_node(node_id)
                self.graph.update_node(node_id, dynamic_parts=[p for p in node.dynamic_parts if p != value])
                outcome.filtered.append(value)
                continue

            producer_node = self._request_node(producer, value, state, outcome)
            self.graph.add_edge(node_id, producer_node)
            outcome.producers[value] = producer_node

        state.work_queue.extend(outcome.new_nodes)
        state.current_dynamic_parts = []
        return outcome

    # ------------------------------------------------------------------
    # Node materialisation
    # ------------------------------------------------------------------

    def _cookie_node(self, cookie_name: str, value: str, state: RunState) -> str:
        existing = state.cookie_to_node.get(cookie_name)
        if existing is not None:
            node = self.graph.require_node(existing)
            if value not in node.extracted_parts:
                self.graph.update_node(existing, extracted_parts=node.extracted_parts + [value])
            return existing
        cookie = self.corpus.cookie(cookie_name)
        node_id = self.graph.add_node(
            NodeKind.COOKIE,
            CookiePayload(cookie_name, cookie.value if cookie else value),
            extracted_parts=[value],
        )
        state.cookie_to_node[cookie_name] = node_id
        return node_id

    def _request_node(
        self, producer: CorpusEntry, value: str, state: RunState, outcome: ProvenanceOutcome,
    ) -> str:
        key = producer.request.to_curl()
        existing = state.request_to_node.get(key)
        if existing is not None:
            node = self.graph.require_node(existing)
            if value not in node.extracted_parts:
                self.graph.update_node(existing, extracted_parts=node.extracted_parts + [value])
            return existing
        node_id = self.graph.add_node(
            NodeKind.REQUEST,
            RequestPayload(producer.request, producer.response),
            extracted_parts=[value],
        )
        state.request_to_node[key] = node_id
        outcome.new_nodes.append(node_id)
        return node_id
